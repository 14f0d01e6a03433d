[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "uncflow"
version = "2.0.0"
description = "Intel core and uncore performance counters on Linux: MSR and PCI access, core PMU, RAPL, RDT, IMC, IRP and CHA event definitions"
requires-python = ">=3.10"
dependencies = []
keywords = ["performance-counters", "msr", "uncore", "rapl", "rdt", "pmu", "monitoring"]
classifiers = [
    "Development Status :: 4 - Beta",
    "Intended Audience :: System Administrators",
    "Intended Audience :: Developers",
    "Operating System :: POSIX :: Linux",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: System :: Monitoring",
    "Topic :: System :: Hardware",
]

[project.optional-dependencies]
test = ["pytest"]

[tool.hatch.build.targets.wheel]
packages = ["uncflow"]

[tool.pytest.ini_options]
addopts = "-ra"
