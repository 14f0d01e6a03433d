# uncflow

A library that reads Intel core and uncore performance counters on Linux.
It uses the `/dev/cpu/*/msr` devices, the `/dev/cpu/0/cpuid` device and PCI
configuration space under `/proc/bus/pci`. From those counters it derives
metrics such as instructions per cycle, cache hit ratios, package, core and
DRAM energy, per-core memory bandwidth and LLC occupancy (RDT), memory
controller bandwidth and latency (IMC), and IO request bandwidth (IRP).

Access to the hardware needs root and the `msr` and `cpuid` kernel modules.
If the environment variable `DOCKER_RUNNING` is set, PCI files and the MCFG
table are read from under `/pcm` instead.

## Installing

    pip install .

For the test suite:

    pip install ".[test]"
    pytest

## Choosing CPUs and sockets

```python
from uncflow.config import ExportConfig, parse_cpu_list

config = ExportConfig.auto_detect()      # reads /sys/devices/system/cpu
print(config.sockets, config.cores, config.core_labels)

parse_cpu_list("0-3,8-11")               # [0, 1, 2, 3, 8, 9, 10, 11]
```

If the online CPUs cannot be read, `auto_detect` falls back to CPUs 0-7.
If no socket can be read, it falls back to socket 0.

## Core counters

```python
import time
from uncflow.core_monitor import CoreMonitor

with CoreMonitor(config) as monitor:     # disables the counters on exit
    monitor.initialize()
    time.sleep(1)
    monitor.collect()
    print(monitor.get_metrics(0)["IPC"])
```

`get_metrics` returns, among others, `IPC`, `L3CacheHitRatio`, `L3MPI`,
`L2CacheHitRatio`, `L2MPI` and `elapsedTime`.

## Energy

```python
from uncflow.rapl import RaplMonitor

rapl = RaplMonitor(config)
time.sleep(1)
data = rapl.power_consumption(0)         # joules used since the last call
print(data.package_energy, data.core_energy, data.dram_energy)
```

## Memory bandwidth and LLC occupancy per core

```python
from uncflow.rdt import RdtMonitor

with RdtMonitor(config) as rdt:          # releases the RMIDs on exit
    rdt.initialize()
    rdt.update()
    print(rdt.get_metrics(0)["TotalMemoryBandwidth"])
    print(rdt.get_socket_metrics(0))
```

## Uncore units

- `uncflow.imc.ImcMonitor(socket)` detects the memory channels of a socket.
  Its `initialize()` programs them, and its `collect()` returns an
  `ImcMetrics` with read and write bandwidth, queue occupancy, latency and
  frequency.
- `uncflow.irp.IrpMonitor(socket)` measures each IRP event group for
  `measure_duration` seconds. Its `collect_metrics()` returns a dict keyed
  by `IrpMetric`. It uses MSRs on Skylake, Cascade Lake and Ice Lake and PCI
  on Haswell and Broadwell. On other architectures it raises
  `UnsupportedArchitecture`.
- `uncflow.cha_events` defines the CHA transaction, LLC lookup and eviction
  event configurations (`ChaEventConfig`).
- `uncflow.core_events` holds the core PMU events and register addresses.

`uncflow.arch.cpu_arch()` returns the detected `CpuArchitecture`, and
`uncflow.arch.classify(eax)` classifies a CPUID leaf 1 value.

## Lower-level access

- `uncflow.msr.Msr` and the functions `read_msr` and `write_msr` read and
  write 64-bit registers. Each access pins the process to the target CPU
  with `uncflow.affinity.AffinityGuard`.
- `uncflow.pci.Pci`, `Mcfg` and `PciHandle` locate uncore devices through
  the ACPI MCFG table and access their configuration space.

The monitors take their register access as an argument (`msr=` or `pci=`),
so any object with the same `read`/`write` or `read32`/`write32` methods can
stand in for the hardware.

Every failure raises a subclass of `uncflow.errors.UncflowError`, such as
`MsrError`, `PciError`, `RdtError` or `UnsupportedArchitecture`.

## What it does not do

uncflow is a library only. It has no command-line program and no
metrics-serving endpoint, and it does not schedule collection. It has no
monitor that programs the CHA or IIO boxes. For the CHA, only the event
configurations are provided.