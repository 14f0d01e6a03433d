"""Exception hierarchy shared by all uncflow components."""


class UncflowError(Exception):
    """Base class for every error raised by uncflow."""

    prefix = "uncflow error"

    def __init__(self, detail: str = "") -> None:
        self.detail = detail
        super().__init__(f"{self.prefix}: {detail}")


class MsrError(UncflowError):
    """A model-specific register could not be opened, read or written."""

    prefix = "MSR operation failed"


class PciError(UncflowError):
    """A PCI configuration space access failed."""

    prefix = "PCI operation failed"


class AffinityError(UncflowError):
    """The CPU affinity of the process could not be changed."""

    prefix = "Affinity operation failed"


class RaplError(UncflowError):
    """Energy counters could not be used."""

    prefix = "RAPL operation failed"


class RdtError(UncflowError):
    """Resource director monitoring could not be used."""

    prefix = "RDT operation failed"


class ConfigError(UncflowError):
    """The configuration is unusable."""

    prefix = "Configuration error"


class HardwareError(UncflowError):
    """The hardware reported or was left in an unexpected state."""

    prefix = "Invalid hardware state"


class ParseError(UncflowError, ValueError):
    """Text read from the system could not be parsed."""

    prefix = "Parse error"


class UnsupportedArchitecture(UncflowError):
    """The detected CPU architecture does not support the requested feature."""

    prefix = "Unsupported architecture"


class InvalidConfiguration(UncflowError, ValueError):
    """A parameter is outside the range the hardware supports."""

    prefix = "Invalid configuration"