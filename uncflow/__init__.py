"""Intel core and uncore performance counter access and derived metrics."""

__version__ = "2.0.0"