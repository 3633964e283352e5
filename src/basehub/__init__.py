"""basehub - multi-instance backend platform manager."""

__version__ = "0.1.0"
