"""Node energy readings from RAPL, ACPI and GPU sources, and node power estimation."""

__version__ = "0.1.0"