"""FPGA bitstream files, PCI sysfs helpers and a device-plugin core."""

__version__ = "0.1.0"