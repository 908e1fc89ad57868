"""Loading, defaulting and validation of virtual machine instance configuration and host network configuration."""

__version__ = "0.1.0"