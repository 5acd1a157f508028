"""shopflow: orders, stock reservation, payment settlement and notifications."""

__version__ = "0.1.0"
