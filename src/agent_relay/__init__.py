"""Process orchestration and multi-instance state coordination for executor CLIs."""

__version__ = "0.1.0"
