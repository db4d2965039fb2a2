"""Kernel data structures: memory management, stat metadata and logging."""

__version__ = "0.1.0"