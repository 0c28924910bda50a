"""Multi-store order synchronization engine."""

__version__ = "0.4.0"
