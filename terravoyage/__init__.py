"""Terra Voyage real-time trip collaboration service."""

__version__ = "0.1.0"
