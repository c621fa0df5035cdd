"""Real-time multi-room chat service."""

__version__ = "0.1.0"
