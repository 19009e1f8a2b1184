"""Real-time multi-room chat relay."""

__version__ = "0.1.0"
