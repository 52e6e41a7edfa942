"""Per-user daily brief scheduler."""

__version__ = "0.1.0"
