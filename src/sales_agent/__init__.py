"""Sales agent conversation queue."""

__version__ = "0.1.0"
