"""At-least-once notification pipeline over a consumer-group log."""

__version__ = "0.1.0"
