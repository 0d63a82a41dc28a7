"""Tournament registration admission and funds-holding engine."""

__version__ = "0.1.0"
