"""Remote write sender compliance engine."""

__version__ = "0.1.0"
