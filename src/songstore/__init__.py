"""songstore: local object persistence for a song library."""

__version__ = "0.1.0"
