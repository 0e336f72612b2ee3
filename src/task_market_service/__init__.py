"""Task Market Service - task matching, advance payments, and completion."""

__version__ = "0.1.0"
