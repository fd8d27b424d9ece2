"""Resumable flair census for large communities."""

__version__ = "0.1.0"
