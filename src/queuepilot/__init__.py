"""Persistent task queue and workflow executor."""

__version__ = "0.3.0"
