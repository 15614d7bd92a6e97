"""Parley realtime chat relay."""

__version__ = "0.1.0"
