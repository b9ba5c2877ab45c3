"""Paid, probabilistic rank progression for collection tokens."""

__version__ = "0.1.0"
