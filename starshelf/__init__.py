"""Starred GitHub repository browser backend."""

__version__ = "1.0.0"
