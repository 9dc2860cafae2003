"""Reloop reward & progress engine."""

__version__ = "0.1.0"
