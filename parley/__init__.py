"""Parley: a plugin-driven chat bot runtime."""

__version__ = "0.1.0"
