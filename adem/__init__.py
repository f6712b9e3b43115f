"""ADEM membership portal backend."""

__version__ = "0.1.0"
