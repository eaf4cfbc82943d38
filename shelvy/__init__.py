"""Shelvy: a social bookshelf backend."""

__version__ = "1.0.0"
