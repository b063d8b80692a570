"""Coordinate teams of CLI workers through a shared filesystem."""

__version__ = "0.1.0"
