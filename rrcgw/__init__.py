"""Reticulum chat gateway daemon."""

__version__ = "0.3.0"
