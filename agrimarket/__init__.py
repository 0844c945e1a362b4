"""Farmer-to-buyer marketplace service."""

__version__ = "0.1.0"
