"""Adaptive task runner for authenticated web portals."""

__version__ = "0.1.0"
