"""Parking facility core: spot assignment, checkout billing and session lifecycle."""

__version__ = "1.0.0"
