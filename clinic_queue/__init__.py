"""Clinic appointment booking and day-of-visit queue engine."""

__version__ = "1.0.0"
