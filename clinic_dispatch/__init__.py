"""Clinic appointment scheduling and patient queue dispatch."""

__version__ = "1.0.0"
