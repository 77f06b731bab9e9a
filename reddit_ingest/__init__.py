"""Resilient ingestion core for compressed Reddit archive dumps."""

__version__ = "0.1.0"
