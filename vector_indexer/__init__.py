"""Dependency-aware vector indexing for workspace project data."""

__version__ = "0.1.0"
