"""Civic issue triage: classification, priority scoring and community voting."""

__version__ = "0.1.0"
