"""Cohort metrics pipeline: reconcile raw provider exports into report tables."""

__version__ = "0.3.0"
