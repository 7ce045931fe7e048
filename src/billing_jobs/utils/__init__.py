"""Utilities for shared concerns."""

from billing_jobs.utils.logging import setup_logging

__all__ = ["setup_logging"]
