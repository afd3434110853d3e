"""Utilities - logging setup."""

from intentx.utils.logging import setup_logging

__all__ = ["setup_logging"]
