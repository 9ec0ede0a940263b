"""Utility modules."""

from billsync.utils.logging import configure_logging

__all__ = ["configure_logging"]
