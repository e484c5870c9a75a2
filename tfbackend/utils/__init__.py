"""Utility helpers for the state backend."""

from .logging_helpers import ContextLoggerAdapter, add_context
from .time_utils import now_utc

__all__ = ["ContextLoggerAdapter", "add_context", "now_utc"]
