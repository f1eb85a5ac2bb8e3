"""Utility helpers shared across chapterstream."""

from .logging import get_log_path, get_logger, setup_logging

__all__ = ["get_log_path", "get_logger", "setup_logging"]
