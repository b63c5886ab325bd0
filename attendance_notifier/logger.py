"""Logging helpers for the attendance notification worker."""

import logging


def get_logger(name: str = "AttendanceNotifier") -> logging.Logger:
    """Return a configured :class:`logging.Logger` instance.

    Note: Logging configuration should be done via logging.basicConfig()
    in the main entry point (main.py) to avoid duplicate handlers.
    """
    return logging.getLogger(name)
