"""Core utilities for the rate limiter service."""

from ratekeeper.app.core.config import Settings, get_settings
from ratekeeper.app.core.logging import get_logger, setup_logging

__all__ = [
    "Settings",
    "get_settings",
    "get_logger",
    "setup_logging",
]
