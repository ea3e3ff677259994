"""Configuration module for PackAI."""

from .settings import Settings, get_settings
from .logging import (
    configure_logging,
    JSONFormatter,
    SanitizingFilter,
    TextFormatter,
    sanitize_log_message,
)

__all__ = [
    "Settings",
    "get_settings",
    "configure_logging",
    "JSONFormatter",
    "SanitizingFilter",
    "TextFormatter",
    "sanitize_log_message",
]
