"""Dual-mode (guest/local or remote) access to encrypted care logs."""

from .repository import (
    LOG_TABLES,
    LogRepository,
    LogRepositoryError,
    LogTable,
    NoActiveChildError,
    NotSignedInError,
    log_table,
)

__all__ = [
    "LOG_TABLES",
    "LogRepository",
    "LogRepositoryError",
    "LogTable",
    "NoActiveChildError",
    "NotSignedInError",
    "log_table",
]
