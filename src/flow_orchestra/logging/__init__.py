"""Logging package for flow-orchestra."""

from .system_logger import (
    SystemLogger,
    LogLevel,
    LogEntry,
    get_system_logger,
    init_logging,
)

__all__ = [
    "SystemLogger",
    "LogLevel",
    "LogEntry",
    "get_system_logger",
    "init_logging",
]
