"""
Centralized logging infrastructure for flow-orchestra.
Keeps structured log entries in memory and forwards them to Python logging.
"""

from __future__ import annotations
import logging
import threading
import time
from collections import deque
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional


class LogLevel(Enum):
    """Log levels for the system."""
    DEBUG = "DEBUG"
    INFO = "INFO"
    WARNING = "WARNING"
    ERROR = "ERROR"
    CRITICAL = "CRITICAL"


_PY_LEVELS = {
    LogLevel.DEBUG: logging.DEBUG,
    LogLevel.INFO: logging.INFO,
    LogLevel.WARNING: logging.WARNING,
    LogLevel.ERROR: logging.ERROR,
    LogLevel.CRITICAL: logging.CRITICAL,
}


@dataclass
class LogEntry:
    """A structured log entry."""
    timestamp: float
    level: LogLevel
    component: str  # engine, retry, router, remote, cli, etc.
    message: str
    node_id: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    @property
    def formatted_time(self) -> str:
        """Get human-readable timestamp."""
        return time.strftime('%H:%M:%S', time.localtime(self.timestamp))

    def __str__(self) -> str:
        """Format log entry for display."""
        node_info = f"[{self.node_id}] " if self.node_id else ""
        return f"{self.formatted_time} [{self.level.value}] {self.component}: {node_info}{self.message}"


class SystemLogger:
    """
    Centralized logger that records every entry in bounded buffers and
    forwards it to the ``flow_orchestra.<component>`` Python logger.
    """

    def __init__(self, max_entries: int = 1000):
        self.max_entries = max_entries
        self.log_buffer: deque[LogEntry] = deque(maxlen=max_entries)
        self.component_buffers: Dict[str, deque[LogEntry]] = {}
        self.lock = threading.Lock()

    def log(self, level: LogLevel, component: str, message: str, node_id: Optional[str] = None, **metadata):
        """Add a log entry."""
        entry = LogEntry(
            timestamp=time.time(),
            level=level,
            component=component,
            message=message,
            node_id=node_id,
            metadata=metadata
        )

        with self.lock:
            self.log_buffer.append(entry)
            if component not in self.component_buffers:
                self.component_buffers[component] = deque(maxlen=200)
            self.component_buffers[component].append(entry)

        py_logger = logging.getLogger(f"flow_orchestra.{component}")
        if py_logger.isEnabledFor(_PY_LEVELS[level]):
            node_info = f"[{node_id}] " if node_id else ""
            py_logger.log(_PY_LEVELS[level], f"{node_info}{message}")

    def debug(self, component: str, message: str, node_id: Optional[str] = None, **metadata):
        """Log debug message."""
        self.log(LogLevel.DEBUG, component, message, node_id, **metadata)

    def info(self, component: str, message: str, node_id: Optional[str] = None, **metadata):
        """Log info message."""
        self.log(LogLevel.INFO, component, message, node_id, **metadata)

    def warning(self, component: str, message: str, node_id: Optional[str] = None, **metadata):
        """Log warning message."""
        self.log(LogLevel.WARNING, component, message, node_id, **metadata)

    def error(self, component: str, message: str, node_id: Optional[str] = None, **metadata):
        """Log error message."""
        self.log(LogLevel.ERROR, component, message, node_id, **metadata)

    def critical(self, component: str, message: str, node_id: Optional[str] = None, **metadata):
        """Log critical message."""
        self.log(LogLevel.CRITICAL, component, message, node_id, **metadata)

    def get_recent_logs(self, count: int = 50, component: Optional[str] = None,
                        level: Optional[LogLevel] = None) -> List[LogEntry]:
        """Get recent log entries with optional filtering."""
        with self.lock:
            if component and component in self.component_buffers:
                logs = list(self.component_buffers[component])
            elif component:
                logs = []
            else:
                logs = list(self.log_buffer)

        if level:
            logs = [log for log in logs if log.level == level]

        return logs[-count:] if len(logs) > count else logs

    def get_component_stats(self) -> Dict[str, Dict[str, int]]:
        """Get statistics by component."""
        stats = {}

        with self.lock:
            for component, buffer in self.component_buffers.items():
                level_counts = {level.value: 0 for level in LogLevel}
                for entry in buffer:
                    level_counts[entry.level.value] += 1

                stats[component] = {
                    "total": len(buffer),
                    **level_counts
                }

        return stats

    def clear_logs(self, component: Optional[str] = None):
        """Clear logs for a component or all logs."""
        with self.lock:
            if component and component in self.component_buffers:
                self.component_buffers[component].clear()
            else:
                self.log_buffer.clear()
                for buffer in self.component_buffers.values():
                    buffer.clear()


# Global system logger instance
_global_logger: Optional[SystemLogger] = None


def get_system_logger() -> SystemLogger:
    """Get the global system logger instance."""
    global _global_logger
    if _global_logger is None:
        _global_logger = SystemLogger()
    return _global_logger


def init_logging(level: str = "INFO", handler: Optional[logging.Handler] = None) -> SystemLogger:
    """Initialize the logging system and attach a console handler once."""
    package_logger = logging.getLogger("flow_orchestra")
    package_logger.setLevel(getattr(logging, level.upper(), logging.INFO))
    if not package_logger.handlers:
        handler = handler or logging.StreamHandler()
        handler.setFormatter(logging.Formatter("%(asctime)s [%(levelname)s] %(name)s: %(message)s", "%H:%M:%S"))
        package_logger.addHandler(handler)
    return get_system_logger()
