#!/usr/bin/env python3
"""
Safe Logger Wrapper for the Hawa UDP Proxy
Leveled logging that never raises into the packet pumps
"""

import logging
import os
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any, Optional

# Verbosity levels (-v 0..6)
V_ERROR = 1       # Per-datagram I/O errors
V_LIFECYCLE = 2   # Serving/connected/new connection
V_TRACE = 3       # Every relayed datagram
V_LOOKUP = 5      # Connection table hits

DEFAULT_VERBOSITY = 1
MAX_VERBOSITY = 6
LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'

# Global logging state
_logging_enabled = True
_verbosity = DEFAULT_VERBOSITY
_loggers = {}
_handlers = []  # Handlers installed by setup_safe_logging()


def _level_for_verbosity(level: int) -> int:
    """Python logging level a verbosity-tagged message is emitted at"""
    if level <= V_ERROR:
        return logging.WARNING
    if level == V_LIFECYCLE:
        return logging.INFO
    return logging.DEBUG


class SafeLogger:
    """
    Safe logger wrapper that prevents logging errors from crashing the relay.
    Reads the module-wide enabled flag and verbosity on every call, so loggers
    created at import time follow later calls to setup_safe_logging().
    """

    def __init__(self, name: str):
        self.name = name
        self._logger = logging.getLogger(name)

    def _safe_log(self, level: int, msg: Any, *args, **kwargs):
        """Safely log a message, ignoring any errors"""
        if not _logging_enabled:
            return

        try:
            self._logger.log(level, msg, *args, **kwargs)
        except Exception:
            # A broken handler must not take down a pump
            pass

    def vlog(self, verbosity: int, msg: Any, *args, **kwargs):
        """Log only when the configured verbosity is at least `verbosity`"""
        if verbosity > _verbosity:
            return
        self._safe_log(_level_for_verbosity(verbosity), msg, *args, **kwargs)

    def debug(self, msg: Any, *args, **kwargs):
        self._safe_log(logging.DEBUG, msg, *args, **kwargs)

    def info(self, msg: Any, *args, **kwargs):
        self._safe_log(logging.INFO, msg, *args, **kwargs)

    def warning(self, msg: Any, *args, **kwargs):
        self._safe_log(logging.WARNING, msg, *args, **kwargs)

    def error(self, msg: Any, *args, **kwargs):
        self._safe_log(logging.ERROR, msg, *args, **kwargs)

    def exception(self, msg: Any, *args, exc_info=True, **kwargs):
        self._safe_log(logging.ERROR, msg, *args, exc_info=exc_info, **kwargs)

    def critical(self, msg: Any, *args, **kwargs):
        self._safe_log(logging.CRITICAL, msg, *args, **kwargs)


def parse_size(size: str) -> int:
    """Parse a size string such as '10MB' into bytes"""
    size = str(size).strip().upper()
    for suffix, factor in (('GB', 1024 ** 3), ('MB', 1024 ** 2), ('KB', 1024)):
        if size.endswith(suffix):
            return int(size[:-len(suffix)]) * factor
    return int(size)


def check_log_writability(path: str) -> bool:
    """
    Check that a log file can be created at `path`.

    Returns:
        True if the file (or its directory) is writable, False otherwise
    """
    log_path = Path(path)
    try:
        log_path.parent.mkdir(parents=True, exist_ok=True)
        existed = log_path.exists()
        with open(log_path, 'a'):
            pass
        if not existed:
            os.unlink(log_path)
        return True
    except OSError:
        return False


def setup_safe_logging(enabled: bool = True, level: int = logging.INFO,
                       verbosity: int = DEFAULT_VERBOSITY,
                       log_format: str = LOG_FORMAT,
                       console: bool = True,
                       log_file: Optional[str] = None,
                       max_size: str = '10MB',
                       rotate_count: int = 5) -> bool:
    """
    Setup the safe logging system.

    Args:
        enabled: Whether to enable logging at all
        level: Root logging level
        verbosity: Relay verbosity (0-6); 3 and above also lowers the root
            level to DEBUG so per-datagram traces get through
        log_format: Formatter string for all handlers
        console: Log to stderr
        log_file: Optional rotating log file path
        max_size: Rotation size for the log file
        rotate_count: Number of rotated files to keep

    Returns:
        True if logging was enabled, False otherwise
    """
    global _logging_enabled, _verbosity
    _verbosity = max(0, min(int(verbosity), MAX_VERBOSITY))
    _logging_enabled = enabled

    if not enabled:
        return False

    if _verbosity >= V_TRACE:
        level = min(level, logging.DEBUG)

    root = logging.getLogger()
    root.setLevel(level)
    for handler in _handlers:
        root.removeHandler(handler)
        handler.close()
    _handlers.clear()
    formatter = logging.Formatter(log_format)

    if console:
        console_handler = logging.StreamHandler(sys.stderr)
        console_handler.setFormatter(formatter)
        root.addHandler(console_handler)
        _handlers.append(console_handler)

    if log_file:
        if check_log_writability(log_file):
            file_handler = RotatingFileHandler(
                log_file,
                maxBytes=parse_size(max_size),
                backupCount=rotate_count
            )
            file_handler.setFormatter(formatter)
            root.addHandler(file_handler)
            _handlers.append(file_handler)
        else:
            print(f"Warning: Cannot write to {log_file} - file logging disabled",
                  file=sys.stderr)

    return True


def get_safe_logger(name: str) -> SafeLogger:
    """Get a safe logger instance, cached per name"""
    if name not in _loggers:
        _loggers[name] = SafeLogger(name)
    return _loggers[name]


def is_logging_enabled() -> bool:
    """Check if logging is currently enabled"""
    return _logging_enabled


def get_verbosity() -> int:
    """Current relay verbosity"""
    return _verbosity
