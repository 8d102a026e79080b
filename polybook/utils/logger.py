"""
Logging Configuration Module
===========================

Controls logging levels and output formatting for the order-book recorder.
Provides logging modes for development, production and quiet unattended runs.
"""

import sys
from enum import Enum
from typing import Optional
from loguru import logger


class LogLevel(Enum):
    """Logging levels for different run modes"""
    SILENT = "SILENT"           # Only critical errors
    QUIET = "QUIET"             # Errors and warnings only
    NORMAL = "NORMAL"           # Info, warnings, and errors
    VERBOSE = "VERBOSE"         # Debug, info, warnings, and errors
    TRACE = "TRACE"             # All logging including trace


_LOGURU_LEVELS = {
    LogLevel.SILENT: "CRITICAL",
    LogLevel.QUIET: "WARNING",
    LogLevel.NORMAL: "INFO",
    LogLevel.VERBOSE: "DEBUG",
    LogLevel.TRACE: "TRACE"
}

# Names accepted by the CLI / config file
MODE_LEVELS = {
    "silent": LogLevel.SILENT,
    "quiet": LogLevel.QUIET,
    "production": LogLevel.NORMAL,
    "development": LogLevel.VERBOSE,
    "trace": LogLevel.TRACE
}


class LogConfig:
    """Logging configuration manager"""

    def __init__(self):
        self.current_level = LogLevel.NORMAL
        self._initialized = False
        self._console_handler: Optional[int] = None

    def setup_logging(self,
                      level: LogLevel = LogLevel.NORMAL,
                      show_backtrace: bool = False,
                      show_diagnose: bool = False) -> None:
        """
        Configure console logging for the recorder

        Args:
            level: Logging level to use
            show_backtrace: Show full backtraces on errors
            show_diagnose: Show diagnostic information
        """
        # Replace the previous console sink only, file sinks stay attached
        if self._console_handler is not None:
            logger.remove(self._console_handler)
        elif not self._initialized:
            logger.remove()
            logger.configure(extra={"name": "polybook"})

        if level == LogLevel.SILENT:
            format_str = "<red><bold>CRITICAL</bold></red> | {message}"
        elif level == LogLevel.QUIET:
            format_str = "<level>{level}</level> | {message}"
        elif level == LogLevel.NORMAL:
            format_str = "<green>{time:HH:mm:ss}</green> | <level>{level: <8}</level> | <cyan>{extra[name]}</cyan> | {message}"
        else:
            format_str = "<green>{time:YYYY-MM-DD HH:mm:ss.SSS}</green> | <level>{level: <8}</level> | <cyan>{extra[name]}</cyan>:<cyan>{function}</cyan>:<cyan>{line}</cyan> | {message}"

        self._console_handler = logger.add(
            sys.stderr,
            format=format_str,
            level=_LOGURU_LEVELS[level],
            backtrace=show_backtrace,
            diagnose=show_diagnose,
            colorize=True
        )

        self.current_level = level

        if level != LogLevel.SILENT and not self._initialized:
            logger.bind(name="logger").info(f"Logging configured: level={level.value}")

        self._initialized = True

    def set_mode(self, mode: str) -> None:
        """Configure logging from a mode name (production, development, quiet, ...)"""
        try:
            level = MODE_LEVELS[mode.lower()]
        except KeyError:
            raise ValueError(f"Unknown log mode '{mode}', expected one of {sorted(MODE_LEVELS)}")

        verbose = level in (LogLevel.VERBOSE, LogLevel.TRACE)
        self.setup_logging(level=level, show_backtrace=verbose, show_diagnose=verbose)

    def set_development_mode(self) -> None:
        """Configure logging for development - full output"""
        self.set_mode("development")

    def set_production_mode(self) -> None:
        """Configure logging for production - balanced output"""
        self.set_mode("production")

    def set_silent_mode(self) -> None:
        """Configure logging for silent operation - critical errors only"""
        self.set_mode("silent")

    def add_file_logging(self,
                         filepath: str,
                         level: LogLevel = LogLevel.VERBOSE,
                         rotation: str = "10 MB",
                         retention: str = "7 days") -> int:
        """
        Add file logging in addition to console

        Args:
            filepath: Path to log file
            level: Logging level for file
            rotation: File rotation policy
            retention: Log retention policy

        Returns:
            loguru handler id, usable with ``logger.remove``
        """
        file_format = "{time:YYYY-MM-DD HH:mm:ss.SSS} | {level: <8} | {extra[name]}:{function}:{line} | {message}"

        handler_id = logger.add(
            filepath,
            format=file_format,
            level=_LOGURU_LEVELS[level],
            rotation=rotation,
            retention=retention,
            backtrace=True,
            diagnose=False
        )

        if self.current_level != LogLevel.SILENT:
            logger.bind(name="logger").info(f"File logging enabled: {filepath}")

        return handler_id


# Process-wide sink configuration; loguru itself is a process-wide singleton
log_config = LogConfig()


def setup_development_logging():
    """Quick setup for development - full logging"""
    log_config.set_development_mode()


def setup_production_logging():
    """Quick setup for production - balanced logging"""
    log_config.set_production_mode()


def setup_silent_logging():
    """Quick setup for silent operation"""
    log_config.set_silent_mode()


def get_logger(name: str):
    """
    Get a logger instance for a module

    Args:
        name: Component name shown in every line

    Returns:
        Logger instance
    """
    if not log_config._initialized:
        log_config.setup_logging()

    return logger.bind(name=name)
