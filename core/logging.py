"""
Logging Module - Centralized logging configuration
=================================================

This module provides logging setup and utilities including:
- Structured JSON logging
- File and console handlers
- Per-turn context (conversation id, rule name)
"""

import logging
import sys
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional, Dict, Any
import json
from contextvars import ContextVar, Token

ROOT_LOGGER = "rulebot"


class JSONFormatter(logging.Formatter):
    """
    JSON log formatter for structured logging.

    Outputs log records as JSON objects for easy parsing and
    integration with log aggregation systems.
    """

    def format(self, record: logging.LogRecord) -> str:
        log_data = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "module": record.module,
            "function": record.funcName,
            "line": record.lineno,
        }

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        if hasattr(record, "extra_data"):
            log_data["data"] = record.extra_data

        return json.dumps(log_data, ensure_ascii=False, default=str)


class ColoredFormatter(logging.Formatter):
    """
    Colored console formatter for readable terminal output.

    Uses ANSI color codes to highlight different log levels.
    """

    COLORS = {
        "DEBUG": "\033[36m",     # Cyan
        "INFO": "\033[32m",      # Green
        "WARNING": "\033[33m",   # Yellow
        "ERROR": "\033[31m",     # Red
        "CRITICAL": "\033[35m",  # Magenta
    }
    RESET = "\033[0m"
    BOLD = "\033[1m"

    def format(self, record: logging.LogRecord) -> str:
        color = self.COLORS.get(record.levelname, "")
        timestamp = datetime.now().strftime("%Y-%m-%d %H:%M:%S")

        formatted = (
            f"{color}{self.BOLD}[{record.levelname}]{self.RESET} "
            f"{timestamp} | {record.name}:{record.lineno} | "
            f"{record.getMessage()}"
        )

        context = getattr(record, "extra_data", None)
        if context:
            pairs = " ".join(f"{k}={v}" for k, v in context.items())
            formatted += f" | {pairs}"

        if record.exc_info:
            formatted += f"\n{self.formatException(record.exc_info)}"

        return formatted


class ContextFilter(logging.Filter):
    """
    Logging filter that adds context information to records.

    The dispatcher stores the conversation id here for the duration
    of a turn, so every record emitted inside the turn carries it.
    Each asyncio task sees its own copy.
    """

    _context: ContextVar = ContextVar("rulebot_log_context", default={})

    @classmethod
    def set_context(cls, **kwargs) -> Token:
        return cls._context.set({**cls._context.get(), **kwargs})

    @classmethod
    def reset_context(cls, token: Token) -> None:
        cls._context.reset(token)

    @classmethod
    def get_context(cls) -> Dict[str, Any]:
        return dict(cls._context.get())

    def filter(self, record: logging.LogRecord) -> bool:
        context = self._context.get()
        if context:
            record.extra_data = dict(context)
        return True


class LoggerAdapter(logging.LoggerAdapter):
    """
    Custom logger adapter with extra context support.

    Allows passing extra context data that will be included
    in structured log output.
    """

    def process(self, msg: str, kwargs: Dict[str, Any]) -> tuple:
        extra = dict(kwargs.get("extra") or {})
        extra.update(self.extra)
        kwargs["extra"] = extra
        return msg, kwargs


_loggers: Dict[str, logging.Logger] = {}
_configured = False


def setup_logging(
    log_dir: Optional[str] = None,
    log_level: str = "INFO",
    json_format: bool = False,
    console_output: bool = True
) -> None:
    """
    Set up logging configuration for the application.

    This should be called once at application startup. Library use of
    the dispatcher does not require it; records then propagate to
    whatever the host configured.

    Args:
        log_dir: Directory for log files (optional)
        log_level: Minimum log level to capture
        json_format: Use JSON format for file logs
        console_output: Also output to console

    Example:
        setup_logging(
            log_dir="/var/log/rulebot",
            log_level="DEBUG",
            json_format=True
        )
    """
    global _configured

    if _configured:
        return

    root_logger = logging.getLogger(ROOT_LOGGER)
    root_logger.setLevel(getattr(logging, log_level.upper(), logging.INFO))
    root_logger.handlers.clear()

    context_filter = ContextFilter()

    if console_output:
        console_handler = logging.StreamHandler(sys.stdout)
        console_handler.setLevel(logging.DEBUG)
        console_handler.addFilter(context_filter)
        console_handler.setFormatter(ColoredFormatter())
        root_logger.addHandler(console_handler)

    if log_dir:
        log_path = Path(log_dir)
        log_path.mkdir(parents=True, exist_ok=True)

        file_handler = logging.FileHandler(log_path / "rulebot.log", encoding="utf-8")
        file_handler.setLevel(logging.DEBUG)
        file_handler.addFilter(context_filter)

        if json_format:
            file_handler.setFormatter(JSONFormatter())
        else:
            file_handler.setFormatter(
                logging.Formatter(
                    "%(asctime)s | %(levelname)-8s | %(name)s:%(lineno)d | %(message)s"
                )
            )
        root_logger.addHandler(file_handler)

        error_handler = logging.FileHandler(log_path / "errors.log", encoding="utf-8")
        error_handler.setLevel(logging.ERROR)
        error_handler.addFilter(context_filter)
        error_handler.setFormatter(JSONFormatter())
        root_logger.addHandler(error_handler)

    _configured = True


def get_logger(name: str, **extra) -> LoggerAdapter:
    """
    Get a logger instance for a module.

    Args:
        name: Logger name, placed under the ``rulebot`` tree
        **extra: Extra context to include in all log messages

    Returns:
        LoggerAdapter instance

    Example:
        logger = get_logger("dispatch.bot", component="dispatcher")
        logger.info("Rule matched")
    """
    full_name = name if name.startswith(ROOT_LOGGER) else f"{ROOT_LOGGER}.{name}"

    if full_name not in _loggers:
        _loggers[full_name] = logging.getLogger(full_name)

    return LoggerAdapter(_loggers[full_name], extra)


def set_log_context(**kwargs) -> Token:
    """
    Add values to the logging context of the current task.

    Returns:
        Token that restores the previous context via ``reset_log_context``

    Example:
        token = set_log_context(uid="user-42")
        logger.info("Processing turn")  # Will include uid
        reset_log_context(token)
    """
    return ContextFilter.set_context(**kwargs)


def reset_log_context(token: Token) -> None:
    """Restore the logging context saved by ``set_log_context``."""
    ContextFilter.reset_context(token)


def get_log_context() -> Dict[str, Any]:
    """Return a copy of the logging context of the current task."""
    return ContextFilter.get_context()
