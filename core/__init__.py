"""
Core Module - Foundation components for rulebot
===============================================

This module provides the foundational components including:
- Configuration management
- Session database
- Logging setup
- Exception handling
"""

from .config import Config, BotConfig, SessionConfig, WebConfig, load_config, save_config
from .database import Database, init_database
from .exceptions import (
    RulebotError,
    ConfigError,
    RuleError,
    StoreError,
    DispatchError,
    NotFoundError,
    NoReplyError,
    HandlerError,
)
from .logging import setup_logging, get_logger

__version__ = "1.0.0"

__all__ = [
    "Config",
    "BotConfig",
    "SessionConfig",
    "WebConfig",
    "load_config",
    "save_config",
    "Database",
    "init_database",
    "RulebotError",
    "ConfigError",
    "RuleError",
    "StoreError",
    "DispatchError",
    "NotFoundError",
    "NoReplyError",
    "HandlerError",
    "setup_logging",
    "get_logger",
]
