"""
Configuration Management - YAML-based configuration with environment overrides
=============================================================================

This module handles all configuration aspects including:
- Loading from YAML files
- Environment variable overrides
- Default values
- Configuration validation
"""

import os
import yaml
from pathlib import Path
from typing import Any, Dict, Optional, List
from dataclasses import dataclass, field, asdict

from .exceptions import ConfigError


def _default_code_replies() -> Dict[str, str]:
    return {
        "204": "OK, got that.",
        "403": "You have no permission to do this.",
        "404": "Don't know what you are saying.",
        "500": "Something is broken...",
    }


@dataclass
class BotConfig:
    """
    Dispatcher behavior configuration.

    Attributes:
        keep_blank: Keep surrounding whitespace of inbound text. When
            False, text is stripped before matching.
        break_on_error: Abort the current pipeline stage as soon as a
            handler fails. When False the failure is logged and the walk
            moves on to the next rule.
        code_replies: Human readable replies keyed by status code.
    """
    keep_blank: bool = True
    break_on_error: bool = True
    code_replies: Dict[str, str] = field(default_factory=_default_code_replies)

    def validate(self) -> None:
        """Validate dispatcher configuration."""
        if not isinstance(self.code_replies, dict):
            raise ConfigError("code_replies must be a mapping of code to text")
        for code, text in self.code_replies.items():
            if not isinstance(text, str):
                raise ConfigError(f"Reply for code {code} must be a string")


@dataclass
class SessionConfig:
    """
    Session store configuration.

    Controls which backend keeps per-conversation state between turns.
    """
    backend: str = "memory"  # memory, sqlite
    db_path: str = ""

    def validate(self) -> None:
        """Validate session configuration."""
        if self.backend not in ["memory", "sqlite"]:
            raise ConfigError(f"Invalid session backend: {self.backend}")


@dataclass
class WebConfig:
    """
    Webhook server configuration.
    """
    host: str = "127.0.0.1"
    port: int = 8080
    path: str = "/"

    def validate(self) -> None:
        """Validate web configuration."""
        if self.port < 1 or self.port > 65535:
            raise ConfigError(f"Invalid web port: {self.port}")
        if not self.path.startswith("/"):
            raise ConfigError(f"Webhook path must start with '/', got {self.path!r}")


@dataclass
class Config:
    """
    Main configuration container.

    Aggregates all configuration sections into a single object
    and provides methods for loading, saving, and validating.
    """
    app_name: str = "rulebot"
    version: str = "1.0.0"
    debug: bool = False
    log_level: str = "INFO"

    bot: BotConfig = field(default_factory=BotConfig)
    session: SessionConfig = field(default_factory=SessionConfig)
    web: WebConfig = field(default_factory=WebConfig)

    # Dialog files loaded at startup
    dialogs: List[str] = field(default_factory=list)

    # Paths (set at runtime)
    config_dir: str = ""
    data_dir: str = ""
    log_dir: str = ""

    def validate(self) -> None:
        """
        Validate all configuration sections.

        Raises:
            ConfigError: If any configuration section is invalid
        """
        self.bot.validate()
        self.session.validate()
        self.web.validate()

    def to_dict(self) -> Dict[str, Any]:
        """Convert configuration to dictionary."""
        return {
            "app_name": self.app_name,
            "version": self.version,
            "debug": self.debug,
            "log_level": self.log_level,
            "bot": asdict(self.bot),
            "session": asdict(self.session),
            "web": asdict(self.web),
            "dialogs": list(self.dialogs),
        }


def get_default_config_dir() -> Path:
    """
    Get the default configuration directory path.

    Returns:
        Path to the configuration directory
    """
    if "RULEBOT_CONFIG_DIR" in os.environ:
        return Path(os.environ["RULEBOT_CONFIG_DIR"])

    if "XDG_CONFIG_HOME" in os.environ:
        return Path(os.environ["XDG_CONFIG_HOME"]) / "rulebot"

    return Path.home() / ".config" / "rulebot"


def get_default_data_dir() -> Path:
    """
    Get the default data directory path.

    Returns:
        Path to the data directory
    """
    if "RULEBOT_DATA_DIR" in os.environ:
        return Path(os.environ["RULEBOT_DATA_DIR"])

    if "XDG_DATA_HOME" in os.environ:
        return Path(os.environ["XDG_DATA_HOME"]) / "rulebot"

    return Path.home() / ".local" / "share" / "rulebot"


def load_config(config_path: Optional[str] = None, load_env: bool = True) -> Config:
    """
    Load configuration from YAML file with environment variable overrides.

    This function loads configuration in the following order:
    1. Default values from dataclass
    2. Values from YAML file
    3. Environment variable overrides

    Args:
        config_path: Path to configuration file (optional)
        load_env: Whether to load environment variable overrides

    Returns:
        Config object with loaded values

    Raises:
        ConfigError: If configuration is invalid or cannot be loaded
    """
    config = Config()

    config.config_dir = str(get_default_config_dir())
    config.data_dir = str(get_default_data_dir())
    config.log_dir = str(Path(config.data_dir) / "logs")

    if config_path:
        yaml_path = Path(config_path)
        if not yaml_path.exists():
            raise ConfigError("Config file not found", {"path": str(yaml_path)})
    else:
        yaml_path = Path(config.config_dir) / "config.yaml"

    if yaml_path.exists():
        try:
            with open(yaml_path, "r", encoding="utf-8") as f:
                yaml_config = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise ConfigError(f"Failed to parse config file: {e}", {"path": str(yaml_path)})
        except IOError as e:
            raise ConfigError(f"Failed to read config file: {e}", {"path": str(yaml_path)})

        if not isinstance(yaml_config, dict):
            raise ConfigError("Config file must contain a mapping", {"path": str(yaml_path)})
        _apply_yaml_config(config, yaml_config)

    if load_env:
        _apply_env_overrides(config)

    if not config.session.db_path:
        config.session.db_path = str(Path(config.data_dir) / "sessions.db")

    config.validate()

    return config


def _apply_yaml_config(config: Config, yaml_config: Dict[str, Any]) -> None:
    """
    Apply YAML configuration values to Config object.

    Args:
        config: Config object to update
        yaml_config: Dictionary of configuration values from YAML
    """
    for key in ("app_name", "version", "debug", "log_level", "log_dir", "data_dir"):
        if key in yaml_config:
            setattr(config, key, yaml_config[key])

    if "dialogs" in yaml_config:
        dialogs = yaml_config["dialogs"] or []
        if isinstance(dialogs, str):
            dialogs = [dialogs]
        config.dialogs = list(dialogs)

    for section in ("bot", "session", "web"):
        values = yaml_config.get(section)
        if not values:
            continue
        if not isinstance(values, dict):
            raise ConfigError(f"Config section '{section}' must be a mapping")
        section_obj = getattr(config, section)
        for key, value in values.items():
            if hasattr(section_obj, key):
                setattr(section_obj, key, value)

    # Partial overrides keep the default texts for codes not mentioned
    custom_replies = (yaml_config.get("bot") or {}).get("code_replies")
    if isinstance(custom_replies, dict):
        merged = _default_code_replies()
        merged.update({str(k): v for k, v in custom_replies.items()})
        config.bot.code_replies = merged


def _apply_env_overrides(config: Config) -> None:
    """
    Apply environment variable overrides to Config object.

    Environment variables follow the pattern: RULEBOT_SECTION_KEY
    For example: RULEBOT_BOT_KEEP_BLANK, RULEBOT_WEB_PORT

    Args:
        config: Config object to update
    """
    env_mappings = {
        "RULEBOT_DEBUG": (None, "debug", bool),
        "RULEBOT_LOG_LEVEL": (None, "log_level"),

        "RULEBOT_BOT_KEEP_BLANK": ("bot", "keep_blank", bool),
        "RULEBOT_BOT_BREAK_ON_ERROR": ("bot", "break_on_error", bool),

        "RULEBOT_SESSION_BACKEND": ("session", "backend"),
        "RULEBOT_SESSION_DB_PATH": ("session", "db_path"),

        "RULEBOT_WEB_HOST": ("web", "host"),
        "RULEBOT_WEB_PORT": ("web", "port", int),
        "RULEBOT_WEB_PATH": ("web", "path"),
    }

    for env_var, mapping in env_mappings.items():
        value = os.environ.get(env_var)
        if value is None:
            continue

        section, key = mapping[0], mapping[1]
        converter = mapping[2] if len(mapping) > 2 else str
        target = config if section is None else getattr(config, section)

        if converter == bool:
            converted = value.lower() in ("true", "1", "yes", "on")
        else:
            try:
                converted = converter(value)
            except ValueError as e:
                raise ConfigError(f"Invalid value for {env_var}: {e}")

        setattr(target, key, converted)


def save_config(config: Config, config_path: Optional[str] = None) -> None:
    """
    Save configuration to YAML file.

    Args:
        config: Config object to save
        config_path: Path to save configuration (optional)

    Raises:
        ConfigError: If configuration cannot be saved
    """
    if config_path:
        yaml_path = Path(config_path)
    else:
        yaml_path = Path(config.config_dir) / "config.yaml"

    yaml_path.parent.mkdir(parents=True, exist_ok=True)

    try:
        with open(yaml_path, "w", encoding="utf-8") as f:
            yaml.dump(config.to_dict(), f, default_flow_style=False, sort_keys=False, allow_unicode=True)
    except IOError as e:
        raise ConfigError(f"Failed to save config file: {e}", {"path": str(yaml_path)})
