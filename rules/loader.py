"""
Rule Loading - Dialog tables and rule modules
=============================================

Bulk-loads rule declarations from outside the code that builds the bot:

- dialog tables in YAML or JSON files (or already-parsed data)
- Python modules exposing ``setup(bot)`` or a module-level ``RULE``
"""

import importlib
import importlib.util
from pathlib import Path
from typing import Any, Dict, List, Union

import yaml

from core.exceptions import RuleError
from core.logging import get_logger

logger = get_logger("rules.loader")

DIALOG_SUFFIXES = (".yaml", ".yml", ".json")


def read_dialog_file(path: Union[str, Path]) -> Any:
    """
    Parse a YAML or JSON dialog file.

    JSON is a subset of YAML, so both go through the YAML parser.

    Raises:
        RuleError: If the file is missing, has the wrong suffix or
            cannot be parsed
    """
    path = Path(path)
    if path.suffix.lower() not in DIALOG_SUFFIXES:
        raise RuleError(f"Unsupported dialog file type: {path.suffix}", {"path": str(path)})

    try:
        with open(path, "r", encoding="utf-8") as f:
            return yaml.safe_load(f) or {}
    except FileNotFoundError:
        raise RuleError("Dialog file not found", {"path": str(path)})
    except yaml.YAMLError as e:
        raise RuleError(f"Failed to parse dialog file: {e}", {"path": str(path)})


def load_dialog(source: Any) -> List[Dict[str, Any]]:
    """
    Turn a dialog table into rule specs.

    A table is either a mapping or a list:

    - ``key: "reply"`` / ``key: [replies...]`` becomes a rule named
      ``dialog_<key>`` with ``key`` as pattern
    - ``key: {handler: ...}`` keeps its options; ``name`` defaults to
      ``dialog_<key>`` and ``pattern`` to ``key``
    - list items ``[pattern, reply]`` use the pair, other list items are
      treated as rule options keyed by their position

    Args:
        source: Path to a dialog file, or already-parsed table

    Returns:
        List of rule spec mappings ready for ``Bot.set``
    """
    if isinstance(source, (str, Path)):
        logger.info(f"loading dialog file: {source}")
        source = read_dialog_file(source)

    if isinstance(source, dict):
        entries = list(source.items())
    elif isinstance(source, (list, tuple)):
        entries = list(enumerate(source))
    else:
        raise RuleError(f"Unsupported dialog table: {type(source).__name__}")

    specs = []
    for key, item in entries:
        if isinstance(item, (str, list, tuple)):
            if isinstance(key, int) and isinstance(item, (list, tuple)) and len(item) == 2:
                key, item = item
            key = str(key)
            specs.append({"name": f"dialog_{key}", "pattern": key, "handler": item})
        elif isinstance(item, dict):
            spec = dict(item)
            spec.setdefault("name", f"dialog_{key}")
            spec.setdefault("pattern", str(key))
            specs.append(spec)
        else:
            raise RuleError(f"Unsupported dialog entry for {key!r}: {type(item).__name__}")
    return specs


def import_rule_module(name: str):
    """
    Import a rule module by dotted name or by ``.py`` path.

    Raises:
        RuleError: If the module cannot be found
    """
    if name.endswith(".py"):
        path = Path(name).resolve()
        if not path.exists():
            raise RuleError("Rule module not found", {"path": str(path)})
        spec = importlib.util.spec_from_file_location(path.stem, path)
        module = importlib.util.module_from_spec(spec)
        spec.loader.exec_module(module)
        return module

    try:
        return importlib.import_module(name)
    except ImportError as e:
        raise RuleError(f"Cannot import rule module {name!r}: {e}")


def load_module(bot, name: str) -> None:
    """
    Register the rules of one module on a bot.

    A module-level ``setup(bot)`` is called when present; otherwise the
    module's ``RULE`` spec is registered, named after the module unless
    it names itself.
    """
    module = import_rule_module(name)

    setup = getattr(module, "setup", None)
    if callable(setup):
        setup(bot)
        return

    rule = getattr(module, "RULE", None)
    if rule is None:
        raise RuleError(f"Rule module {name!r} defines neither setup() nor RULE")

    if isinstance(rule, dict):
        rule = dict(rule)
        rule.setdefault("name", module.__name__)
    bot.set(rule)
