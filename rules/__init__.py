"""
Rules Module - Rule model and loading
=====================================

This module provides the rule layer of the dispatcher:
- Rule normalization from strings, callables, mappings and lists
- Literal, regex, shorthand and predicate patterns
- Literal, random-choice, function and continuation handlers
- Dialog table and rule module loading
"""

from .engine import Rule, Handler, PatternKind, HandlerKind, convert, SHORTHANDS
from .templates import substitute
from .loader import load_dialog, load_module

__all__ = [
    "Rule",
    "Handler",
    "PatternKind",
    "HandlerKind",
    "convert",
    "SHORTHANDS",
    "substitute",
    "load_dialog",
    "load_module",
]
