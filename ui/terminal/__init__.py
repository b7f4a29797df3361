"""
Terminal UI Module - Textual-based TUI
=====================================

This module provides a terminal chat with a bot using Textual.
"""

from .app import RulebotApp, run_tui

__all__ = [
    "RulebotApp",
    "run_tui",
]
