"""
Dispatch Module - Per-turn message dispatching

Contains the Bot dispatcher, messages, session state and session stores.
"""

from .bot import Bot, REPLY_PREFIX, build_bot
from .message import Message
from .registry import WaitRegistry
from .session import Session, WaitState
from .store import SessionStore, MemoryStore, SQLiteStore, create_store

__all__ = [
    "Bot",
    "REPLY_PREFIX",
    "build_bot",
    "Message",
    "WaitRegistry",
    "Session",
    "WaitState",
    "SessionStore",
    "MemoryStore",
    "SQLiteStore",
    "create_store",
]
