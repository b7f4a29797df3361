"""
Session Stores - Persistence behind get/set/destroy
===================================================

The dispatcher only needs three operations from a store:

- ``get(session_id)`` returns the stored payload, or ``{}`` when absent
- ``set(session_id, payload)`` persists a payload
- ``destroy(session_id)`` removes it

Two backends are provided: an in-process dictionary and SQLite.
"""

import asyncio
import copy
from abc import ABC, abstractmethod
from typing import Any, Dict, Optional

from core.config import SessionConfig
from core.database import Database, init_database
from core.exceptions import ConfigError
from core.logging import get_logger

logger = get_logger("dispatch.store")


class SessionStore(ABC):
    """
    Abstract session store.

    Implementations must not fail for a missing session, only for
    genuine I/O errors (raised as ``StoreError``).
    """

    @abstractmethod
    async def get(self, session_id: str) -> Dict[str, Any]:
        """Load a session payload, ``{}`` if none is stored."""

    @abstractmethod
    async def set(self, session_id: str, payload: Dict[str, Any]) -> None:
        """Persist a session payload."""

    @abstractmethod
    async def destroy(self, session_id: str) -> None:
        """Remove a stored session."""


class MemoryStore(SessionStore):
    """
    In-process store.

    Payloads are copied on the way in and out, so a turn never mutates
    stored state before it is saved.
    """

    def __init__(self):
        self.sessions: Dict[str, Dict[str, Any]] = {}

    async def get(self, session_id: str) -> Dict[str, Any]:
        return copy.deepcopy(self.sessions.get(session_id, {}))

    async def set(self, session_id: str, payload: Dict[str, Any]) -> None:
        self.sessions[session_id] = copy.deepcopy(payload)

    async def destroy(self, session_id: str) -> None:
        self.sessions.pop(session_id, None)


class SQLiteStore(SessionStore):
    """
    SQLite-backed store.

    Blocking database calls run in worker threads; the database keeps
    one connection per thread.
    """

    def __init__(self, db_path: Optional[str] = None, database: Optional[Database] = None):
        if database is None:
            if not db_path:
                raise ConfigError("SQLiteStore needs a db_path or a database")
            database = init_database(db_path)
        self.database = database

    async def get(self, session_id: str) -> Dict[str, Any]:
        return await asyncio.to_thread(self.database.get_session, session_id)

    async def set(self, session_id: str, payload: Dict[str, Any]) -> None:
        await asyncio.to_thread(self.database.set_session, session_id, payload)

    async def destroy(self, session_id: str) -> None:
        await asyncio.to_thread(self.database.delete_session, session_id)


def create_store(config: SessionConfig) -> SessionStore:
    """
    Create the store selected by configuration.

    Raises:
        ConfigError: For unknown backends
    """
    if config.backend == "memory":
        return MemoryStore()
    if config.backend == "sqlite":
        logger.info(f"using SQLite session store at {config.db_path}")
        return SQLiteStore(db_path=config.db_path)
    raise ConfigError(f"Invalid session backend: {config.backend}")
