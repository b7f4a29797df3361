"""
Session State - Per-conversation data and wait state
====================================================

A session holds two things for one conversation:

- ``data``: an opaque key-value bag owned by rule handlers
- ``wait``: the dispatcher's wait state (which rule set the next turn
  must try first, and how many times it has been re-armed)

Keeping the wait state in its own structure means handler keys can
never collide with it.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, Optional


@dataclass
class WaitState:
    """
    Wait state of a conversation.

    Attributes:
        waiter (str): Wait rule name the next turn tries first
        last_waited (str): Wait rule consumed by the current turn
        rewait_count (int): Consecutive re-arms of ``last_waited``
    """
    waiter: Optional[str] = None
    last_waited: Optional[str] = None
    rewait_count: int = 0

    @property
    def pending(self) -> bool:
        return bool(self.waiter)

    def arm(self, name: str) -> None:
        self.waiter = name

    def take(self) -> Optional[str]:
        """Consume the pending waiter, remembering it as ``last_waited``."""
        waiter = self.waiter
        if waiter:
            self.waiter = None
            self.last_waited = waiter
        return waiter

    def rearm(self) -> Optional[str]:
        """Wait on ``last_waited`` again and count the attempt."""
        self.rewait_count += 1
        if self.last_waited:
            self.waiter = self.last_waited
        return self.waiter

    def clear(self) -> None:
        self.waiter = None
        self.last_waited = None
        self.rewait_count = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "waiter": self.waiter,
            "last_waited": self.last_waited,
            "rewait_count": self.rewait_count,
        }

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "WaitState":
        data = data or {}
        return cls(
            waiter=data.get("waiter"),
            last_waited=data.get("last_waited"),
            rewait_count=int(data.get("rewait_count") or 0),
        )


@dataclass
class Session:
    """
    Mutable state of one conversation.

    Supports dict-style access to the handler data bag:

        session["step"] = 2
        session.get("step")

    Attributes:
        id (str): Conversation id
        data (dict): Handler-defined fields
        wait (WaitState): Dispatcher wait state
    """
    id: Optional[str] = None
    data: Dict[str, Any] = field(default_factory=dict)
    wait: WaitState = field(default_factory=WaitState)

    def __getitem__(self, key: str) -> Any:
        return self.data[key]

    def __setitem__(self, key: str, value: Any) -> None:
        self.data[key] = value

    def __delitem__(self, key: str) -> None:
        del self.data[key]

    def __contains__(self, key: str) -> bool:
        return key in self.data

    def get(self, key: str, default: Any = None) -> Any:
        return self.data.get(key, default)

    def pop(self, key: str, default: Any = None) -> Any:
        return self.data.pop(key, default)

    def to_dict(self) -> Dict[str, Any]:
        """Serialize for a session store."""
        return {
            "data": dict(self.data),
            "wait": self.wait.to_dict(),
        }

    @classmethod
    def from_dict(cls, session_id: Optional[str], payload: Optional[Dict[str, Any]]) -> "Session":
        """
        Rebuild a session from stored data.

        Payloads without the ``data``/``wait`` layout are taken as a
        plain data bag.
        """
        payload = payload or {}
        if "data" in payload or "wait" in payload:
            return cls(
                id=session_id,
                data=dict(payload.get("data") or {}),
                wait=WaitState.from_dict(payload.get("wait")),
            )
        return cls(id=session_id, data=dict(payload))
