"""
Message - Per-turn handle on an inbound message
===============================================

The dispatcher wraps every inbound payload in a ``Message``. Handlers
receive it, read ``text``/``params``/``session`` from it and may set
``reply``, ``ended`` or their own attributes for later rules of the
same turn.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, Mapping, Optional

from core.exceptions import DispatchError, RuleError
from core.logging import get_logger
from .session import Session

logger = get_logger("dispatch.message")

_PAYLOAD_FIELDS = ("uid", "type", "text", "params", "reply")


@dataclass
class Message:
    """
    An inbound message and its per-turn bookkeeping.

    Attributes:
        uid (str): Conversation id
        type (str): Message type, ``"text"`` for text messages
        text (str): Text payload
        params (dict): Regex captures of matched rules
        reply: Outgoing reply (string or structured content)
        session (Session): Conversation state
        raw (dict): Payload fields without a dedicated attribute
        bot: Dispatcher handling the turn
        error (DispatchError): Error the turn ended with
        ended (bool): Set by a handler to end the turn
        rule_index (int): Index of the rule being evaluated
        current_rule (Rule): Rule being evaluated
        rewait_count (int): Re-arms of the wait rule this turn consumed
    """
    uid: Optional[str] = None
    type: str = "text"
    text: Optional[str] = None
    params: Dict[str, Any] = field(default_factory=dict)
    reply: Any = None
    session: Optional[Session] = None
    raw: Dict[str, Any] = field(default_factory=dict)

    bot: Any = field(default=None, repr=False)
    error: Optional[DispatchError] = None
    ended: bool = False
    rule_index: int = -1
    current_rule: Any = field(default=None, repr=False)
    rewait_count: int = 0

    @classmethod
    def from_payload(cls, data: Any) -> "Message":
        """
        Build a message from a raw payload.

        Args:
            data: A Message (returned as is), a text string, or a mapping
                with ``uid``/``type``/``text`` and any other fields

        Raises:
            RuleError: For unsupported payload types
        """
        if isinstance(data, Message):
            return data

        if isinstance(data, str):
            return cls(text=data)

        if isinstance(data, Mapping):
            known = {key: data[key] for key in _PAYLOAD_FIELDS if key in data}
            if "uid" in known and known["uid"] is not None:
                known["uid"] = str(known["uid"])
            known["params"] = dict(known.get("params") or {})
            raw = {key: value for key, value in data.items() if key not in _PAYLOAD_FIELDS}
            return cls(raw=raw, **known)

        raise RuleError(f"Unsupported message payload: {type(data).__name__}")

    @property
    def session_id(self) -> Optional[str]:
        if self.session is not None and self.session.id:
            return self.session.id
        return self.uid

    def is_type(self, message_type: str) -> bool:
        return self.type == message_type

    def begin_turn(self) -> None:
        """Reset per-turn bookkeeping before the message is dispatched."""
        self.params = {}
        self.reply = None
        self.error = None
        self.ended = False
        self.rule_index = -1
        self.current_rule = None
        self.rewait_count = 0

    def _wait_state(self):
        if self.session is None:
            raise RuleError("Waiting requires a session")
        return self.session.wait

    def wait(self, rule: Any = None) -> "Message":
        """
        Make the next turn of this conversation try a wait rule first.

        Args:
            rule: Wait rule name, or a Rule whose name is used

        Raises:
            RuleError: If rule is neither a name nor a Rule, or the
                message has no session
        """
        if not rule:
            return self

        name = getattr(rule, "name", rule)
        if not isinstance(name, str):
            raise RuleError("Invalid wait rule name", {"rule": repr(rule)})

        if self.bot is not None and self.bot.get_wait_rule(name) is None:
            logger.warning(f"wait rule [{name}] is not registered yet")

        logger.info(f"add wait rule [{name}] for user {self.uid}")
        self._wait_state().arm(name)
        return self

    def rewait(self) -> "Message":
        """Wait on the same rule set again and count the attempt."""
        state = self._wait_state()
        state.rearm()
        logger.info(f"rewait rule [{state.last_waited}] (attempt {state.rewait_count})")
        return self

    def resolve(self) -> "Message":
        """Leave the wait state."""
        self._wait_state().clear()
        return self

    def to_dict(self) -> Dict[str, Any]:
        """Serialize the outcome of a turn."""
        return {
            "uid": self.uid,
            "type": self.type,
            "text": self.text,
            "params": dict(self.params),
            "reply": self.reply,
            "error": None if self.error is None else {
                "code": self.error.code,
                "message": self.error.message,
            },
        }
