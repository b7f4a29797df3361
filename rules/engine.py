"""
Rules Engine - Rule normalization, matching and execution
=========================================================

This module implements the rule model used by the dispatcher:

- ``convert`` turns heterogeneous rule declarations into an ordered
  list of ``Rule`` objects
- ``Rule.test`` matches a message against the rule's pattern and
  merges regex captures into ``message.params``
- ``Rule.execute`` runs the rule's handler and yields either a reply
  value or ``None`` ("skip, keep walking")

Patterns and handlers are classified once, when the rule is built.
Nothing is re-parsed per message.
"""

import asyncio
import inspect
import random
import re
from enum import Enum
from typing import Any, Callable, Dict, List, Mapping, Optional, Tuple

from core.exceptions import DispatchError, RuleError
from core.logging import get_logger
from .templates import substitute

logger = get_logger("rules.engine")

ANONYMOUS = "annonymous_fn"

# Consent phrases, tolerant of trailing soft particles
YEP = re.compile(
    r"^(是|yes|yep|yeah|Y|阔以|可以|要得|好|需?要|OK|恩|嗯|找|搜|搞起)[啊的吧嘛诶啦唉哎!.。]*$",
    re.IGNORECASE,
)
NOPE = re.compile(
    r"^(不(是|需?要|必|用|需|行|可以)?了?|no?|nope|不好|否|算了)[啊的吧嘛诶啦唉哎!.。]*$",
    re.IGNORECASE,
)

SHORTHANDS: Dict[str, "re.Pattern"] = {
    "Y": YEP,
    "N": NOPE,
}

_REGEX_LITERAL = re.compile(r"^/(.*)/([gimsx]*)$", re.DOTALL)

_REGEX_FLAGS = {
    "i": re.IGNORECASE,
    "m": re.MULTILINE,
    "s": re.DOTALL,
    "x": re.VERBOSE,
    "g": 0,  # every search is global enough for a single match
}

_RULE_KEYS = ("name", "pattern", "handler", "replies", "domain", "description")


class PatternKind(Enum):
    """How a rule decides whether a message matches."""
    ALWAYS = "always"         # No pattern: matches everything
    LITERAL = "literal"       # Exact text equality
    REGEX = "regex"           # re.search with capture extraction
    PREDICATE = "predicate"   # Callable over the message


class HandlerKind(Enum):
    """How a rule produces its reply."""
    EMPTY = "empty"                  # Nothing to run, always skips
    LITERAL = "literal"              # Template string
    RANDOM_CHOICE = "random_choice"  # One of several handlers per call
    SYNC = "sync"                    # fn(message), may be a coroutine function
    CONTINUATION = "continuation"    # fn(message, done)
    VERBATIM = "verbatim"            # Structured reply returned as is
    INVALID = "invalid"              # Unsupported type, always skips


def _callable_name(fn: Callable) -> str:
    name = getattr(fn, "__name__", None)
    if not name or name == "<lambda>":
        return ANONYMOUS
    return name


def _positional_arity(fn: Callable) -> int:
    """Count required positional parameters of a callable."""
    try:
        signature = inspect.signature(fn)
    except (TypeError, ValueError):
        return 1

    count = 0
    for param in signature.parameters.values():
        if param.kind not in (param.POSITIONAL_ONLY, param.POSITIONAL_OR_KEYWORD):
            continue
        if param.default is not param.empty:
            break
        count += 1
    return count


def _takes_message(fn: Callable) -> bool:
    """Whether a callable accepts at least one positional argument."""
    try:
        signature = inspect.signature(fn)
    except (TypeError, ValueError):
        return True

    return any(
        param.kind in (param.POSITIONAL_ONLY, param.POSITIONAL_OR_KEYWORD, param.VAR_POSITIONAL)
        for param in signature.parameters.values()
    )


def str_to_regex(text: str) -> Optional["re.Pattern"]:
    """
    Compile a ``/body/flags`` literal.

    Returns:
        The compiled pattern, or None when text is not such a literal

    Raises:
        RuleError: If the body is not a valid regular expression
    """
    m = _REGEX_LITERAL.match(text)
    if not m:
        return None

    flags = 0
    for flag in m.group(2):
        flags |= _REGEX_FLAGS[flag]

    try:
        return re.compile(m.group(1), flags)
    except re.error as e:
        raise RuleError(f"Invalid regex pattern {text!r}: {e}")


def compile_pattern(spec: Any) -> Tuple[PatternKind, Any, Optional[str]]:
    """
    Normalize a pattern declaration.

    String grammar, in order: shorthand token (``Y``/``N``), ``/body/flags``
    literal, ``=literal`` for exact equality, anything else compiled as
    a regex.

    Args:
        spec: None, a string, a compiled regex or a predicate callable

    Returns:
        Tuple of (kind, normalized pattern, source text for naming)

    Raises:
        RuleError: If the pattern cannot be normalized
    """
    if spec is None:
        return PatternKind.ALWAYS, None, None

    if isinstance(spec, re.Pattern):
        return PatternKind.REGEX, spec, spec.pattern

    if isinstance(spec, str):
        if spec in SHORTHANDS:
            return PatternKind.REGEX, SHORTHANDS[spec], spec

        regex = str_to_regex(spec)
        if regex is not None:
            return PatternKind.REGEX, regex, spec

        if spec.startswith("="):
            return PatternKind.LITERAL, spec[1:], spec

        try:
            return PatternKind.REGEX, re.compile(spec), spec
        except re.error as e:
            raise RuleError(f"Invalid regex pattern {spec!r}: {e}")

    if callable(spec):
        return PatternKind.PREDICATE, spec, _callable_name(spec)

    raise RuleError(f"Unsupported pattern type: {type(spec).__name__}", {"pattern": repr(spec)})


def extract_captures(match: "re.Match") -> Dict[str, str]:
    """
    Collect numbered and named groups of a regex match.

    Numbered groups are keyed ``"1"``, ``"2"``, ...; named groups are
    added after them. Groups that did not participate are skipped.
    """
    captures = {}
    for index, value in enumerate(match.groups(), start=1):
        if value is not None:
            captures[str(index)] = value
    for key, value in match.groupdict().items():
        if value is not None:
            captures[key] = value
    return captures


class Handler:
    """
    A handler declaration classified into a ``HandlerKind``.

    Attributes:
        kind (HandlerKind): Resolved variant
        value: The declared handler
        choices (list): Classified alternatives for RANDOM_CHOICE
        takes_message (bool): SYNC handlers only; False for zero-argument functions
    """

    __slots__ = ("kind", "value", "choices", "takes_message")

    def __init__(self, kind: HandlerKind, value: Any, choices: Optional[List["Handler"]] = None):
        self.kind = kind
        self.value = value
        self.choices = choices or []
        self.takes_message = kind is HandlerKind.SYNC and _takes_message(value)

    @classmethod
    def classify(cls, value: Any, nested: bool = False) -> "Handler":
        """
        Resolve a handler declaration to its variant.

        Args:
            value: The declared handler
            nested: True for elements of a random-choice list; lists
                found there are structured replies, not further choices
        """
        if value is None:
            return cls(HandlerKind.EMPTY, value)

        if isinstance(value, str):
            return cls(HandlerKind.LITERAL if value else HandlerKind.EMPTY, value)

        if isinstance(value, (list, tuple)) and not nested:
            if not value:
                return cls(HandlerKind.EMPTY, value)
            choices = [cls.classify(item, nested=True) for item in value]
            return cls(HandlerKind.RANDOM_CHOICE, value, choices)

        if isinstance(value, (bool, int, float)):
            return cls(HandlerKind.INVALID, value)

        if callable(value):
            if _positional_arity(value) >= 2:
                return cls(HandlerKind.CONTINUATION, value)
            return cls(HandlerKind.SYNC, value)

        return cls(HandlerKind.VERBATIM, value)

    async def run(self, rule: "Rule", message: Any) -> Any:
        """
        Produce this handler's result for a message.

        Returns:
            The reply value, or None to keep walking

        Raises:
            Exception: Whatever the handler raises or reports
        """
        kind = self.kind

        if kind is HandlerKind.EMPTY:
            logger.warning(f"[{rule.name}] handler not defined")
            return None

        if kind is HandlerKind.RANDOM_CHOICE:
            logger.debug(f"[{rule.name}] handler is a list, picking one")
            return await random.choice(self.choices).run(rule, message)

        if kind is HandlerKind.LITERAL:
            text = self.value
            params = getattr(message, "params", None)
            if params:
                text = substitute(text, params)
            return text

        if kind is HandlerKind.SYNC:
            result = self.value(message) if self.takes_message else self.value()
            if inspect.isawaitable(result):
                result = await result
            return result if result else None

        if kind is HandlerKind.CONTINUATION:
            return await self._run_continuation(rule, message)

        if kind is HandlerKind.VERBATIM:
            return self.value

        logger.error(f"[{rule.name}] invalid handler: {self.value!r}")
        return None

    async def _run_continuation(self, rule: "Rule", message: Any) -> Any:
        loop = asyncio.get_running_loop()
        future = loop.create_future()

        def settle(outcome):
            if future.done():
                logger.warning(f"[{rule.name}] continuation called more than once")
                return
            future.set_result(outcome)

        def done(err=None, result=None):
            loop.call_soon_threadsafe(settle, (err, result))

        returned = self.value(message, done)
        if inspect.isawaitable(returned):
            await returned

        err, result = await future
        if err:
            if isinstance(err, BaseException):
                raise err
            raise DispatchError(f"[{rule.name}] reported {err}", code=err)
        return result if result else None


class Rule:
    """
    A named (pattern, handler) pair.

    Rules may carry nested ``replies`` (a rule spec tried first on the
    next turn once this rule answers) and a ``domain`` tag (entering the
    domain's gatekeeper group before this rule runs).

    Attributes:
        name (str): Rule name, fixed at construction
        pattern: Normalized pattern, fixed at construction
        handler: The handler as declared
        replies: Nested rule spec for the follow-up turn
        domain (str): Optional domain tag
        description (str): Human readable description
        parent (Rule): Rule whose replies produced this rule
        is_before (bool): True for before-reply hooks

    Example:
        rule = Rule(pattern=r"^hi (?P<who>\\w+)", handler="hello {who}")
        if rule.test(message):
            reply = await rule.execute(message)
    """

    def __init__(
        self,
        pattern: Any = None,
        handler: Any = None,
        name: Optional[str] = None,
        replies: Any = None,
        domain: Optional[str] = None,
        description: Optional[str] = None,
        parent: Optional["Rule"] = None,
    ):
        kind, normalized, source = compile_pattern(pattern)
        self._pattern_kind = kind
        self._pattern = normalized
        self._handler = Handler.classify(handler)
        self._name = name or self._derive_name(source, handler)

        self.handler = handler
        self.replies = replies
        self.domain = domain
        self.description = description or ""
        self.parent = parent
        self.is_before = False

    @staticmethod
    def _derive_name(source: Optional[str], handler: Any) -> str:
        if source:
            return source
        if callable(handler):
            return _callable_name(handler)
        if isinstance(handler, str) and handler:
            return handler
        if isinstance(handler, (list, tuple)) and handler:
            return ",".join(str(item) for item in handler)
        return ANONYMOUS

    @property
    def name(self) -> str:
        return self._name

    @property
    def pattern(self) -> Any:
        return self._pattern

    @property
    def pattern_kind(self) -> PatternKind:
        return self._pattern_kind

    @property
    def handler_kind(self) -> HandlerKind:
        return self._handler.kind

    @classmethod
    def from_spec(cls, spec: Any, parent: Optional["Rule"] = None) -> "Rule":
        """
        Build a single rule from a string, callable or mapping.

        - string: always-match rule replying with that string
        - callable: always-match rule running that function
        - mapping: explicit rule options (``pattern``, ``handler``, ...)

        Raises:
            RuleError: For unsupported specs or unknown mapping keys
        """
        if isinstance(spec, Rule):
            return spec

        if isinstance(spec, str):
            return cls(handler=spec, name=spec, description=f"Reply directly: {spec}", parent=parent)

        if callable(spec):
            description = getattr(spec, "description", None) or "Run function and reply with its result"
            return cls(handler=spec, description=description, parent=parent)

        if isinstance(spec, Mapping):
            unknown = [key for key in spec if key not in _RULE_KEYS]
            if unknown:
                raise RuleError(f"Unknown rule options: {', '.join(map(str, unknown))}")
            return cls(parent=parent, **dict(spec))

        raise RuleError(f"Unsupported rule spec: {type(spec).__name__}")

    def test(self, message: Any) -> bool:
        """
        Check if this rule matches a message.

        On a regex match all captures are merged into ``message.params``.
        Predicates are called with the message, whose ``current_rule``
        is set to this rule first.

        Args:
            message: The inbound message

        Returns:
            True if the rule matches
        """
        if message is None:
            logger.warning(f"[{self.name}] tested against an empty message")
            return False

        kind = self._pattern_kind

        if kind is PatternKind.ALWAYS:
            return True

        if kind is PatternKind.PREDICATE:
            message.current_rule = self
            return bool(self._pattern(message))

        text = getattr(message, "text", None)
        if getattr(message, "type", None) == "text" and text is not None:
            if kind is PatternKind.REGEX:
                match = self._pattern.search(text)
                logger.debug(f"matching {self._pattern.pattern!r} against {text!r}: {bool(match)}")
                if match is None:
                    return False
                message.params.update(extract_captures(match))
                return True
            return text == self._pattern

        logger.debug(f"[{self.name}] pattern not applicable to {getattr(message, 'type', None)!r} message")
        return False

    async def execute(self, message: Any) -> Any:
        """
        Run the handler for a matched message.

        Returns:
            The reply value, or None to continue with the next rule
        """
        logger.debug(f"executing rule [{self.name}] ({self._handler.kind.value})")
        return await self._handler.run(self, message)

    def to_dict(self) -> Dict[str, Any]:
        """Describe the rule for listings and debugging."""
        pattern = self._pattern
        if self._pattern_kind is PatternKind.REGEX:
            pattern = pattern.pattern
        elif self._pattern_kind is PatternKind.PREDICATE:
            pattern = _callable_name(pattern)
        return {
            "name": self.name,
            "pattern_kind": self._pattern_kind.value,
            "pattern": pattern,
            "handler_kind": self._handler.kind.value,
            "domain": self.domain,
            "has_replies": self.replies is not None,
            "is_before": self.is_before,
            "description": self.description,
        }

    def __repr__(self) -> str:
        return f"Rule(name={self.name!r}, pattern_kind={self._pattern_kind.value})"


def convert(spec: Any, parent: Optional[Rule] = None) -> List[Rule]:
    """
    Convert a rule declaration to an ordered list of rules.

    Supported shapes:

    - string or callable: one always-match rule
    - ``Rule``: returned as a one-item list
    - mapping with a ``handler`` key: one explicit rule
    - list/tuple: each element converted in order; two-element
      lists/tuples are ``[pattern, handler]`` pairs
    - other mapping: ``pattern -> handler`` entries in insertion order; a
      handler that is itself a mapping with ``handler`` is a nested rule
      spec whose ``pattern`` defaults to the key

    Empty input gives an empty list.

    Example:
        convert({
            "/^g(irl)?\\\\??$/i": "guess again",
            "=boy": lambda message: "right",
        })

    Raises:
        RuleError: For unsupported declarations
    """
    if spec is None:
        return []

    if isinstance(spec, Rule):
        return [spec]

    if isinstance(spec, str):
        return [Rule.from_spec(spec, parent)] if spec else []

    if callable(spec):
        return [Rule.from_spec(spec, parent)]

    if isinstance(spec, (list, tuple)):
        rules = []
        for item in spec:
            if isinstance(item, (list, tuple)) and len(item) == 2:
                rules.append(Rule(pattern=item[0], handler=item[1], parent=parent))
            else:
                rules.extend(convert(item, parent))
        return rules

    if isinstance(spec, Mapping):
        if "handler" in spec:
            return [Rule.from_spec(spec, parent)]
        rules = []
        for key, value in spec.items():
            if isinstance(value, Mapping) and "handler" in value:
                options = dict(value)
                options.setdefault("pattern", key)
                rules.append(Rule.from_spec(options, parent))
            else:
                rules.append(Rule(pattern=key, handler=value, parent=parent))
        return rules

    raise RuleError(f"Unsupported rule spec: {type(spec).__name__}")
