"""
Dispatcher - Rule registration and the per-turn pipeline
========================================================

A ``Bot`` owns the rule tables (before hooks, routes, domain groups,
after hooks, wait rules) and answers one inbound message per ``reply``
call:

1. build a ``Message`` and attach the conversation session
2. put the pending wait rule set (if any) in front of the routes
3. put the before hooks in front of everything
4. walk the list; the first rule producing a value ends the walk.
   A domain-tagged match first splices that domain's gatekeepers in
   front of the remaining rules, once per turn
5. run the after hooks
6. resolve the final reply and persist the session

Example:
    bot = Bot()
    bot.set("dial", "choose: 1/2/3", {"=1": "A", "=2": "B"})
    message = await bot.reply({"uid": "u1", "text": "dial"})
"""

import dataclasses
import inspect
import random
from typing import Any, Callable, Dict, List, Mapping, Optional

from core.config import BotConfig
from core.exceptions import (
    ConfigError,
    DispatchError,
    HandlerError,
    NoReplyError,
    NotFoundError,
    RuleError,
)
from core.logging import get_logger, reset_log_context, set_log_context
from rules.engine import Rule, convert
from rules.loader import load_dialog, load_module
from .message import Message
from .registry import WaitRegistry
from .session import Session
from .store import SessionStore, create_store

logger = get_logger("dispatch.bot")

REPLY_PREFIX = "_reply_"

_MISSING = object()


def _rule_names(rules: List[Rule]) -> str:
    if not rules:
        return "[NULL RULE]"
    return rules[0].name + (".." if len(rules) > 1 else "")


class Bot:
    """
    Rule dispatcher for one bot.

    Rule tables are filled at startup and read by every turn; the only
    later mutation is the lazy registration of derived wait rules.

    Attributes:
        config (BotConfig): Dispatcher behavior
        store (SessionStore): Optional session persistence
        befores (list): Before-reply hooks
        routes (list): Main rules, in priority order
        afters (list): After-reply hooks
        domain_rules (dict): Gatekeeper rules by domain name
        waits (WaitRegistry): Wait rule lists by name
    """

    def __init__(
        self,
        config: Optional[BotConfig] = None,
        store: Optional[SessionStore] = None,
        **options
    ):
        """
        Initialize the dispatcher.

        Args:
            config: Dispatcher configuration
            store: Session store; without one, sessions only live on the
                messages passed in
            **options: Overrides of ``config`` fields, e.g. keep_blank=False

        Raises:
            ConfigError: For unknown options or invalid configuration
        """
        try:
            self.config = dataclasses.replace(config or BotConfig(), **options)
        except TypeError as e:
            raise ConfigError(f"Invalid bot option: {e}")
        self.config.validate()

        self.store = store

        self.befores: List[Rule] = []
        self.routes: List[Rule] = []
        self.afters: List[Rule] = []
        self.domain_rules: Dict[str, List[Rule]] = {}
        self.waits = WaitRegistry()

    # === Registration ===

    def _rule(self, *args, **kwargs) -> List[Rule]:
        """
        Parse the argument forms shared by all registration methods.

        - ``(callable)``: always-match rule
        - ``(spec)``: any shape accepted by ``convert``
        - ``(name, {"handler": ...})``: named rule
        - ``(pattern, handler[, replies])``
        - keyword options: ``pattern=..., handler=..., name=...``
        """
        if kwargs:
            if args:
                raise RuleError("Pass a rule either positionally or as keyword options")
            return [Rule.from_spec(kwargs)]

        if not args:
            raise RuleError("Invalid rule: nothing to register")

        if len(args) == 1:
            return convert(args[0])

        if (
            len(args) == 2
            and isinstance(args[0], str)
            and isinstance(args[1], Mapping)
            and "handler" in args[1]
        ):
            spec = dict(args[1])
            spec["name"] = args[0]
            return [Rule.from_spec(spec)]

        if len(args) > 3:
            raise RuleError(f"Invalid rule: too many arguments ({len(args)})")

        replies = args[2] if len(args) == 3 else None
        return [Rule(pattern=args[0], handler=args[1], replies=replies)]

    def set(self, *args, **kwargs) -> "Bot":
        """Add main routes."""
        rules = self._rule(*args, **kwargs)
        existing = {rule.name for rule in self.routes}
        for rule in rules:
            if rule.name in existing:
                logger.warning(f"route name [{rule.name}] is already defined")
        logger.info(f"define route: [{_rule_names(rules)}]")
        self.routes.extend(rules)
        return self

    def before_reply(self, *args, **kwargs) -> "Bot":
        """
        Add before-reply hooks.

        Hooks run ahead of every turn. Hooks tagged with a domain only
        run once that domain is entered.
        """
        rules = self._rule(*args, **kwargs)
        for rule in rules:
            rule.is_before = True
        logger.info(f"define before hook: [{_rule_names(rules)}]")
        self.befores.extend(rules)
        return self

    use = before_reply

    def after_reply(self, *args, **kwargs) -> "Bot":
        """Add after-reply hooks; they see the resolved ``message.reply``."""
        rules = self._rule(*args, **kwargs)
        logger.info(f"define after hook: [{_rule_names(rules)}]")
        self.afters.extend(rules)
        return self

    def domain(self, name: str, *args, **kwargs) -> "Bot":
        """Add gatekeeper rules to a domain."""
        rules = self._rule(*args, **kwargs)
        logger.info(f"define domain [{name}] rule: [{_rule_names(rules)}]")
        self.domain_rules.setdefault(name, []).extend(rules)
        return self

    def wait_rule(self, name: str, rule: Any = _MISSING):
        """
        Get or register a named wait rule list.

        With one argument, returns ``get_wait_rule(name)``. With two,
        registers ``rule`` under ``name``: a mapping without ``handler``
        is a pattern table, anything else becomes a rule named ``name``.

        Raises:
            RuleError: If the name is already registered
        """
        if rule is _MISSING:
            return self.get_wait_rule(name)

        logger.info(f"define wait rule: [{name}]")

        if name in self.waits:
            raise RuleError("Wait rule name conflict", {"name": name})

        if isinstance(rule, Rule):
            rules = [rule]
        elif isinstance(rule, Mapping) and "handler" in rule:
            spec = dict(rule)
            spec.setdefault("name", name)
            rules = [Rule.from_spec(spec)]
        elif isinstance(rule, Mapping):
            rules = convert(rule)
        else:
            rules = [Rule(handler=rule, name=name)]

        self.waits.register(name, rules)
        return self

    def get_wait_rule(self, name: str) -> Optional[List[Rule]]:
        """
        Resolve a wait rule name to a rule list.

        Lookup order: registered wait lists, a route of that name, then
        ``_reply_<rule>`` names derived from a rule's replies.
        """
        rules = self.waits.get(name)
        if rules is not None:
            return rules

        route = self.get(name)
        if route is not None:
            return [route]

        if name.startswith(REPLY_PREFIX):
            owner = self._find_rule(name[len(REPLY_PREFIX):])
            if owner is not None and owner.replies is not None:
                return self._reply_rules(owner)

        return None

    def _reply_rules(self, rule: Rule) -> List[Rule]:
        return self.waits.get_or_create(
            REPLY_PREFIX + rule.name,
            lambda: convert(rule.replies, parent=rule),
        )

    def _find_rule(self, name: str) -> Optional[Rule]:
        """Find a rule by name in every table of this bot."""
        tables = [self.routes, self.befores, self.afters]
        tables.extend(self.domain_rules.values())
        tables.extend(self.waits.values())
        for table in tables:
            for rule in table:
                if rule.name == name:
                    return rule
        return None

    def get(self, name: str) -> Optional[Rule]:
        """Get the first route with the given name."""
        rules = self.gets(name)
        return rules[0] if rules else None

    def gets(self, name: Optional[str] = None, source: Optional[List[Rule]] = None) -> List[Rule]:
        """Get all rules of ``source`` (routes by default) with the given name."""
        source = self.routes if source is None else source
        if not name:
            return list(source)
        return [rule for rule in source if rule.name == name]

    def update(self, *args, **kwargs) -> "Bot":
        """Replace routes that share a name with the given rules."""
        replacements = {rule.name: rule for rule in self._rule(*args, **kwargs)}
        updated = 0
        for index, rule in enumerate(self.routes):
            if rule.name in replacements:
                self.routes[index] = replacements[rule.name]
                updated += 1
        if not updated:
            logger.warning(f"no route to update for [{', '.join(replacements)}]")
        return self

    def delete(self, name: str) -> "Bot":
        """Remove all routes with the given name."""
        self.routes = [rule for rule in self.routes if rule.name != name]
        return self

    def reset(self) -> "Bot":
        """Empty all rule tables."""
        self.befores = []
        self.routes = []
        self.afters = []
        self.domain_rules = {}
        self.waits.clear()
        return self

    def dialog(self, *sources) -> "Bot":
        """
        Load dialog tables as routes.

        Args:
            *sources: YAML/JSON file paths or already-parsed tables
        """
        for source in sources:
            for spec in load_dialog(source):
                self.set(spec)
        return self

    def loads(self, *modules: str) -> "Bot":
        """
        Load rule modules.

        Args:
            *modules: Dotted module names or ``.py`` paths
        """
        for name in modules:
            load_module(self, name)
        return self

    # === Replying ===

    def code_to_reply(self, code: Any) -> str:
        """Map a status code to its configured human readable reply."""
        key = str(code)
        return self.config.code_replies.get(key, key)

    async def reply(self, data: Any, callback: Optional[Callable] = None) -> Message:
        """
        Answer one inbound message.

        Args:
            data: Message, text, or payload mapping
            callback: Optional ``callback(error, message)``, sync or async

        Returns:
            The message, with ``reply`` and ``error`` set
        """
        message = Message.from_payload(data)
        message.bot = self
        message.begin_turn()
        token = set_log_context(uid=message.uid)

        try:
            return await self._dispatch(message, callback)
        finally:
            reset_log_context(token)

    async def _dispatch(self, message: Message, callback: Optional[Callable]) -> Message:
        logger.debug(f"got message: uid={message.uid} type={message.type} text={message.text!r}")

        if message.session is None:
            message.session = await self._load_session(message.uid)

        if not self.config.keep_blank and message.text:
            message.text = message.text.strip()

        rules = self._turn_rules(message)

        error, result = await self._walk_main(rules, message)
        self._finish(message, error, result)

        error = await self._walk_after(message)
        self._finish(message, error, message.reply)

        state = message.session.wait
        if state.rewait_count == message.rewait_count:
            # no rewait this turn
            state.rewait_count = 0

        await self._save_session(message)

        if callback is not None:
            outcome = callback(message.error, message)
            if inspect.isawaitable(outcome):
                await outcome

        return message

    def _turn_rules(self, message: Message) -> List[Rule]:
        """Assemble before hooks, pending wait rules and routes for a turn."""
        rules = list(self.routes)
        state = message.session.wait

        waiter = state.take()
        if waiter:
            logger.info(f"found waiter: {waiter}")
            wait_rules = self.get_wait_rule(waiter)
            if wait_rules:
                rules = list(wait_rules) + rules
            else:
                logger.warning(f"wait rule [{waiter}] not found, using main routes")
        message.rewait_count = state.rewait_count

        return self.befores + rules

    def _domain_entry(self, domain: str) -> List[Rule]:
        group = self.domain_rules.get(domain)
        if group is None:
            logger.warning(f'domain "{domain}" has no gatekeeper rules')
            group = []
        hooks = [rule for rule in self.befores if rule.domain == domain]
        return hooks + group

    def _as_dispatch_error(self, rule: Rule, exc: Exception) -> DispatchError:
        if isinstance(exc, DispatchError):
            return exc
        return HandlerError(rule.name, exc)

    async def _walk_main(self, rules: List[Rule], message: Message):
        """
        Walk the turn's rule list.

        Returns:
            Tuple of (error, result); both None when a handler ended the
            turn by writing ``message.reply`` itself
        """
        break_on_error = self.config.break_on_error
        domain = None
        index = 0

        while index < len(rules):
            rule = rules[index]
            message.rule_index = index
            message.current_rule = rule

            if rule.is_before and rule.domain != domain:
                index += 1
                continue

            if not rule.test(message):
                logger.debug(f"rule [{rule.name}] skipped")
                index += 1
                continue

            if rule.domain and domain is None:
                domain = rule.domain
                logger.info(f'matched rule in domain "{domain}"')
                rules = self._domain_entry(domain) + rules[index:]
                index = 0
                continue

            logger.info(f"rule [{rule.name}] matched")

            try:
                result = await rule.execute(message)
            except Exception as e:
                error = self._as_dispatch_error(rule, e)
                logger.error(f"rule [{rule.name}] failed: {error}", exc_info=True)
                if break_on_error:
                    return error, None
                index += 1
                continue

            if result or message.ended:
                if rule.replies is not None:
                    self._reply_rules(rule)
                    message.wait(REPLY_PREFIX + rule.name)
                if not result and not message.reply:
                    logger.error("request ended with no good reply")
                    return NoReplyError(f"rule [{rule.name}] ended the turn without a reply"), None
                return None, result

            index += 1

        return NotFoundError("no rule matched"), None

    async def _walk_after(self, message: Message) -> Optional[DispatchError]:
        """Run every matching after hook; return the error that stopped them."""
        for index, rule in enumerate(self.afters):
            message.rule_index = index
            message.current_rule = rule

            if not rule.test(message):
                continue

            try:
                await rule.execute(message)
            except Exception as e:
                error = self._as_dispatch_error(rule, e)
                logger.error(f"after hook [{rule.name}] failed: {error}", exc_info=True)
                if self.config.break_on_error:
                    return error
        return None

    def _finish(self, message: Message, error: Optional[DispatchError], reply: Any) -> None:
        """Settle the reply of a pipeline stage."""
        if error is not None:
            logger.warning(f"reply error {error.code}: {error.message}")
            message.error = error
            if not reply:
                reply = self.code_to_reply(error.code)

        if isinstance(reply, list) and reply and isinstance(reply[0], str):
            reply = random.choice(reply)

        message.reply = reply or message.reply or ""

    # === Sessions ===

    async def _load_session(self, session_id: Optional[str]) -> Session:
        if self.store is None or not session_id:
            return Session(id=session_id)
        try:
            payload = await self.store.get(session_id)
        except Exception as e:
            logger.error(f"failed to load session {session_id}: {e}", exc_info=True)
            payload = {}
        return Session.from_dict(session_id, payload)

    async def _save_session(self, message: Message) -> None:
        session_id = message.session_id
        if self.store is None or not session_id:
            return
        try:
            await self.store.set(session_id, message.session.to_dict())
        except Exception as e:
            logger.error(f"failed to save session {session_id}: {e}", exc_info=True)

    async def destroy_session(self, session_id: str) -> None:
        """Remove a conversation's stored state."""
        if self.store is not None:
            await self.store.destroy(session_id)


def build_bot(config) -> Bot:
    """
    Create a bot from application configuration and load its dialogs.

    Args:
        config: Application ``Config``

    Returns:
        Configured Bot
    """
    bot = Bot(config=config.bot, store=create_store(config.session))
    if config.dialogs:
        bot.dialog(*config.dialogs)
    return bot
