"""
Test Dispatcher Module
=====================

Unit tests for the Bot pipeline: routing, wait rules, domains, hooks
and error handling.
"""

import asyncio

import pytest
from pathlib import Path
import sys
sys.path.insert(0, str(Path(__file__).parent.parent))

from core.config import BotConfig
from core.exceptions import ConfigError, DispatchError, HandlerError, NotFoundError, RuleError
from core.logging import get_log_context, set_log_context, reset_log_context
from dispatch.bot import Bot, REPLY_PREFIX
from dispatch.message import Message
from dispatch.session import Session
from dispatch.store import MemoryStore, SessionStore


def run(coro):
    return asyncio.run(coro)


def make_dial_bot() -> Bot:
    """A bot with a three-option menu that re-prompts on bad input."""
    def reprompt(message):
        message.rewait()
        return "please choose again: 1/2/3"

    bot = Bot(store=MemoryStore())
    bot.set("dial", "choose: 1/2/3", {
        "=1": "A",
        "=2": "B",
        "=3": "C",
        "/.*/": reprompt,
    })
    return bot


def say(bot: Bot, text: str, uid: str = "u1") -> Message:
    return run(bot.reply({"uid": uid, "text": text}))


class TestReplyBasics:
    """Tests for single-turn replies."""

    def test_random_list_reply(self):
        bot = Bot()
        choices = ["你也好", "你好", "很高兴认识你"]
        bot.set("你好", choices)

        for _ in range(20):
            message = say(bot, "你好")
            assert message.reply in choices
            assert message.error is None

    def test_not_found(self):
        """Test an empty rule list answers with the not-found text."""
        bot = Bot()
        message = say(bot, "anything")
        assert isinstance(message.error, NotFoundError)
        assert message.error.code == 404
        assert message.reply == bot.code_to_reply(404)
        assert message.reply == "Don't know what you are saying."

    def test_custom_code_replies(self):
        bot = Bot(code_replies={"404": "huh?"})
        assert say(bot, "x").reply == "huh?"
        assert bot.code_to_reply(418) == "418"

    def test_first_match_wins(self):
        bot = Bot()
        bot.set("=a", "first")
        bot.set("a", "second")
        assert say(bot, "a").reply == "first"
        assert say(bot, "abc").reply == "second"

    def test_skip_continues_walk(self):
        bot = Bot()
        seen = []

        def observer(message):
            seen.append(message.text)

        bot.set(observer)
        bot.set("=hi", "hello")
        assert say(bot, "hi").reply == "hello"
        assert seen == ["hi"]

    def test_captures_reach_template(self):
        bot = Bot()
        bot.set(r"^from (?P<src>\w+) to (?P<dst>\w+)$", "{src} -> {dst}")
        message = say(bot, "from paris to rome")
        assert message.reply == "paris -> rome"
        assert message.params["src"] == "paris"

    def test_plain_text_payload(self):
        bot = Bot()
        bot.set("=hi", "hello")
        message = run(bot.reply("hi"))
        assert message.reply == "hello"

    def test_payload_extras_in_raw(self):
        bot = Bot()
        bot.set(lambda m: m.raw.get("channel"))
        message = run(bot.reply({"uid": 7, "text": "x", "channel": "wechat"}))
        assert message.uid == "7"
        assert message.reply == "wechat"

    def test_non_text_message(self):
        bot = Bot()
        bot.set("=hi", "hello")
        bot.set(lambda m: m.is_type("image") and "nice picture")
        message = run(bot.reply({"uid": "u1", "type": "image", "url": "http://x/y.png"}))
        assert message.reply == "nice picture"

    def test_structured_reply(self):
        bot = Bot()
        card = [{"title": "a"}, {"title": "b"}]
        bot.set("news", lambda m: card)
        assert say(bot, "news").reply == card

    def test_keep_blank(self):
        bot = Bot(keep_blank=False)
        bot.set("=hi", "hello")
        assert say(bot, "  hi \n").reply == "hello"

        strict = Bot()
        strict.set("=hi", "hello")
        assert say(strict, " hi").error.code == 404

    def test_callback_sync_and_async(self):
        bot = Bot()
        bot.set("=hi", "hello")
        received = []

        def callback(err, message):
            received.append((err, message.reply))

        async def async_callback(err, message):
            received.append(("async", message.reply))

        run(bot.reply({"uid": "u1", "text": "hi"}, callback))
        run(bot.reply({"uid": "u1", "text": "hi"}, async_callback))
        assert received == [(None, "hello"), ("async", "hello")]

    def test_callback_gets_not_found(self):
        bot = Bot()
        errors = []
        run(bot.reply("x", lambda err, message: errors.append(err)))
        assert isinstance(errors[0], NotFoundError)

    def test_continuation_handler(self):
        bot = Bot()

        def lookup(message, done):
            async def work():
                await asyncio.sleep(0.01)
                done(None, "found " + message.text)
            asyncio.get_running_loop().create_task(work())

        bot.set("^find", lookup)
        assert say(bot, "find keys").reply == "found find keys"

    def test_zero_argument_handler(self):
        bot = Bot()
        bot.set("hi", lambda: "hello")
        message = say(bot, "hi")
        assert message.reply == "hello"
        assert message.error is None

    def test_message_reused(self):
        bot = Bot()
        bot.set("=a", "A")
        bot.set("=b", "B")
        message = Message(uid="u1", text="a", session=Session(id="u1"))
        run(bot.reply(message))
        assert message.reply == "A"
        message.text = "b"
        run(bot.reply(message))
        assert message.reply == "B"


class TestEnded:
    """Tests for handlers ending the turn themselves."""

    def test_ended_with_direct_reply(self):
        bot = Bot()

        def direct(message):
            message.reply = "written"
            message.ended = True

        bot.set(direct)
        bot.set("fallback")
        message = say(bot, "x")
        assert message.reply == "written"
        assert message.error is None

    def test_ended_without_reply(self):
        bot = Bot()

        def silent(message):
            message.ended = True

        bot.set(silent)
        bot.set("fallback")
        message = say(bot, "x")
        assert message.error.code == 500
        assert message.reply == bot.code_to_reply(500)


class TestWaitRules:
    """Tests for the wait state round trip."""

    def test_dial_round_trip(self):
        bot = make_dial_bot()

        first = say(bot, "dial")
        assert "choose" in first.reply
        assert first.session.wait.waiter == REPLY_PREFIX + "dial"

        second = say(bot, "1")
        assert second.reply == "A"

        # the reply set was consumed, "1" no longer routes through it
        third = say(bot, "1")
        assert third.error.code == 404

    def test_rewait_and_reprompt(self):
        bot = make_dial_bot()

        assert "choose" in say(bot, "dial").reply

        bogus = say(bot, "bogus")
        assert "please choose again" in bogus.reply
        assert bogus.session.wait.rewait_count == 1
        assert bogus.session.wait.waiter == REPLY_PREFIX + "dial"

        answer = say(bot, "2")
        assert answer.reply == "B"
        assert answer.rewait_count == 1
        assert answer.session.wait.rewait_count == 0

    def test_rewait_counts_each_attempt(self):
        bot = make_dial_bot()
        say(bot, "dial")

        for attempt in range(1, 4):
            message = say(bot, f"bad {attempt}")
            assert message.session.wait.rewait_count == attempt
            assert message.session.wait.waiter == REPLY_PREFIX + "dial"

        assert say(bot, "3").reply == "C"

    def test_conversations_are_independent(self):
        bot = make_dial_bot()
        say(bot, "dial", uid="alice")
        assert say(bot, "1", uid="bob").error.code == 404
        assert say(bot, "1", uid="alice").reply == "A"

    def test_wait_rules_tried_before_routes(self):
        bot = Bot(store=MemoryStore())
        bot.set("=yes", "generic yes")
        bot.set("ask", "really?", {"=yes": "confirmed"})

        say(bot, "ask")
        assert say(bot, "yes").reply == "confirmed"
        assert say(bot, "yes").reply == "generic yes"

    def test_derived_wait_rule_registered_once(self):
        bot = make_dial_bot()
        say(bot, "dial")
        rules = bot.get_wait_rule(REPLY_PREFIX + "dial")
        say(bot, "dial", uid="u2")
        assert bot.get_wait_rule(REPLY_PREFIX + "dial") is rules
        assert [rule.name for rule in rules] == ["=1", "=2", "=3", "/.*/"]
        assert all(rule.parent is bot.get("dial") for rule in rules)

    def test_derived_wait_rule_resolves_lazily(self):
        bot = make_dial_bot()
        assert REPLY_PREFIX + "dial" not in bot.waits
        rules = bot.get_wait_rule(REPLY_PREFIX + "dial")
        assert len(rules) == 4
        assert bot.get_wait_rule(REPLY_PREFIX + "nothing") is None

    def test_nested_replies(self):
        bot = Bot(store=MemoryStore())
        bot.set("order", "what size?", {
            "=big": {"handler": "hot or cold?", "name": "big", "replies": {"=hot": "big hot"}},
        })
        say(bot, "order")
        assert say(bot, "big").reply == "hot or cold?"
        assert say(bot, "hot").reply == "big hot"

    def test_named_wait_rule(self):
        bot = Bot(store=MemoryStore())
        bot.wait_rule("guess", {
            "=boy": "right",
            "/.*/": lambda m: m.rewait() and "guess again",
        })

        def ask(message):
            message.wait("guess")
            return "boy or girl?"

        bot.set("=play", ask)

        say(bot, "play")
        assert say(bot, "girl").reply == "guess again"
        assert say(bot, "boy").reply == "right"

    def test_wait_rule_from_function(self):
        bot = Bot(store=MemoryStore())
        bot.wait_rule("echo", lambda m: "echo " + m.text)
        bot.set("=start", lambda m: m.wait("echo") and "say something")

        say(bot, "start")
        assert say(bot, "hey").reply == "echo hey"

    def test_wait_rule_getter(self):
        bot = Bot()
        bot.wait_rule("w", "x")
        assert bot.wait_rule("w")[0].name == "w"
        assert bot.wait_rule("missing") is None

    def test_wait_rule_conflict(self):
        bot = Bot()
        bot.wait_rule("w", "x")
        with pytest.raises(RuleError):
            bot.wait_rule("w", "y")

    def test_route_name_as_wait_rule(self):
        bot = Bot(store=MemoryStore())
        bot.set("=menu", lambda m: m.wait("pick") and "pick a color")
        bot.set({"name": "pick", "pattern": "^(red|blue)$", "handler": "you picked {1}"})
        say(bot, "menu")
        assert say(bot, "red").reply == "you picked red"

    def test_unresolvable_waiter_falls_back(self):
        bot = Bot(store=MemoryStore())
        bot.set("=go", lambda m: m.wait("nowhere") and "going")
        bot.set("=x", "main x")
        say(bot, "go")
        message = say(bot, "x")
        assert message.reply == "main x"
        assert message.session.wait.waiter is None

    def test_resolve_clears_state(self):
        bot = Bot(store=MemoryStore())

        def stop(message):
            message.resolve()
            return "stopped"

        bot.set("loop", "again?", {"=stop": stop, "/.*/": lambda m: m.rewait() and "again?"})
        say(bot, "loop")
        say(bot, "more")
        assert say(bot, "more").session.wait.rewait_count == 2
        message = say(bot, "stop")
        assert message.reply == "stopped"
        state = message.session.wait
        assert (state.waiter, state.last_waited, state.rewait_count) == (None, None, 0)

    def test_wait_requires_valid_name(self):
        message = Message(uid="u1", session=Session(id="u1"))
        with pytest.raises(RuleError):
            message.wait(42)
        with pytest.raises(RuleError):
            Message(uid="u1").wait("x")


class TestDomains:
    """Tests for domain gatekeepers."""

    def make_bot(self):
        bot = Bot(store=MemoryStore())
        calls = []

        def gatekeeper(message):
            calls.append("gate")
            if not message.session.get("admin"):
                return "admins only"

        def secret(message):
            calls.append("secret")
            return "the secret"

        bot.domain("admin", gatekeeper)
        bot.set(pattern="=secret", handler=secret, domain="admin")
        bot.set("=public", "public info")
        return bot, calls

    def test_gatekeeper_blocks(self):
        bot, calls = self.make_bot()
        assert say(bot, "secret").reply == "admins only"
        assert calls == ["gate"]

    def test_gatekeeper_passes(self):
        bot, calls = self.make_bot()
        message = Message(uid="root", text="secret", session=Session(id="root", data={"admin": True}))
        run(bot.reply(message))
        assert message.reply == "the secret"
        assert calls == ["gate", "secret"]

    def test_untagged_rules_skip_domain(self):
        bot, calls = self.make_bot()
        assert say(bot, "public").reply == "public info"
        assert calls == []

    def test_missing_domain_group(self):
        bot = Bot()
        bot.set(pattern="=x", handler="x reply", domain="ghost")
        assert say(bot, "x").reply == "x reply"

    def test_domain_before_hooks_run_on_entry(self):
        bot = Bot()
        order = []

        def tagged(message):
            order.append("tagged hook")

        def plain(message):
            order.append("plain hook")

        bot.use(plain)
        bot.use({"handler": tagged, "domain": "shop"})
        bot.domain("shop", lambda m: order.append("gate") and None)
        bot.set(pattern="=buy", handler="bought", domain="shop")
        bot.set("=look", "looking")

        assert say(bot, "buy").reply == "bought"
        assert order == ["plain hook", "tagged hook", "gate"]

        order.clear()
        assert say(bot, "look").reply == "looking"
        assert order == ["plain hook"]

    def test_domain_entered_once(self):
        bot = Bot()
        entries = []
        bot.domain("a", lambda m: entries.append("a") and None)
        bot.domain("b", lambda m: entries.append("b") and None)
        bot.set(pattern="^x", handler=lambda m: None, domain="a")
        bot.set(pattern="^x", handler="from b", domain="b")
        assert say(bot, "x").reply == "from b"
        assert entries == ["a"]


class TestHooks:
    """Tests for before and after hooks."""

    def test_before_hook_can_answer(self):
        bot = Bot()
        bot.before_reply(lambda m: "maintenance" if m.text == "down" else None)
        bot.set("=hi", "hello")
        assert say(bot, "down").reply == "maintenance"
        assert say(bot, "hi").reply == "hello"

    def test_before_hook_annotates_message(self):
        bot = Bot()

        def tag(message):
            message.raw["vip"] = message.uid == "boss"

        bot.use(tag)
        bot.set(lambda m: "vip" if m.raw["vip"] else "regular")
        assert say(bot, "x", uid="boss").reply == "vip"
        assert say(bot, "x", uid="joe").reply == "regular"

    def test_after_hooks_see_reply(self):
        bot = Bot()
        bot.set("=hi", "hello")
        seen = []

        def audit(message):
            seen.append(message.reply)
            return "ignored"

        bot.after_reply(audit)
        message = say(bot, "hi")
        assert message.reply == "hello"
        assert seen == ["hello"]

    def test_after_hook_can_rewrite(self):
        bot = Bot()
        bot.set("=hi", "hello")

        def shout(message):
            message.reply = message.reply.upper()

        bot.after_reply(shout)
        assert say(bot, "hi").reply == "HELLO"

    def test_after_hooks_run_after_not_found(self):
        bot = Bot()
        seen = []
        bot.after_reply(lambda m: seen.append(m.error.code))
        say(bot, "x")
        assert seen == [404]


class TestErrors:
    """Tests for handler errors."""

    def test_break_on_error(self):
        bot = Bot()
        after = []

        def broken(message):
            raise ValueError("boom")

        bot.set(broken)
        bot.set("fallback")
        bot.after_reply(lambda m: after.append(m.error))

        message = say(bot, "x")
        assert isinstance(message.error, HandlerError)
        assert isinstance(message.error.original, ValueError)
        assert message.error.code == 500
        assert message.reply == bot.code_to_reply(500)
        assert after == [message.error]

    def test_continue_on_error(self):
        bot = Bot(break_on_error=False)

        def broken(message):
            raise ValueError("boom")

        bot.set(broken)
        bot.set("fallback")
        message = say(bot, "x")
        assert message.reply == "fallback"
        assert message.error is None

    def test_error_code_attribute(self):
        bot = Bot()

        class Forbidden(Exception):
            code = 403

        def guarded(message):
            raise Forbidden("no")

        bot.set(guarded)
        message = say(bot, "x")
        assert message.error.code == 403
        assert message.reply == "You have no permission to do this."

    def test_dispatch_error_kept(self):
        bot = Bot()

        def accepted(message):
            raise DispatchError("accepted", code=204)

        bot.set(accepted)
        message = say(bot, "x")
        assert message.error.code == 204
        assert message.reply == "OK, got that."

    def test_continuation_error(self):
        bot = Bot()
        bot.set(lambda m, done: done(403))
        assert say(bot, "x").error.code == 403

    def test_after_hook_error(self):
        bot = Bot()
        bot.set("=hi", "hello")

        def broken(message):
            raise RuntimeError("after")

        bot.after_reply(broken)
        message = say(bot, "hi")
        assert message.reply == "hello"
        assert isinstance(message.error, HandlerError)


class TestRegistration:
    """Tests for the rule registration API."""

    def test_empty_registration_raises(self):
        bot = Bot()
        with pytest.raises(RuleError):
            bot.set()
        with pytest.raises(RuleError):
            bot.set("a", "b", None, "extra")
        with pytest.raises(RuleError):
            bot.set("a", handler="b")

    def test_argument_forms(self):
        bot = Bot()

        def handler(message):
            return "fn"

        bot.set(handler)
        bot.set("named", {"handler": "x", "pattern": "=n"})
        bot.set("=p", "pair")
        bot.set(pattern="=k", handler="kw", name="keyword")
        bot.set({"=m1": "one", "=m2": "two"})
        names = [rule.name for rule in bot.routes]
        assert names == ["handler", "named", "=p", "keyword", "=m1", "=m2"]

    def test_chaining(self):
        bot = Bot().set("=a", "A").set("=b", "B").use(lambda m: None)
        assert len(bot.routes) == 2
        assert len(bot.befores) == 1
        assert bot.befores[0].is_before

    def test_get_and_gets(self):
        bot = Bot()
        bot.set("=a", "A")
        bot.set({"name": "dup", "handler": "1"})
        bot.set({"name": "dup", "handler": "2"})
        assert bot.get("=a").name == "=a"
        assert len(bot.gets("dup")) == 2
        assert len(bot.gets()) == 3
        assert bot.get("missing") is None

    def test_update(self):
        bot = Bot()
        bot.set({"name": "greet", "pattern": "=hi", "handler": "hello"})
        bot.set("=x", "x")
        bot.update({"name": "greet", "pattern": "=hi", "handler": "howdy"})
        assert [rule.name for rule in bot.routes] == ["greet", "=x"]
        assert say(bot, "hi").reply == "howdy"

    def test_delete(self):
        bot = Bot()
        bot.set("=a", "A")
        bot.set("=b", "B")
        bot.delete("=a")
        assert [rule.name for rule in bot.routes] == ["=b"]

    def test_reset(self):
        bot = Bot()
        bot.set("=a", "A")
        bot.use(lambda m: None)
        bot.after_reply(lambda m: None)
        bot.domain("d", "x")
        bot.wait_rule("w", "x")
        bot.reset()
        assert not bot.routes and not bot.befores and not bot.afters
        assert bot.domain_rules == {}
        assert len(bot.waits) == 0

    def test_unknown_option(self):
        with pytest.raises(ConfigError):
            Bot(keepblank=False)

    def test_config_and_overrides(self):
        bot = Bot(BotConfig(break_on_error=False), keep_blank=False)
        assert bot.config.break_on_error is False
        assert bot.config.keep_blank is False


class FailingStore(SessionStore):
    """Store whose every operation fails."""

    async def get(self, session_id):
        raise IOError("disk gone")

    async def set(self, session_id, payload):
        raise IOError("disk gone")

    async def destroy(self, session_id):
        raise IOError("disk gone")


class TestSessions:
    """Tests for session persistence around turns."""

    def test_handler_data_persists(self):
        bot = Bot(store=MemoryStore())

        def count(message):
            message.session["count"] = message.session.get("count", 0) + 1
            return str(message.session["count"])

        bot.set(count)
        assert say(bot, "x").reply == "1"
        assert say(bot, "x").reply == "2"
        assert bot.store.sessions["u1"]["data"] == {"count": 2}

    def test_handler_keys_do_not_clash_with_wait_state(self):
        bot = make_dial_bot()
        bot.use(lambda m: m.session.__setitem__("waiter", "junk"))
        say(bot, "dial")
        assert say(bot, "1").reply == "A"

    def test_without_store_sessions_are_transient(self):
        bot = make_dial_bot()
        bot.store = None
        say(bot, "dial")
        assert say(bot, "1").error.code == 404

    def test_store_failures_do_not_break_turns(self):
        bot = Bot(store=FailingStore())
        bot.set("=hi", "hello")
        message = say(bot, "hi")
        assert message.reply == "hello"
        assert message.session.id == "u1"

    def test_destroy_session(self):
        bot = make_dial_bot()
        say(bot, "dial")
        run(bot.destroy_session("u1"))
        assert say(bot, "1").error.code == 404


class TestConcurrentTurns:
    """Tests for turns of different conversations running together."""

    def test_log_context_per_turn(self):
        bot = Bot(store=MemoryStore())
        seen = []

        def slow(message, done):
            async def work():
                await asyncio.sleep(0.01)
                seen.append((message.uid, get_log_context()))
                done(None, "ok " + message.uid)
            asyncio.get_running_loop().create_task(work())

        bot.set("^slow", slow)

        async def both():
            return await asyncio.gather(
                bot.reply({"uid": "a", "text": "slow"}),
                bot.reply({"uid": "b", "text": "slow"}),
            )

        first, second = run(both())
        assert (first.reply, second.reply) == ("ok a", "ok b")
        assert sorted(seen) == [("a", {"uid": "a"}), ("b", {"uid": "b"})]

    def test_log_context_restored_after_turn(self):
        bot = Bot()
        bot.set("=hi", "hello")

        async def turn():
            token = set_log_context(request="r1")
            try:
                await bot.reply({"uid": "u1", "text": "hi"})
                return get_log_context()
            finally:
                reset_log_context(token)

        assert run(turn()) == {"request": "r1"}

    def test_wait_state_per_conversation(self):
        bot = make_dial_bot()

        async def both():
            await asyncio.gather(
                bot.reply({"uid": "a", "text": "dial"}),
                bot.reply({"uid": "b", "text": "hello"}),
            )
            return await asyncio.gather(
                bot.reply({"uid": "a", "text": "2"}),
                bot.reply({"uid": "b", "text": "2"}),
            )

        a, b = run(both())
        assert a.reply == "B"
        assert b.error.code == 404
