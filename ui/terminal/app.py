"""
Textual Application - Terminal chat with a bot
==============================================

This module implements a Textual TUI for talking to a ``Bot`` from the
terminal: every submitted line goes through ``bot.reply`` under one
fixed conversation id, so wait rules behave as they would for a real
user.
"""

from typing import Optional

from textual import work
from textual.app import App, ComposeResult
from textual.binding import Binding
from textual.containers import Container
from textual.screen import Screen
from textual.widgets import DataTable, Footer, Header, Input, RichLog, Static, TabbedContent, TabPane

from core.config import Config, load_config
from core.logging import get_logger
from dispatch.bot import Bot, build_bot

logger = get_logger("tui.app")

DEFAULT_UID = "terminal"


class ChatWidget(Container):
    """Conversation log with an input line."""

    def __init__(self, bot: Bot, uid: str = DEFAULT_UID, **kwargs):
        super().__init__(**kwargs)
        self.bot = bot
        self.uid = uid

    def compose(self) -> ComposeResult:
        yield RichLog(id="chat-log", wrap=True, markup=False)
        yield Static("", id="chat-status", classes="status-line")
        yield Input(placeholder="Say something...", id="chat-input")

    def on_mount(self) -> None:
        self.query_one("#chat-input", Input).focus()

    def on_input_submitted(self, event: Input.Submitted) -> None:
        text = event.value
        event.input.value = ""
        if not text.strip():
            return
        self.query_one("#chat-log", RichLog).write(f"you > {text}")
        self.send(text)

    @work(exclusive=True)
    async def send(self, text: str) -> None:
        chat_log = self.query_one("#chat-log", RichLog)
        status = self.query_one("#chat-status", Static)

        try:
            message = await self.bot.reply({"uid": self.uid, "text": text})
        except Exception as e:
            logger.error(f"Reply failed: {e}", exc_info=True)
            chat_log.write(f"error > {e}")
            return

        chat_log.write(f"bot > {message.reply}")

        state = message.session.wait
        if message.error is not None:
            status.update(f"[{message.error.code}] {message.error.message}")
        elif state.waiter:
            status.update(f"waiting on [{state.waiter}] (rewaits: {state.rewait_count})")
        else:
            status.update("")

    def clear(self) -> None:
        self.query_one("#chat-log", RichLog).clear()
        self.query_one("#chat-status", Static).update("")


class RulesWidget(Container):
    """Table of the bot's routes."""

    def __init__(self, bot: Bot, **kwargs):
        super().__init__(**kwargs)
        self.bot = bot

    def compose(self) -> ComposeResult:
        yield DataTable(id="rules-table")

    def on_mount(self) -> None:
        table = self.query_one("#rules-table", DataTable)
        table.add_columns("Name", "Pattern", "Handler", "Domain", "Replies")
        self.load_rules()

    def load_rules(self) -> None:
        table = self.query_one("#rules-table", DataTable)
        table.clear()
        for rule in self.bot.routes:
            info = rule.to_dict()
            table.add_row(
                info["name"],
                str(info["pattern"]) if info["pattern"] is not None else "*",
                info["handler_kind"],
                info["domain"] or "",
                "yes" if info["has_replies"] else "",
            )


class MainScreen(Screen):
    """Main application screen."""

    BINDINGS = [
        Binding("ctrl+l", "clear", "Clear"),
        Binding("f2", "chat", "Chat"),
        Binding("f3", "rules", "Rules"),
    ]

    def __init__(self, bot: Bot, uid: str = DEFAULT_UID, **kwargs):
        super().__init__(**kwargs)
        self.bot = bot
        self.uid = uid

    def compose(self) -> ComposeResult:
        yield Header(show_clock=True)

        with TabbedContent(id="main-tabs"):
            with TabPane("Chat", id="chat"):
                yield ChatWidget(self.bot, self.uid)

            with TabPane("Rules", id="rules"):
                yield RulesWidget(self.bot)

        yield Footer()

    def action_clear(self) -> None:
        self.query_one(ChatWidget).clear()

    def action_chat(self) -> None:
        self.query_one(TabbedContent).active = "chat"
        self.query_one("#chat-input", Input).focus()

    def action_rules(self) -> None:
        self.query_one(RulesWidget).load_rules()
        self.query_one(TabbedContent).active = "rules"


class RulebotApp(App):
    """
    Terminal chat application.

    Built with Textual; talks to one bot as one user.
    """

    CSS = """
    Screen {
        background: $surface;
    }

    #chat-log {
        height: 1fr;
        border: solid $primary;
        padding: 0 1;
    }

    .status-line {
        height: 1;
        color: $text-muted;
        padding: 0 1;
    }

    #chat-input {
        dock: bottom;
    }

    #rules-table {
        height: 1fr;
    }
    """

    TITLE = "rulebot"

    BINDINGS = [
        Binding("ctrl+q", "quit", "Quit"),
        Binding("ctrl+c", "quit", "Quit"),
    ]

    def __init__(
        self,
        bot: Optional[Bot] = None,
        config: Optional[Config] = None,
        uid: str = DEFAULT_UID
    ):
        super().__init__()

        self.config = config or load_config()

        if bot is None:
            bot = build_bot(self.config)
        self.bot = bot

        self.install_screen(MainScreen(self.bot, uid), name="main")

    def on_mount(self) -> None:
        self.push_screen("main")

    def action_quit(self) -> None:
        self.exit()


def run_tui(
    bot: Optional[Bot] = None,
    config: Optional[Config] = None,
    uid: str = DEFAULT_UID
) -> None:
    app = RulebotApp(bot=bot, config=config, uid=uid)
    app.run()


if __name__ == "__main__":
    run_tui()
