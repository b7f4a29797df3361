#!/usr/bin/env python3
"""
Rulebot - Main Entry Point
==========================

This is the main entry point for rulebot. It builds a bot from
configuration plus dialog files and rule modules, then serves it in
one of several modes.

Usage:
    python main.py --web                       # Serve the webhook
    python main.py --tui                       # Chat in the terminal
    python main.py --test "hello" [UID]        # Answer one message
    python main.py --rules                     # List loaded routes
    python main.py --help                      # Show help
"""

import sys
import argparse
import asyncio
from pathlib import Path
from typing import List, Optional

# Add parent directory to path for imports
sys.path.insert(0, str(Path(__file__).parent))

from core.config import load_config, Config
from core.logging import setup_logging, get_logger
from core.exceptions import RulebotError
from dispatch.bot import Bot, build_bot

logger = get_logger("main")


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    """Parse command line arguments."""
    parser = argparse.ArgumentParser(
        description="Rulebot - Rule-based conversational bot",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python main.py --web --dialog greetings.yaml   Serve a dialog over HTTP
  python main.py --web --port 9000               Serve on port 9000
  python main.py --tui --module my_rules         Chat with rules from a module
  python main.py --test "hi there" user-1        Answer one message
        """
    )

    # Mode selection (mutually exclusive)
    mode_group = parser.add_mutually_exclusive_group()
    mode_group.add_argument(
        "--web",
        action="store_true",
        help="Start the webhook server"
    )
    mode_group.add_argument(
        "--tui",
        action="store_true",
        help="Start the terminal chat"
    )
    mode_group.add_argument(
        "--test",
        nargs="+",
        metavar=("TEXT", "UID"),
        help="Answer one message (usage: --test 'hello' [UID])"
    )
    mode_group.add_argument(
        "--rules",
        action="store_true",
        help="List the loaded routes"
    )

    # Optional arguments
    parser.add_argument(
        "--config",
        type=str,
        metavar="PATH",
        help="Path to configuration file"
    )
    parser.add_argument(
        "--dialog",
        nargs="+",
        default=[],
        metavar="PATH",
        help="Dialog files (YAML or JSON) to load as routes"
    )
    parser.add_argument(
        "--module",
        nargs="+",
        default=[],
        metavar="NAME",
        help="Rule modules (dotted names or .py paths) to load"
    )
    parser.add_argument(
        "--port",
        type=int,
        help="Port for the webhook server (default: from config)"
    )
    parser.add_argument(
        "--host",
        type=str,
        help="Host for the webhook server (default: from config)"
    )
    parser.add_argument(
        "--debug",
        action="store_true",
        help="Enable debug mode"
    )

    return parser.parse_args(argv)


def create_bot(config: Config, dialogs: List[str], modules: List[str]) -> Bot:
    """Build the bot and load extra dialogs and rule modules."""
    bot = build_bot(config)
    if dialogs:
        bot.dialog(*dialogs)
    if modules:
        bot.loads(*modules)
    logger.info(f"Bot ready with {len(bot.routes)} routes")
    return bot


def run_test_message(bot: Bot, text: str, uid: str = "cli") -> int:
    """Answer one message and print the outcome."""
    print(f"\nMessage: {text}")
    print(f"From: {uid}")
    print("-" * 50)

    message = asyncio.run(bot.reply({"uid": uid, "text": text}))

    print(f"\nReply: {message.reply}")
    if message.params:
        print(f"  Params: {message.params}")
    if message.error is not None:
        print(f"  Error: [{message.error.code}] {message.error.message}")

    state = message.session.wait
    if state.waiter:
        print(f"  Waiting on: {state.waiter}")

    return 0 if message.error is None else 2


def list_rules(bot: Bot) -> None:
    """Print the loaded routes in priority order."""
    print("\n" + "=" * 50)
    print("Routes")
    print("=" * 50)

    if not bot.routes:
        print("  (none)")

    for index, rule in enumerate(bot.routes):
        info = rule.to_dict()
        pattern = info["pattern"] if info["pattern"] is not None else "*"
        line = f"  {index:>3}. {info['name']}  [{info['pattern_kind']}: {pattern}] -> {info['handler_kind']}"
        if info["domain"]:
            line += f"  (domain: {info['domain']})"
        if info["has_replies"]:
            line += "  +replies"
        print(line)

    if bot.befores:
        print(f"\nBefore hooks: {', '.join(rule.name for rule in bot.befores)}")
    if bot.afters:
        print(f"After hooks: {', '.join(rule.name for rule in bot.afters)}")
    if bot.domain_rules:
        print(f"Domains: {', '.join(bot.domain_rules)}")
    if len(bot.waits):
        print(f"Wait rules: {', '.join(bot.waits.names())}")
    print()


def main(argv: Optional[List[str]] = None) -> int:
    """Main entry point."""
    args = parse_args(argv)

    try:
        config = load_config(args.config)

        if args.debug:
            config.debug = True

        setup_logging(
            log_dir=config.log_dir,
            log_level="DEBUG" if args.debug else config.log_level,
            console_output=True
        )

        bot = create_bot(config, args.dialog, args.module)

        if args.web:
            from ui.web.app import run_app
            print(f"\nStarting webhook on http://{args.host or config.web.host}:{args.port or config.web.port}{config.web.path}")
            print("Press Ctrl+C to stop\n")
            run_app(host=args.host, port=args.port, debug=args.debug, config=config, bot=bot)
        elif args.tui:
            from ui.terminal.app import run_tui
            run_tui(bot=bot, config=config)
        elif args.test:
            text = args.test[0]
            uid = args.test[1] if len(args.test) > 1 else "cli"
            return run_test_message(bot, text, uid)
        else:
            list_rules(bot)
            if not args.rules:
                print("No mode specified. Use --web, --tui, --test, or --help")

        return 0

    except RulebotError as e:
        print(f"\nError: {e}")
        return 1
    except KeyboardInterrupt:
        print("\nInterrupted")
        return 0


if __name__ == "__main__":
    sys.exit(main())
