"""
Telegram userbot rewriter.

Modes:
- rewrite (default): watch the configured chats and rewrite own messages.
- --list-chats [QUERY]: print "<id>\t<name>" for every dialog, optionally
  filtered, to help fill in `rewrite.chats`.
"""

import argparse
import asyncio
import logging
import os
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional, Sequence

from dotenv import find_dotenv, load_dotenv

# Ensure we can import from backend modules
sys.path.append(os.path.dirname(os.path.abspath(__file__)))

from app_config import (
    DEFAULT_CONFIG_PATH,
    AppConfig,
    ConfigError,
    ConfigMode,
    load_config_for_mode,
)
from llm_client import LlmConfigError
from rewrite_runtime import run_rewrite_mode
from telegram_client import TelegramBot, TelegramClientError

logger = logging.getLogger(__name__)

MODE_REWRITE = "rewrite"
MODE_LIST_CHATS = "list_chats"


class ArgumentError(ValueError):
    """Raised for invalid command line usage."""


@dataclass
class AppArgs:
    config_path: Path
    mode: str
    query: Optional[str] = None


class _RaisingArgumentParser(argparse.ArgumentParser):
    def error(self, message: str) -> None:  # type: ignore[override]
        raise ArgumentError(message)


def _build_parser() -> argparse.ArgumentParser:
    parser = _RaisingArgumentParser(
        prog="tg-llm-rewrite",
        description="Telegram userbot rewriter with optional chat listing mode",
    )
    parser.add_argument(
        "--config",
        metavar="path",
        default=DEFAULT_CONFIG_PATH,
        help=f"path to the TOML config file (default: {DEFAULT_CONFIG_PATH})",
    )
    parser.add_argument(
        "--list-chats",
        action="store_true",
        help="list available chats and exit",
    )
    parser.add_argument(
        "query",
        nargs="?",
        default=None,
        help="case-insensitive filter for --list-chats",
    )
    return parser


def parse_args_from(argv: Sequence[str]) -> AppArgs:
    namespace = _build_parser().parse_args(list(argv))
    if namespace.query is not None and not namespace.list_chats:
        raise ArgumentError("query is only allowed together with --list-chats")
    if not str(namespace.config).strip():
        raise ArgumentError("--config must not be empty")
    mode = MODE_LIST_CHATS if namespace.list_chats else MODE_REWRITE
    return AppArgs(config_path=Path(namespace.config), mode=mode, query=namespace.query)


def _load_environment() -> None:
    # Explicitly look for .env in the parent directory (project root)
    current_dir = os.path.dirname(os.path.abspath(__file__))
    dotenv_path = os.path.join(os.path.dirname(current_dir), ".env")
    if os.path.exists(dotenv_path):
        load_dotenv(dotenv_path)
        return
    _dotenv_path = find_dotenv(usecwd=True)
    if _dotenv_path:
        load_dotenv(_dotenv_path)


def init_logging() -> None:
    level_name = (os.getenv("LOG_LEVEL") or "INFO").strip().upper()
    level = logging.getLevelName(level_name)
    if not isinstance(level, int):
        level = logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def format_chat_listing(chats: List, query: Optional[str]) -> List[str]:
    if not chats:
        if query:
            return [f"No chats matched filter: {query}"]
        return ["No chats found."]
    return [f"{chat.id}\t{chat.name}" for chat in chats]


async def run_list_mode(config: AppConfig, query: Optional[str]) -> None:
    bot = await TelegramBot.connect_for_listing(config.telegram)
    try:
        chats = await bot.list_chats(query)
        for line in format_chat_listing(chats, query):
            print(line)
    finally:
        await bot.shutdown()


async def run(args: AppArgs) -> None:
    if args.mode == MODE_LIST_CHATS:
        config = load_config_for_mode(args.config_path, ConfigMode.LIST_CHATS)
        await run_list_mode(config, args.query)
        return

    config = load_config_for_mode(args.config_path, ConfigMode.REWRITE)
    await run_rewrite_mode(config, args.config_path)


def main(argv: Optional[Sequence[str]] = None) -> None:
    _load_environment()
    init_logging()
    try:
        args = parse_args_from(sys.argv[1:] if argv is None else argv)
    except ArgumentError as exc:
        print(f"tg-llm-rewrite: error: {exc}", file=sys.stderr)
        sys.exit(2)

    try:
        asyncio.run(run(args))
    except (ConfigError, LlmConfigError, TelegramClientError) as exc:
        logger.error("%s", exc)
        sys.exit(1)


if __name__ == "__main__":
    main()
