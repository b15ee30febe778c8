from pathlib import Path

import pytest

import main as app_main
from app_config import ConfigError
from main import (
    MODE_LIST_CHATS,
    MODE_REWRITE,
    ArgumentError,
    format_chat_listing,
    parse_args_from,
)
from telegram_client import ChatSummary


def test_defaults_to_rewrite_mode_with_default_config() -> None:
    args = parse_args_from([])
    assert args.mode == MODE_REWRITE
    assert args.config_path == Path("config.toml")
    assert args.query is None


def test_list_chats_with_query_and_custom_config() -> None:
    args = parse_args_from(["--config", "alt.toml", "--list-chats", "work"])
    assert args.mode == MODE_LIST_CHATS
    assert args.config_path == Path("alt.toml")
    assert args.query == "work"


def test_list_chats_without_query() -> None:
    args = parse_args_from(["--list-chats"])
    assert args.mode == MODE_LIST_CHATS
    assert args.query is None


def test_query_requires_list_chats() -> None:
    with pytest.raises(ArgumentError):
        parse_args_from(["work"])


def test_unknown_flag_is_rejected() -> None:
    with pytest.raises(ArgumentError):
        parse_args_from(["--verbose"])


def test_empty_config_path_is_rejected() -> None:
    with pytest.raises(ArgumentError):
        parse_args_from(["--config", " "])


def test_format_chat_listing() -> None:
    chats = [ChatSummary(id=-100123, name="Work"), ChatSummary(id=42, name="Family")]

    assert format_chat_listing(chats, None) == ["-100123\tWork", "42\tFamily"]
    assert format_chat_listing([], None) == ["No chats found."]
    assert format_chat_listing([], "xyz") == ["No chats matched filter: xyz"]


def test_main_exits_with_usage_error_code(monkeypatch) -> None:
    monkeypatch.setattr(app_main, "_load_environment", lambda: None)

    with pytest.raises(SystemExit) as exc_info:
        app_main.main(["stray-query"])
    assert exc_info.value.code == 2


def test_main_exits_nonzero_on_config_error(monkeypatch, tmp_path: Path) -> None:
    monkeypatch.setattr(app_main, "_load_environment", lambda: None)

    with pytest.raises(SystemExit) as exc_info:
        app_main.main(["--config", str(tmp_path / "missing.toml")])
    assert exc_info.value.code == 1


@pytest.mark.asyncio
async def test_run_loads_rewrite_config_and_starts_runtime(monkeypatch, tmp_path: Path) -> None:
    seen = {}

    async def _fake_run_rewrite_mode(config, config_path):
        seen["model"] = config.openai.model
        seen["path"] = config_path

    monkeypatch.setattr(app_main, "run_rewrite_mode", _fake_run_rewrite_mode)
    config_path = tmp_path / "config.toml"
    config_path.write_text(
        """
[telegram]
api_id = 1
api_hash = "hash"
session_file = "s.session"

[openai]
api_key = "sk-test"
model = "gpt-4.1-mini"

[rewrite]
chats = [1]
system_prompt = "rewrite"
""",
        encoding="utf-8",
    )

    await app_main.run(parse_args_from(["--config", str(config_path)]))

    assert seen == {"model": "gpt-4.1-mini", "path": config_path}


@pytest.mark.asyncio
async def test_list_mode_rejects_missing_telegram_section(tmp_path: Path) -> None:
    config_path = tmp_path / "config.toml"
    config_path.write_text("[openai]\napi_key = 'k'\nmodel = 'm'\n", encoding="utf-8")

    with pytest.raises(ConfigError):
        await app_main.run(parse_args_from(["--config", str(config_path), "--list-chats"]))
