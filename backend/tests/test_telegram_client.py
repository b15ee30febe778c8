import asyncio
from pathlib import Path
from types import SimpleNamespace

import pytest
from filelock import FileLock
from telethon.tl import types

import telegram_client
from app_config import TelegramConfig
from telegram_client import (
    ChatSummary,
    IncomingMessage,
    TelegramBot,
    TelegramClientError,
    _session_lock_path,
    filter_chats,
    is_message_update,
    message_topic_root_id,
    update_kind_name,
)


def _reply_header(forum_topic, reply_to_msg_id=None, reply_to_top_id=None):
    return SimpleNamespace(
        forum_topic=forum_topic,
        reply_to_msg_id=reply_to_msg_id,
        reply_to_top_id=reply_to_top_id,
    )


def _history_item(message_id, text, out=False, sender_name="Alice", reply_to=None):
    sender = types.User(id=message_id + 1000, first_name=sender_name)

    async def _get_sender():
        return sender

    return SimpleNamespace(
        id=message_id,
        raw_text=text,
        out=out,
        sender=sender,
        reply_to=reply_to,
        get_sender=_get_sender,
    )


class _FakeTelethonClient:
    def __init__(self, history=None, dialogs=None) -> None:
        self.history = history or []
        self.dialogs = dialogs or []
        self.get_messages_calls = []
        self.edit_calls = []

    async def get_messages(self, peer, **kwargs):
        self.get_messages_calls.append((peer, kwargs))
        return list(self.history)

    async def edit_message(self, peer, message_id, text, parse_mode=None):
        self.edit_calls.append((peer, message_id, text, parse_mode))

    async def iter_dialogs(self):
        for dialog in self.dialogs:
            yield dialog


def _bot(tmp_path: Path, fake_client) -> TelegramBot:
    config = TelegramConfig(api_id=1, api_hash="hash", session_file=str(tmp_path / "s.session"))
    bot = TelegramBot(config, monitored_chats=[1])
    bot._client = fake_client
    return bot


def _message(message_id=10):
    return IncomingMessage(
        chat_id=1,
        message_id=message_id,
        topic_root_id=None,
        outgoing=True,
        text="hello",
        sender_name="Me",
        date_unix=0,
    )


def test_topic_root_requires_forum_topic_flag() -> None:
    assert message_topic_root_id(SimpleNamespace(reply_to=None)) is None
    assert message_topic_root_id(
        SimpleNamespace(reply_to=_reply_header(False, reply_to_msg_id=5))
    ) is None
    assert message_topic_root_id(
        SimpleNamespace(reply_to=_reply_header(True, reply_to_msg_id=5))
    ) == 5
    assert message_topic_root_id(
        SimpleNamespace(reply_to=_reply_header(True, reply_to_msg_id=9, reply_to_top_id=5))
    ) == 5


def test_update_kind_names() -> None:
    assert update_kind_name(types.UpdateConfig()) == "raw/Config"
    assert (
        update_kind_name(types.UpdateDeleteMessages(messages=[1], pts=1, pts_count=1))
        == "message_deleted"
    )
    assert is_message_update(
        types.UpdateNewMessage(message=types.MessageEmpty(id=1), pts=1, pts_count=1)
    )
    assert not is_message_update(types.UpdateConfig())


def test_filter_chats_matches_name_or_id_case_insensitively() -> None:
    chats = [
        ChatSummary(id=-100123, name="Work Group"),
        ChatSummary(id=42, name="Family"),
    ]

    assert filter_chats(chats, None) == chats
    assert filter_chats(chats, "  ") == chats
    assert filter_chats(chats, "work") == [chats[0]]
    assert filter_chats(chats, "100123") == [chats[0]]
    assert filter_chats(chats, "nothing") == []


def test_session_lock_path() -> None:
    assert _session_lock_path(Path("/data/s.session")) == Path("/data/s.session.lock")
    assert _session_lock_path(Path("/data/session")) == Path("/data/session.lock")


def test_monitored_chats_can_be_replaced(tmp_path: Path) -> None:
    bot = _bot(tmp_path, _FakeTelethonClient())
    assert bot.is_monitored_chat(1)

    bot.update_monitored_chats({2})

    assert not bot.is_monitored_chat(1)
    assert bot.is_monitored_chat(2)


@pytest.mark.asyncio
async def test_fetch_context_returns_oldest_first_and_skips_topic_messages(tmp_path: Path) -> None:
    history = [
        _history_item(9, "mine", out=True),
        _history_item(8, "in a topic", reply_to=_reply_header(True, reply_to_msg_id=3)),
        _history_item(7, "   "),
        _history_item(6, "hi there", sender_name="Alice"),
    ]
    fake = _FakeTelethonClient(history=history)
    bot = _bot(tmp_path, fake)

    context = await bot.fetch_context(_message(10), 5, None)

    assert [(item.message_id, item.sender_name, item.text) for item in context] == [
        (6, "Alice", "hi there"),
        (9, "Me", "mine"),
    ]
    peer, kwargs = fake.get_messages_calls[0]
    assert peer == 1
    assert kwargs == {"limit": 5, "offset_id": 10, "reply_to": None}


@pytest.mark.asyncio
async def test_fetch_context_in_topic_passes_topic_root(tmp_path: Path) -> None:
    fake = _FakeTelethonClient(
        history=[_history_item(8, "topic reply", reply_to=_reply_header(True, reply_to_msg_id=3))]
    )
    bot = _bot(tmp_path, fake)

    context = await bot.fetch_context(_message(10), 2, 3)

    assert [item.text for item in context] == ["topic reply"]
    assert fake.get_messages_calls[0][1]["reply_to"] == 3


@pytest.mark.asyncio
async def test_edit_message_sends_plain_text(tmp_path: Path) -> None:
    fake = _FakeTelethonClient()
    bot = _bot(tmp_path, fake)

    await bot.edit_message(_message(10), "*not markdown*")

    assert fake.edit_calls == [(1, 10, "*not markdown*", None)]


@pytest.mark.asyncio
async def test_list_chats_filters_dialogs(tmp_path: Path) -> None:
    fake = _FakeTelethonClient(
        dialogs=[
            SimpleNamespace(id=-100123, name="Work Group"),
            SimpleNamespace(id=42, name=None),
        ]
    )
    bot = _bot(tmp_path, fake)

    assert await bot.list_chats("work") == [ChatSummary(id=-100123, name="Work Group")]
    assert await bot.list_chats(None) == [
        ChatSummary(id=-100123, name="Work Group"),
        ChatSummary(id=42, name=""),
    ]


@pytest.mark.asyncio
async def test_connect_waits_for_busy_session_without_blocking_loop(
    tmp_path: Path, monkeypatch
) -> None:
    monkeypatch.setattr(telegram_client, "SESSION_LOCK_TIMEOUT_SECONDS", 0.3)
    config = TelegramConfig(api_id=1, api_hash="hash", session_file=str(tmp_path / "s.session"))
    other_process = FileLock(str(_session_lock_path(config.session_path)))
    other_process.acquire()

    ticks = 0

    async def _ticker() -> None:
        nonlocal ticks
        while True:
            await asyncio.sleep(0.01)
            ticks += 1

    ticker = asyncio.create_task(_ticker())
    try:
        bot = TelegramBot(config)
        with pytest.raises(TelegramClientError) as exc_info:
            await bot._connect()
    finally:
        ticker.cancel()
        other_process.release()

    assert "already in use" in str(exc_info.value)
    assert ticks >= 5


def test_client_property_requires_connection(tmp_path: Path) -> None:
    bot = _bot(tmp_path, None)
    with pytest.raises(TelegramClientError):
        _ = bot.client
