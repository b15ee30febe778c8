"""
Telegram userbot adapter built on Telethon.

The runtime only sees the small surface defined here:
- `next_update()` yields `PlatformUpdate` values (new messages are converted
  into `IncomingMessage`; every other update kind is reported by name only).
- `edit_message`, `fetch_context`, `list_chats`, `shutdown`.

The session file is guarded by an exclusive file lock so two processes never
drive the same Telegram session at once.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Iterable, List, Optional, Set

from filelock import FileLock, Timeout
from telethon import TelegramClient, errors, events, utils
from telethon.tl import types

from app_config import TelegramConfig
from runtime_state import CachedMessage, resolve_sender_name

logger = logging.getLogger(__name__)

SESSION_LOCK_TIMEOUT_SECONDS = 5.0
RECONNECT_DELAY_SECONDS = 2.0

_MESSAGE_UPDATE_TYPES = (
    types.UpdateNewMessage,
    types.UpdateNewChannelMessage,
    types.UpdateShortMessage,
    types.UpdateShortChatMessage,
)

_UPDATE_KIND_NAMES = {
    types.UpdateEditMessage: "message_edited",
    types.UpdateEditChannelMessage: "message_edited",
    types.UpdateDeleteMessages: "message_deleted",
    types.UpdateDeleteChannelMessages: "message_deleted",
    types.UpdateBotCallbackQuery: "callback_query",
    types.UpdateInlineBotCallbackQuery: "callback_query",
    types.UpdateBotInlineQuery: "inline_query",
    types.UpdateBotInlineSend: "inline_send",
}


class TelegramClientError(RuntimeError):
    """Raised for connection, authorization and request failures."""


@dataclass
class IncomingMessage:
    chat_id: int
    message_id: int
    topic_root_id: Optional[int]
    outgoing: bool
    text: str
    sender_name: str
    date_unix: int
    raw: Any = field(default=None, compare=False, repr=False)


@dataclass
class PlatformUpdate:
    kind: str
    message: Optional[IncomingMessage] = None


@dataclass(frozen=True)
class ChatSummary:
    id: int
    name: str


def message_topic_root_id(message: Any) -> Optional[int]:
    """Forum-topic root of a message, or None for the general (non-topic) thread."""
    reply_to = getattr(message, "reply_to", None)
    if reply_to is None or not getattr(reply_to, "forum_topic", False):
        return None
    top_id = getattr(reply_to, "reply_to_top_id", None)
    if top_id:
        return int(top_id)
    msg_id = getattr(reply_to, "reply_to_msg_id", None)
    return int(msg_id) if msg_id else None


def is_message_update(update: Any) -> bool:
    return isinstance(update, _MESSAGE_UPDATE_TYPES)


def update_kind_name(update: Any) -> str:
    for update_type, kind in _UPDATE_KIND_NAMES.items():
        if isinstance(update, update_type):
            return kind
    name = type(update).__name__
    if name.startswith("Update") and len(name) > len("Update"):
        name = name[len("Update"):]
    return f"raw/{name}"


def filter_chats(chats: Iterable[ChatSummary], query: Optional[str]) -> List[ChatSummary]:
    needle = (query or "").strip().lower()
    if not needle:
        return list(chats)
    return [
        chat
        for chat in chats
        if needle in chat.name.lower() or needle in str(chat.id)
    ]


def _session_lock_path(session_path: Path) -> Path:
    if session_path.suffix:
        return session_path.with_suffix(session_path.suffix + ".lock")
    return Path(f"{session_path}.lock")


class TelegramBot:
    def __init__(self, config: TelegramConfig, monitored_chats: Iterable[int] = ()) -> None:
        self._config = config
        self._monitored_chats: Set[int] = set(monitored_chats)
        self._updates: "asyncio.Queue[PlatformUpdate]" = asyncio.Queue()
        self._session_lock = FileLock(
            str(_session_lock_path(config.session_path)),
            timeout=SESSION_LOCK_TIMEOUT_SECONDS,
            # Acquired in a worker thread, released on the event loop thread.
            thread_local=False,
        )
        self._client: Optional[TelegramClient] = None

    @classmethod
    async def connect_for_rewrite(
        cls,
        config: TelegramConfig,
        monitored_chats: Iterable[int],
        catch_up_enabled: bool,
    ) -> "TelegramBot":
        bot = cls(config, monitored_chats)
        await bot._connect()
        bot._subscribe_updates()
        if catch_up_enabled:
            try:
                await bot.client.catch_up()
            except (errors.RPCError, ConnectionError, OSError) as exc:
                logger.warning("telegram catch-up failed error=%s", exc)
        return bot

    @classmethod
    async def connect_for_listing(cls, config: TelegramConfig) -> "TelegramBot":
        bot = cls(config)
        await bot._connect()
        return bot

    @property
    def client(self) -> TelegramClient:
        if self._client is None:
            raise TelegramClientError("telegram client is not connected")
        return self._client

    def is_monitored_chat(self, chat_id: int) -> bool:
        return chat_id in self._monitored_chats

    def update_monitored_chats(self, chats: Iterable[int]) -> None:
        self._monitored_chats = set(chats)

    async def next_update(self) -> PlatformUpdate:
        client = self.client
        if not client.is_connected():
            await self._reconnect()

        get_task = asyncio.ensure_future(self._updates.get())
        try:
            done, _ = await asyncio.wait(
                {get_task, client.disconnected},
                return_when=asyncio.FIRST_COMPLETED,
            )
        finally:
            if not get_task.done():
                get_task.cancel()
        if get_task in done:
            return get_task.result()
        raise TelegramClientError("telegram connection lost while waiting for updates")

    async def edit_message(self, message: IncomingMessage, new_text: str) -> None:
        try:
            peer = await self._peer_for(message)
            await self.client.edit_message(
                peer, message.message_id, new_text, parse_mode=None
            )
        except (errors.RPCError, ConnectionError, OSError, ValueError) as exc:
            raise TelegramClientError(f"failed to edit telegram message: {exc}") from exc

    async def fetch_context(
        self,
        message: IncomingMessage,
        limit: int,
        topic_root_id: Optional[int],
    ) -> List[CachedMessage]:
        if limit <= 0:
            return []
        try:
            peer = await self._peer_for(message)
            history = await self.client.get_messages(
                peer,
                limit=limit,
                offset_id=message.message_id,
                reply_to=topic_root_id,
            )
            fetched: List[CachedMessage] = []
            for item in history:
                if item.id == message.message_id:
                    continue
                if topic_root_id is None and message_topic_root_id(item) is not None:
                    continue
                text = (item.raw_text or "").strip()
                if not text:
                    continue
                sender_name: Optional[str] = None
                if not item.out:
                    sender = item.sender or await item.get_sender()
                    sender_name = utils.get_display_name(sender) if sender else None
                fetched.append(
                    CachedMessage(
                        message_id=item.id,
                        sender_name=resolve_sender_name(bool(item.out), sender_name),
                        text=text,
                    )
                )
        except (errors.RPCError, ConnectionError, OSError, ValueError) as exc:
            raise TelegramClientError(f"failed to fetch telegram history: {exc}") from exc
        # Telegram returns newest first.
        fetched.reverse()
        return fetched

    async def list_chats(self, query: Optional[str] = None) -> List[ChatSummary]:
        chats: List[ChatSummary] = []
        try:
            async for dialog in self.client.iter_dialogs():
                chats.append(ChatSummary(id=int(dialog.id), name=dialog.name or ""))
        except (errors.RPCError, ConnectionError, OSError) as exc:
            raise TelegramClientError(f"failed to list telegram dialogs: {exc}") from exc
        return filter_chats(chats, query)

    async def shutdown(self) -> None:
        client = self._client
        self._client = None
        try:
            if client is not None and client.is_connected():
                # Persist update state so the next start can catch up from here.
                client.session.save()
                await client.disconnect()
        except (ConnectionError, OSError, RuntimeError) as exc:
            raise TelegramClientError(f"failed to close telegram connection: {exc}") from exc
        finally:
            if self._session_lock.is_locked:
                self._session_lock.release()

    async def _connect(self) -> None:
        session_path = self._config.session_path
        try:
            await asyncio.to_thread(self._session_lock.acquire)
        except Timeout as exc:
            raise TelegramClientError(
                f"telegram session file is already in use by another process: {session_path}"
            ) from exc

        client = TelegramClient(
            str(session_path), self._config.api_id, self._config.api_hash
        )
        try:
            await client.connect()
            if not await client.is_user_authorized():
                raise TelegramClientError(
                    f"telegram session is not authorized: {session_path}"
                )
        except TelegramClientError:
            await client.disconnect()
            self._session_lock.release()
            raise
        except (errors.RPCError, ConnectionError, OSError) as exc:
            await client.disconnect()
            self._session_lock.release()
            raise TelegramClientError(f"failed to connect to telegram: {exc}") from exc

        self._client = client
        logger.info("telegram client connected session_file=%s", session_path)

    def _subscribe_updates(self) -> None:
        self.client.add_event_handler(self._on_new_message, events.NewMessage())
        self.client.add_event_handler(self._on_raw_update, events.Raw())

    async def _reconnect(self) -> None:
        await asyncio.sleep(RECONNECT_DELAY_SECONDS)
        try:
            await self.client.connect()
        except (ConnectionError, OSError) as exc:
            raise TelegramClientError(f"failed to reconnect to telegram: {exc}") from exc

    async def _peer_for(self, message: IncomingMessage) -> Any:
        if message.raw is not None:
            return await message.raw.get_input_chat()
        return message.chat_id

    async def _on_new_message(self, event: Any) -> None:
        message = event.message
        outgoing = bool(message.out)
        peer_name: Optional[str] = None
        if not outgoing:
            try:
                sender = await message.get_sender()
            except (errors.RPCError, ValueError):
                sender = None
            peer_name = utils.get_display_name(sender) if sender else None
        date_unix = int(message.date.timestamp()) if message.date else 0
        self._updates.put_nowait(
            PlatformUpdate(
                kind="new_message",
                message=IncomingMessage(
                    chat_id=int(event.chat_id),
                    message_id=int(message.id),
                    topic_root_id=message_topic_root_id(message),
                    outgoing=outgoing,
                    text=message.raw_text or "",
                    sender_name=resolve_sender_name(outgoing, peer_name),
                    date_unix=date_unix,
                    raw=message,
                ),
            )
        )

    async def _on_raw_update(self, update: Any) -> None:
        if is_message_update(update):
            return
        self._updates.put_nowait(PlatformUpdate(kind=update_kind_name(update)))
