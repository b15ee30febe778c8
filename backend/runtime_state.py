"""
Runtime state helpers for the rewrite loop.

This module provides:
1) Dedupe cache: (chat, message) pairs already edited, remembered for a TTL.
2) Context cache: bounded per-scope (chat x topic) history of recent text
   messages, plus the one-shot hydration (backfill) flag per scope.

Both caches are ephemeral and process-local. They are owned by the runtime
loop and only touched from its single task, so they carry no locks.
"""

from __future__ import annotations

import time
from collections import deque
from dataclasses import dataclass
from typing import Any, Callable, Deque, Dict, Iterable, List, Optional, Set, Tuple


DEDUPE_TTL_SECONDS = 300.0


def resolve_sender_name(outgoing: bool, peer_name: Optional[str]) -> str:
    if outgoing:
        return "Me"
    name = (peer_name or "").strip()
    return name if name else "Unknown"


@dataclass(frozen=True)
class ContextScope:
    chat_id: int
    topic_root_id: Optional[int] = None


@dataclass(frozen=True)
class CachedMessage:
    message_id: int
    sender_name: str
    text: str

    def as_llm_user_content(self) -> str:
        return f"{self.sender_name}: {self.text}"


class DedupeCache:
    """Time-bounded set of (chat_id, message_id) pairs that were already edited."""

    def __init__(
        self,
        ttl_seconds: float = DEDUPE_TTL_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._ttl_seconds = float(ttl_seconds)
        self._clock = clock
        self._entries: Dict[Tuple[int, int], float] = {}

    def __len__(self) -> int:
        return len(self._entries)

    def contains(self, chat_id: int, message_id: int) -> bool:
        self._evict_expired()
        return (chat_id, message_id) in self._entries

    def insert(self, chat_id: int, message_id: int) -> None:
        self._entries[(chat_id, message_id)] = self._clock()

    def _evict_expired(self) -> None:
        now = self._clock()
        expired = [
            key
            for key, seen_at in self._entries.items()
            if now - seen_at > self._ttl_seconds
        ]
        for key in expired:
            del self._entries[key]


class ContextCache:
    """
    Per-scope rolling history used as rewrite context.

    Scopes that share a chat but differ in topic root never see each other's
    messages or hydration state.
    """

    def __init__(self, per_chat_limit: int) -> None:
        self._per_chat_limit = max(0, int(per_chat_limit))
        self._entries: Dict[ContextScope, Deque[CachedMessage]] = {}
        self._hydrated_scopes: Set[ContextScope] = set()

    @property
    def per_chat_limit(self) -> int:
        return self._per_chat_limit

    def set_capacity(self, per_chat_limit: int) -> None:
        self._per_chat_limit = max(0, int(per_chat_limit))
        for messages in self._entries.values():
            self._trim(messages)

    def retain_scopes(self, allowed_chats: Iterable[int]) -> None:
        allowed = set(allowed_chats)
        self._entries = {
            scope: messages
            for scope, messages in self._entries.items()
            if scope.chat_id in allowed
        }
        self._hydrated_scopes = {
            scope for scope in self._hydrated_scopes if scope.chat_id in allowed
        }

    def observe(
        self,
        scope: ContextScope,
        message_id: int,
        sender_name: str,
        text: str,
    ) -> None:
        clean_text = (text or "").strip()
        if not clean_text:
            return
        messages = self._entries.get(scope)
        if messages is None:
            messages = deque()
            self._entries[scope] = messages
        # Redelivery can reorder updates, so check the whole window, not just the tail.
        if any(cached.message_id == message_id for cached in messages):
            return
        messages.append(
            CachedMessage(message_id=message_id, sender_name=sender_name, text=clean_text)
        )
        self._trim(messages)

    def recent_before(
        self, scope: ContextScope, message_id: int, count: int
    ) -> List[CachedMessage]:
        if count <= 0:
            return []
        recent: List[CachedMessage] = []
        for cached in reversed(self._entries.get(scope, ())):
            if cached.message_id == message_id:
                continue
            recent.append(cached)
            if len(recent) >= count:
                break
        recent.reverse()
        return recent

    def should_backfill(
        self, scope: ContextScope, requested_count: int, cached_count: int
    ) -> bool:
        return (
            requested_count > 0
            and cached_count < requested_count
            and scope not in self._hydrated_scopes
        )

    def mark_hydrated(self, scope: ContextScope) -> None:
        self._hydrated_scopes.add(scope)

    def scope_size(self, scope: ContextScope) -> int:
        return len(self._entries.get(scope, ()))

    def status(self) -> Dict[str, Any]:
        return {
            "per_chat_limit": self._per_chat_limit,
            "scopes": len(self._entries),
            "hydrated_scopes": len(self._hydrated_scopes),
            "cached_messages": sum(len(items) for items in self._entries.values()),
        }

    def _trim(self, messages: Deque[CachedMessage]) -> None:
        while len(messages) > self._per_chat_limit:
            messages.popleft()
