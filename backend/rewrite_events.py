"""Observer events emitted by the rewrite runtime (diagnostics and tests)."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Any, Callable, Optional, Union


@dataclass(frozen=True)
class RuntimeReady:
    startup_unix: int
    catch_up_enabled: bool
    skip_historical_catch_up_messages: bool


@dataclass(frozen=True)
class MonitoredUpdate:
    chat_id: int
    topic_root_id: Optional[int]
    message_id: int
    outgoing: bool
    kind: str = "new_message"


@dataclass(frozen=True)
class MessageEdited:
    chat_id: int
    message_id: int


@dataclass(frozen=True)
class UnsupportedUpdateIgnored:
    update_kind: str


RewriteEvent = Union[RuntimeReady, MonitoredUpdate, MessageEdited, UnsupportedUpdateIgnored]


class RewriteHooks:
    """
    Pluggable side channel for runtime events.

    The default instance is a no-op. Tests pass an event handler (for example
    `list.append` or `RewriteHooks.with_queue(queue)`) and may ask for the
    connected platform client once the runtime is ready.
    """

    def __init__(
        self,
        on_event: Optional[Callable[[RewriteEvent], None]] = None,
        on_client_ready: Optional[Callable[[Any], None]] = None,
    ) -> None:
        self._on_event = on_event
        self._on_client_ready = on_client_ready

    @classmethod
    def with_queue(cls, queue: "asyncio.Queue[RewriteEvent]") -> "RewriteHooks":
        return cls(on_event=queue.put_nowait)

    def emit(self, event: RewriteEvent) -> None:
        if self._on_event is not None:
            self._on_event(event)

    def send_client(self, client: Any) -> None:
        callback = self._on_client_ready
        self._on_client_ready = None
        if callback is not None:
            callback(client)
