"""
Hot reload of the config file.

Three pieces, wired together by `spawn_config_watcher`:
1) `_ConfigEventHandler` runs on the watchdog observer thread. It filters
   filesystem events down to create/modify/delete/move of the watched file and
   pushes a bare signal into an unbounded asyncio queue (thread-safe hop).
2) `ReloadDebouncer` runs as an asyncio task: idle -> pending -> settling ->
   reload. Bursts of signals (editors, atomic rename saves) collapse into one
   reload after a short settle delay.
3) `LatestValue` is a single-slot channel: it only ever holds the newest
   config and only publishes when the parsed value actually changed.
"""

from __future__ import annotations

import asyncio
import logging
import os
from pathlib import Path
from typing import Any, Awaitable, Callable, Generic, Optional, TypeVar

from watchdog.events import (
    EVENT_TYPE_CREATED,
    EVENT_TYPE_DELETED,
    EVENT_TYPE_MODIFIED,
    EVENT_TYPE_MOVED,
    FileSystemEvent,
    FileSystemEventHandler,
)
from watchdog.observers import Observer

from app_config import ConfigError, HotConfig, load_hot_config

logger = logging.getLogger(__name__)

SETTLE_DELAY_SECONDS = 0.05
OBSERVER_JOIN_TIMEOUT_SECONDS = 1.0

_RELEVANT_EVENT_TYPES = {
    EVENT_TYPE_CREATED,
    EVENT_TYPE_MODIFIED,
    EVENT_TYPE_DELETED,
    EVENT_TYPE_MOVED,
}

T = TypeVar("T")


def is_relevant_config_event(event: FileSystemEvent) -> bool:
    """
    Access-only events (opened/closed) and directory events are dropped.

    The inotify backend reports attribute changes (chmod, touch) as
    modifications, so those still start a reload; the value comparison in
    `LatestValue.publish_if_changed` keeps them from publishing anything.
    """
    if event.is_directory:
        return False
    return event.event_type in _RELEVANT_EVENT_TYPES


def path_targets_watched_config(candidate: Any, watched_path: Path) -> bool:
    if not candidate:
        return False
    candidate_path = Path(os.fsdecode(candidate))
    if candidate_path == watched_path:
        return True
    try:
        return candidate_path.resolve() == watched_path
    except (OSError, RuntimeError):
        return False


def event_targets_watched_config(event: FileSystemEvent, watched_path: Path) -> bool:
    paths = (event.src_path, getattr(event, "dest_path", ""))
    return any(path_targets_watched_config(path, watched_path) for path in paths)


class LatestValue(Generic[T]):
    """Single-slot overwrite channel with one consumer."""

    def __init__(self, initial: T) -> None:
        self._value = initial
        self._version = 0
        self._seen_version = 0
        self._changed = asyncio.Event()

    @property
    def version(self) -> int:
        return self._version

    def get(self) -> T:
        return self._value

    def publish_if_changed(self, value: T) -> bool:
        if value == self._value:
            return False
        self._value = value
        self._version += 1
        self._changed.set()
        return True

    async def changed(self) -> T:
        """Wait for a value newer than the last one returned, then return the newest."""
        while self._seen_version == self._version:
            self._changed.clear()
            await self._changed.wait()
        self._seen_version = self._version
        return self._value


class ReloadDebouncer:
    IDLE = "idle"
    PENDING = "pending"
    SETTLING = "settling"
    RELOADING = "reload"

    def __init__(
        self,
        signals: "asyncio.Queue[None]",
        reload: Callable[[], HotConfig],
        channel: LatestValue[HotConfig],
        settle_delay: float = SETTLE_DELAY_SECONDS,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self._signals = signals
        self._reload = reload
        self._channel = channel
        self._settle_delay = settle_delay
        self._sleep = sleep
        self.state = self.IDLE
        self.reloads_attempted = 0
        self.reloads_failed = 0

    def drain_pending(self) -> int:
        drained = 0
        while True:
            try:
                self._signals.get_nowait()
            except asyncio.QueueEmpty:
                return drained
            drained += 1

    async def settle(self) -> None:
        await self._sleep(self._settle_delay)

    def reload_once(self) -> bool:
        """Reload and publish; returns True only when a changed config was published."""
        self.reloads_attempted += 1
        try:
            new_config = self._reload()
        except ConfigError as exc:
            self.reloads_failed += 1
            logger.warning("config reload failed; keeping previous config error=%s", exc)
            return False
        published = self._channel.publish_if_changed(new_config)
        if not published:
            logger.debug("config file changed on disk but parsed config is identical")
        return published

    async def run_once(self) -> bool:
        await self._signals.get()
        self.state = self.PENDING
        self.drain_pending()
        self.state = self.SETTLING
        await self.settle()
        self.drain_pending()
        self.state = self.RELOADING
        try:
            return self.reload_once()
        finally:
            self.state = self.IDLE

    async def run(self) -> None:
        while True:
            try:
                await self.run_once()
            except asyncio.CancelledError:
                raise
            except Exception:
                self.reloads_failed += 1
                logger.exception("unexpected config reload failure; keeping previous config")


class _ConfigEventHandler(FileSystemEventHandler):
    def __init__(self, watched_path: Path, notify: Callable[[], None]) -> None:
        super().__init__()
        self._watched_path = watched_path
        self._notify = notify

    def on_any_event(self, event: FileSystemEvent) -> None:
        if not is_relevant_config_event(event):
            return
        if not event_targets_watched_config(event, self._watched_path):
            return
        self._notify()


class ConfigWatcher:
    def __init__(
        self,
        config_path: Path,
        channel: LatestValue[HotConfig],
        settle_delay: float = SETTLE_DELAY_SECONDS,
    ) -> None:
        try:
            self._watched_path = Path(config_path).resolve(strict=True)
        except (OSError, RuntimeError) as exc:
            raise ConfigError(f"failed to canonicalize config path: {config_path}") from exc
        self._channel = channel
        self._signals: "asyncio.Queue[None]" = asyncio.Queue()
        self._debouncer = ReloadDebouncer(
            self._signals,
            lambda: load_hot_config(self._watched_path),
            channel,
            settle_delay=settle_delay,
        )
        self._observer: Optional[Any] = None
        self._task: Optional[asyncio.Task] = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None

    @property
    def watched_path(self) -> Path:
        return self._watched_path

    def start(self) -> None:
        self._loop = asyncio.get_running_loop()
        handler = _ConfigEventHandler(self._watched_path, self._signal_from_thread)
        observer = Observer()
        try:
            observer.schedule(handler, str(self._watched_path.parent), recursive=False)
            observer.start()
        except OSError as exc:
            raise ConfigError(
                f"failed to watch directory: {self._watched_path.parent}"
            ) from exc
        self._observer = observer
        self._task = asyncio.create_task(
            self._debouncer.run(), name="config-reload-debouncer"
        )

    async def stop(self) -> None:
        observer = self._observer
        self._observer = None
        if observer is not None:
            observer.stop()
            await asyncio.to_thread(observer.join, OBSERVER_JOIN_TIMEOUT_SECONDS)
        task = self._task
        self._task = None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    def _signal_from_thread(self) -> None:
        loop = self._loop
        if loop is None or loop.is_closed():
            logger.debug("config change signal dropped; event loop is gone")
            return
        loop.call_soon_threadsafe(self._signals.put_nowait, None)


def spawn_config_watcher(config_path: Path, channel: LatestValue[HotConfig]) -> ConfigWatcher:
    watcher = ConfigWatcher(config_path, channel)
    watcher.start()
    return watcher
