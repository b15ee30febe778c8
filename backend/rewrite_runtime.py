"""
Rewrite runtime: the top-level loop of rewrite mode.

One asyncio task multiplexes three sources and handles exactly one of them per
iteration, so the caches and the active state never need locks:
- shutdown signal,
- next Telegram update,
- next hot-config value from the config watcher.

The active state (`ActiveRewriteState`) is owned by the loop and replaced
wholesale on a successful reload; it is handed to the pipeline per message.
"""

from __future__ import annotations

import asyncio
import logging
import os
import signal
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Awaitable, Callable, FrozenSet, Optional

from app_config import AppConfig, HotConfig, extract_hot_config
from config_watcher import LatestValue, spawn_config_watcher
from llm_client import LlmConfigError, RewriteClient
from rewrite_events import (
    MonitoredUpdate,
    RewriteHooks,
    RuntimeReady,
    UnsupportedUpdateIgnored,
)
from rewrite_pipeline import ProcessMessageRuntime, normalize_rewrite_override, process_message
from runtime_state import ContextCache, ContextScope, DedupeCache
from telegram_client import PlatformUpdate, TelegramBot

logger = logging.getLogger(__name__)

CATCH_UP_DISABLE_ENV = "REWRITER_TEST_DISABLE_CATCH_UP"
HISTORICAL_SKIP_DISABLE_ENV = "REWRITER_DISABLE_HISTORICAL_SKIP"
REWRITE_OVERRIDE_ENV = "REWRITER_TEST_BYPASS_REWRITE"


def _env_present(name: str) -> bool:
    # Any value, including an empty one, counts as set.
    return os.getenv(name) is not None


@dataclass
class RewriteRuntimeOptions:
    catch_up_enabled: bool = True
    skip_historical_catch_up_messages: bool = True
    rewrite_override: Optional[str] = None

    @classmethod
    def from_env(cls) -> "RewriteRuntimeOptions":
        return cls(
            catch_up_enabled=not _env_present(CATCH_UP_DISABLE_ENV),
            skip_historical_catch_up_messages=not _env_present(HISTORICAL_SKIP_DISABLE_ENV),
            rewrite_override=os.getenv(REWRITE_OVERRIDE_ENV),
        )


@dataclass
class ActiveRewriteState:
    hot_config: HotConfig
    monitored_chats: FrozenSet[int]
    llm: Any

    @classmethod
    def from_hot_config(
        cls,
        hot_config: HotConfig,
        timeout_seconds: float,
        llm_factory: Callable[..., Any] = RewriteClient,
    ) -> "ActiveRewriteState":
        llm = llm_factory(
            api_key=hot_config.llm_api_key,
            model=hot_config.llm_model,
            timeout_seconds=timeout_seconds,
            base_url=hot_config.llm_base_url,
        )
        return cls(
            hot_config=hot_config,
            monitored_chats=hot_config.rewrite.monitored_chats,
            llm=llm,
        )


def is_historical_catch_up_message(message_unix: int, startup_unix: int) -> bool:
    return message_unix < startup_unix


async def wait_for_shutdown_signal() -> None:
    loop = asyncio.get_running_loop()
    stop = asyncio.Event()
    installed = []
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop.set)
        except (NotImplementedError, RuntimeError) as exc:
            logger.warning("failed to listen for %s error=%s", sig.name, exc)
            continue
        installed.append(sig)
    try:
        await stop.wait()
    finally:
        for sig in installed:
            loop.remove_signal_handler(sig)


async def run_rewrite_mode(config: AppConfig, config_path: Path) -> None:
    await run_rewrite_mode_with_shutdown_and_hooks(
        config,
        config_path,
        wait_for_shutdown_signal(),
        RewriteHooks(),
        RewriteRuntimeOptions.from_env(),
    )


class _RewriteLoop:
    def __init__(
        self,
        bot: Any,
        active: ActiveRewriteState,
        hooks: RewriteHooks,
        options: RewriteRuntimeOptions,
        startup_unix: int,
        timeout_seconds: float,
        llm_factory: Callable[..., Any],
    ) -> None:
        self.bot = bot
        self.active = active
        self.hooks = hooks
        self.options = options
        self.startup_unix = startup_unix
        self.timeout_seconds = timeout_seconds
        self.llm_factory = llm_factory
        self.dedupe_cache = DedupeCache()
        self.context_cache = ContextCache(active.hot_config.rewrite.context_messages)
        self.runtime = ProcessMessageRuntime(
            dedupe_cache=self.dedupe_cache,
            context_cache=self.context_cache,
            rewrite_override=normalize_rewrite_override(options.rewrite_override),
            hooks=hooks,
        )

    async def handle_update(self, update: PlatformUpdate) -> None:
        message = update.message
        if update.kind != "new_message" or message is None:
            logger.debug("ignoring unsupported telegram update type update_kind=%s", update.kind)
            self.hooks.emit(UnsupportedUpdateIgnored(update_kind=update.kind))
            return

        if message.chat_id not in self.active.monitored_chats:
            logger.debug(
                "ignoring new message from unmonitored chat chat_id=%s message_id=%s outgoing=%s",
                message.chat_id,
                message.message_id,
                message.outgoing,
            )
            return

        scope = ContextScope(chat_id=message.chat_id, topic_root_id=message.topic_root_id)
        self.context_cache.observe(scope, message.message_id, message.sender_name, message.text)

        if self.options.skip_historical_catch_up_messages and is_historical_catch_up_message(
            message.date_unix, self.startup_unix
        ):
            logger.info(
                "skipping historical message during catch-up chat_id=%s message_id=%s "
                "message_unix=%s startup_unix=%s",
                message.chat_id,
                message.message_id,
                message.date_unix,
                self.startup_unix,
            )
            return

        logger.info(
            "received message update in monitored chat chat_id=%s topic_root_id=%s "
            "update_kind=new_message message_id=%s outgoing=%s",
            message.chat_id,
            message.topic_root_id,
            message.message_id,
            message.outgoing,
        )
        self.hooks.emit(
            MonitoredUpdate(
                chat_id=message.chat_id,
                topic_root_id=message.topic_root_id,
                message_id=message.message_id,
                outgoing=message.outgoing,
            )
        )
        try:
            await process_message(
                self.bot,
                self.active.llm,
                self.active.hot_config.rewrite,
                message,
                scope,
                self.runtime,
            )
        except Exception:
            logger.exception(
                "failed to process message chat_id=%s message_id=%s",
                message.chat_id,
                message.message_id,
            )

    def apply_hot_config(self, hot_config: HotConfig) -> bool:
        try:
            new_active = ActiveRewriteState.from_hot_config(
                hot_config, self.timeout_seconds, self.llm_factory
            )
        except LlmConfigError as exc:
            logger.warning(
                "ignoring config reload; keeping previous active config error=%s", exc
            )
            return False

        self.bot.update_monitored_chats(new_active.monitored_chats)
        self.context_cache.retain_scopes(new_active.monitored_chats)
        self.context_cache.set_capacity(new_active.hot_config.rewrite.context_messages)
        logger.info(
            "config reloaded model=%s chats=%s context_messages=%d",
            new_active.hot_config.llm_model,
            list(new_active.hot_config.rewrite.chats),
            new_active.hot_config.rewrite.context_messages,
        )
        self.active = new_active
        return True


async def run_rewrite_mode_with_shutdown_and_hooks(
    config: AppConfig,
    config_path: Path,
    shutdown_signal: Awaitable[Any],
    hooks: Optional[RewriteHooks] = None,
    runtime_options: Optional[RewriteRuntimeOptions] = None,
    *,
    bot_factory: Callable[..., Awaitable[Any]] = TelegramBot.connect_for_rewrite,
    watcher_factory: Callable[[Path, LatestValue[HotConfig]], Any] = spawn_config_watcher,
    llm_factory: Callable[..., Any] = RewriteClient,
    clock: Callable[[], float] = time.time,
) -> None:
    hooks = hooks or RewriteHooks()
    options = runtime_options or RewriteRuntimeOptions.from_env()
    timeout_seconds = float(config.openai_required().timeout_seconds)
    active = ActiveRewriteState.from_hot_config(
        extract_hot_config(config), timeout_seconds, llm_factory
    )

    shutdown_task = asyncio.ensure_future(shutdown_signal)
    try:
        bot = await bot_factory(
            config.telegram, active.monitored_chats, options.catch_up_enabled
        )
        try:
            startup_unix = int(clock())
            loop = _RewriteLoop(
                bot, active, hooks, options, startup_unix, timeout_seconds, llm_factory
            )
            hooks.send_client(getattr(bot, "client", None))
            hooks.emit(
                RuntimeReady(
                    startup_unix=startup_unix,
                    catch_up_enabled=options.catch_up_enabled,
                    skip_historical_catch_up_messages=options.skip_historical_catch_up_messages,
                )
            )

            channel: LatestValue[HotConfig] = LatestValue(active.hot_config)
            watcher = watcher_factory(config_path, channel)
            logger.info(
                "rewriter started config_path=%s catch_up_enabled=%s "
                "skip_historical_catch_up_messages=%s startup_unix=%s",
                config_path,
                options.catch_up_enabled,
                options.skip_historical_catch_up_messages,
                startup_unix,
            )
            try:
                await _run_loop(loop, channel, shutdown_task)
            finally:
                await watcher.stop()
        finally:
            await bot.shutdown()
    finally:
        if not shutdown_task.done():
            shutdown_task.cancel()


async def _run_loop(
    loop: _RewriteLoop,
    channel: LatestValue[HotConfig],
    shutdown_task: asyncio.Future,
) -> None:
    update_task: Optional[asyncio.Future] = None
    config_task: Optional[asyncio.Future] = None
    try:
        while True:
            if update_task is None:
                update_task = asyncio.ensure_future(loop.bot.next_update())
            if config_task is None:
                config_task = asyncio.ensure_future(channel.changed())

            done, _ = await asyncio.wait(
                {shutdown_task, update_task, config_task},
                return_when=asyncio.FIRST_COMPLETED,
            )

            if shutdown_task in done:
                logger.info("shutdown signal received")
                return

            # A ready source that is not handled this iteration stays ready for the next one.
            if update_task in done:
                finished, update_task = update_task, None
                try:
                    update = finished.result()
                except Exception as exc:
                    logger.warning("telegram update stream error error=%s", exc)
                    continue
                await loop.handle_update(update)
                continue

            if config_task in done:
                finished, config_task = config_task, None
                loop.apply_hot_config(finished.result())
    finally:
        pending = [
            task
            for task in (shutdown_task, update_task, config_task)
            if task is not None and not task.done()
        ]
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
