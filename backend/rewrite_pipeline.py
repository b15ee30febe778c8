"""
Per-message rewrite pipeline.

ownership filter -> dedupe check -> content filter -> context assembly
(with one-shot backfill) -> model call (or override) -> truncation ->
no-op filters -> edit -> dedupe record.

Every step either advances or ends the message with a logged outcome. External
failures never propagate out of `process_message`.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import List, Optional, Protocol, Sequence

from app_config import HotRewriteConfig
from rewrite_events import MessageEdited, RewriteHooks
from runtime_state import CachedMessage, ContextCache, ContextScope, DedupeCache

logger = logging.getLogger(__name__)

TELEGRAM_MESSAGE_MAX_CHARS = 4096

OUTCOME_NOT_OUTGOING = "not_outgoing"
OUTCOME_DUPLICATE = "duplicate"
OUTCOME_EMPTY_INPUT = "empty_input"
OUTCOME_REWRITE_FAILED = "rewrite_failed"
OUTCOME_EMPTY_RESULT = "empty_result"
OUTCOME_UNCHANGED = "unchanged"
OUTCOME_EDIT_FAILED = "edit_failed"
OUTCOME_EDITED = "edited"


class MessageLike(Protocol):
    chat_id: int
    message_id: int
    outgoing: bool
    text: str


class PlatformClient(Protocol):
    async def edit_message(self, message: MessageLike, new_text: str) -> None: ...

    async def fetch_context(
        self, message: MessageLike, limit: int, topic_root_id: Optional[int]
    ) -> List[CachedMessage]: ...


class Rewriter(Protocol):
    async def rewrite(
        self, system_prompt: str, context: Sequence[CachedMessage], input_text: str
    ) -> str: ...


@dataclass
class ProcessMessageRuntime:
    dedupe_cache: DedupeCache
    context_cache: ContextCache
    rewrite_override: Optional[str]
    hooks: RewriteHooks


def utf16_units(ch: str) -> int:
    return 2 if ord(ch) > 0xFFFF else 1


def truncate_to_telegram_limit(text: str, max_utf16_units: int) -> str:
    """Cut `text` to at most `max_utf16_units` UTF-16 code units without splitting a surrogate pair."""
    count = 0
    for index, ch in enumerate(text):
        count += utf16_units(ch)
        if count > max_utf16_units:
            return text[:index]
    return text


def normalize_rewrite_override(rewrite_override: Optional[str]) -> Optional[str]:
    if rewrite_override is None:
        return None
    value = rewrite_override.strip()
    return value if value else None


def _indent(value: str, prefix: str) -> str:
    return value.replace("\n", "\n" + prefix)


def format_rewrite_payload(
    system_prompt: str, context: Sequence[CachedMessage], input_text: str
) -> str:
    if context:
        context_block = "\n".join(
            f"    {idx:02d}. {_indent(entry.as_llm_user_content(), ' ' * 9)}"
            for idx, entry in enumerate(context, start=1)
        )
    else:
        context_block = "    (none)"
    return (
        f"  system_prompt:\n    {_indent(system_prompt, '    ')}\n"
        f"  context:\n{context_block}\n"
        f"  input:\n    {_indent(input_text, '    ')}"
    )


async def _assemble_context(
    bot: PlatformClient,
    rewrite: HotRewriteConfig,
    message: MessageLike,
    scope: ContextScope,
    context_cache: ContextCache,
) -> List[CachedMessage]:
    requested = rewrite.context_messages
    context = context_cache.recent_before(scope, message.message_id, requested)
    if not context_cache.should_backfill(scope, requested, len(context)):
        return context

    logger.info(
        "fetching context messages from telegram chat_id=%s topic_root_id=%s "
        "message_id=%s requested_context_messages=%d cached_context_messages=%d",
        scope.chat_id,
        scope.topic_root_id,
        message.message_id,
        requested,
        len(context),
    )
    # Mark before the fetch so a slow backfill is never started twice for a scope.
    context_cache.mark_hydrated(scope)
    try:
        fetched = await bot.fetch_context(message, requested, scope.topic_root_id)
    except Exception as exc:
        logger.warning(
            "failed to fetch context messages; using cached context only "
            "chat_id=%s topic_root_id=%s message_id=%s error=%s",
            scope.chat_id,
            scope.topic_root_id,
            message.message_id,
            exc,
        )
        return context

    logger.info(
        "fetched context messages from telegram chat_id=%s topic_root_id=%s "
        "message_id=%s fetched_context_messages=%d",
        scope.chat_id,
        scope.topic_root_id,
        message.message_id,
        len(fetched),
    )
    return list(fetched)


async def process_message(
    bot: PlatformClient,
    llm: Rewriter,
    rewrite: HotRewriteConfig,
    message: MessageLike,
    scope: ContextScope,
    runtime: ProcessMessageRuntime,
) -> str:
    chat_id = scope.chat_id
    message_id = message.message_id
    if not message.outgoing:
        return OUTCOME_NOT_OUTGOING

    if runtime.dedupe_cache.contains(chat_id, message_id):
        logger.info("skipping deduped message chat_id=%s message_id=%s", chat_id, message_id)
        return OUTCOME_DUPLICATE

    original = (message.text or "").strip()
    if not original:
        logger.info(
            "skipping non-text or empty message chat_id=%s message_id=%s",
            chat_id,
            message_id,
        )
        return OUTCOME_EMPTY_INPUT

    context = await _assemble_context(bot, rewrite, message, scope, runtime.context_cache)

    logger.info(
        "prepared rewrite payload chat_id=%s topic_root_id=%s message_id=%s "
        "context_messages=%d model_call_enabled=%s\n%s",
        chat_id,
        scope.topic_root_id,
        message_id,
        len(context),
        runtime.rewrite_override is None,
        format_rewrite_payload(rewrite.system_prompt, context, original),
    )

    if runtime.rewrite_override is not None:
        logger.debug("using test rewrite override chat_id=%s message_id=%s", chat_id, message_id)
        rewritten = runtime.rewrite_override
    else:
        try:
            rewritten = await llm.rewrite(rewrite.system_prompt, context, original)
        except Exception as exc:
            logger.warning(
                "rewrite failed; leaving original message unchanged "
                "chat_id=%s message_id=%s error=%s",
                chat_id,
                message_id,
                exc,
            )
            return OUTCOME_REWRITE_FAILED

    rewritten = truncate_to_telegram_limit(rewritten.strip(), TELEGRAM_MESSAGE_MAX_CHARS)
    if not rewritten:
        logger.info("skipping empty rewrite result chat_id=%s message_id=%s", chat_id, message_id)
        return OUTCOME_EMPTY_RESULT
    if rewritten == original:
        logger.info(
            "skipping unchanged rewrite result chat_id=%s message_id=%s", chat_id, message_id
        )
        return OUTCOME_UNCHANGED

    try:
        await bot.edit_message(message, rewritten)
    except Exception as exc:
        logger.warning(
            "failed to edit message; continuing chat_id=%s message_id=%s "
            "original_text=%r rewritten_text=%r error=%s",
            chat_id,
            message_id,
            original,
            rewritten,
            exc,
        )
        return OUTCOME_EDIT_FAILED

    runtime.dedupe_cache.insert(chat_id, message_id)
    logger.info("rewrote and edited message chat_id=%s message_id=%s", chat_id, message_id)
    runtime.hooks.emit(MessageEdited(chat_id=chat_id, message_id=message_id))
    return OUTCOME_EDITED
