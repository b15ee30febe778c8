"""
OpenAI-compatible chat-completions client used to rewrite a single message.

One request per rewrite:
    system prompt -> prior context turns (as user turns) -> the original text.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional, Sequence

import httpx

from app_config import DEFAULT_OPENAI_BASE_URL, is_valid_http_url
from runtime_state import CachedMessage

logger = logging.getLogger(__name__)


class LlmConfigError(ValueError):
    """Raised when a client cannot be built from the given credentials/model."""


class LlmRewriteError(RuntimeError):
    """Raised when a rewrite request fails or returns an unusable payload."""


def _join_api_url(base: str, endpoint: str) -> str:
    return f"{base.rstrip('/')}/{endpoint.lstrip('/')}"


def _normalize_chat_api_base(base: str) -> str:
    normalized = (base or "").strip().rstrip("/")
    if not normalized:
        return ""
    if normalized.lower().endswith("/chat/completions"):
        return normalized[: -len("/chat/completions")]
    return normalized


def build_chat_messages(
    system_prompt: str,
    context: Sequence[CachedMessage],
    input_text: str,
) -> List[Dict[str, str]]:
    messages = [{"role": "system", "content": system_prompt}]
    for entry in context:
        messages.append({"role": "user", "content": entry.as_llm_user_content()})
    messages.append({"role": "user", "content": input_text})
    return messages


def _extract_completion_text(payload: Any) -> Optional[str]:
    if not isinstance(payload, dict):
        return None
    choices = payload.get("choices")
    if not isinstance(choices, list) or not choices:
        return None
    first = choices[0]
    if not isinstance(first, dict):
        return None
    message = first.get("message")
    if not isinstance(message, dict):
        return None
    content = message.get("content")
    if not isinstance(content, str):
        return None
    return content


class RewriteClient:
    def __init__(
        self,
        api_key: str,
        model: str,
        timeout_seconds: float,
        base_url: str = DEFAULT_OPENAI_BASE_URL,
    ) -> None:
        if not (api_key or "").strip():
            raise LlmConfigError("openai api key must not be empty")
        if not (model or "").strip():
            raise LlmConfigError("openai model must not be empty")
        normalized_base = _normalize_chat_api_base(base_url)
        if not is_valid_http_url(normalized_base):
            raise LlmConfigError("openai base url must be a valid URL string")

        self._api_key = api_key.strip()
        self.model = model.strip()
        self.base_url = normalized_base
        self.timeout_seconds = float(timeout_seconds)

    async def rewrite(
        self,
        system_prompt: str,
        context: Sequence[CachedMessage],
        input_text: str,
    ) -> str:
        payload = {
            "model": self.model,
            "messages": build_chat_messages(system_prompt, context, input_text),
        }
        logger.debug(
            "sending rewrite request model=%s timeout_seconds=%s context_messages=%d",
            self.model,
            self.timeout_seconds,
            len(context),
        )
        response = await self._post_json("/chat/completions", payload)
        content = _extract_completion_text(response)
        if content is None:
            raise LlmRewriteError("chat completion response missing assistant message")
        return content.strip()

    async def _post_json(self, endpoint: str, payload: Dict[str, Any]) -> Any:
        url = _join_api_url(self.base_url, endpoint)
        headers = {
            "Content-Type": "application/json",
            "Accept": "application/json",
            "Authorization": f"Bearer {self._api_key}",
        }
        try:
            timeout = httpx.Timeout(self.timeout_seconds)
            async with httpx.AsyncClient(timeout=timeout) as client:
                response = await client.post(url, json=payload, headers=headers)
                response.raise_for_status()
                return response.json()
        except httpx.HTTPStatusError as exc:
            body = exc.response.text[:500]
            raise LlmRewriteError(
                f"chat completion failed with status {exc.response.status_code}: {body}"
            ) from exc
        except (httpx.HTTPError, httpx.InvalidURL) as exc:
            raise LlmRewriteError(f"failed to send chat completion request: {exc}") from exc
        except ValueError as exc:
            raise LlmRewriteError("failed to parse chat completion response JSON") from exc
