"""
Configuration file loading for the rewriter.

The config file is TOML with three sections:
1) [telegram] - userbot credentials and session file (always required).
2) [openai]   - model endpoint and credentials (rewrite mode only).
3) [rewrite]  - monitored chats, system prompt, context depth (rewrite mode only).

Only the [openai] and [rewrite] parts are hot-reloadable; they are extracted
into an immutable `HotConfig` that is compared by value on every reload.
"""

from __future__ import annotations

import enum
import tomllib
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, FrozenSet, List, Optional, Tuple

import httpx
from pydantic import BaseModel, Field, ValidationError


DEFAULT_CONFIG_PATH = "config.toml"
DEFAULT_OPENAI_BASE_URL = "https://api.openai.com/v1"
DEFAULT_OPENAI_TIMEOUT_SECONDS = 20
DEFAULT_CONTEXT_MESSAGES = 10


class ConfigError(ValueError):
    """Raised when the config file cannot be read, parsed or validated."""


class ConfigMode(enum.Enum):
    REWRITE = "rewrite"
    LIST_CHATS = "list_chats"


class TelegramConfig(BaseModel):
    api_id: int
    api_hash: str
    session_file: str

    @property
    def session_path(self) -> Path:
        return Path(self.session_file).expanduser()


class OpenAiConfig(BaseModel):
    api_key: str
    model: str
    base_url: str = DEFAULT_OPENAI_BASE_URL
    timeout_seconds: int = Field(default=DEFAULT_OPENAI_TIMEOUT_SECONDS, ge=1)


class RewriteConfig(BaseModel):
    chats: List[int]
    system_prompt: str
    context_messages: int = Field(default=DEFAULT_CONTEXT_MESSAGES, ge=0)


class AppConfig(BaseModel):
    telegram: TelegramConfig
    openai: Optional[OpenAiConfig] = None
    rewrite: Optional[RewriteConfig] = None

    def openai_required(self) -> OpenAiConfig:
        if self.openai is None:
            raise ConfigError("missing required [openai] section")
        return self.openai

    def rewrite_required(self) -> RewriteConfig:
        if self.rewrite is None:
            raise ConfigError("missing required [rewrite] section")
        return self.rewrite


@dataclass(frozen=True)
class HotRewriteConfig:
    chats: Tuple[int, ...]
    system_prompt: str
    context_messages: int

    @property
    def monitored_chats(self) -> FrozenSet[int]:
        return frozenset(self.chats)


@dataclass(frozen=True)
class HotConfig:
    """The reloadable part of the config; replaced wholesale, never mutated."""

    llm_api_key: str
    llm_model: str
    llm_base_url: str
    rewrite: HotRewriteConfig


def is_valid_http_url(raw: str) -> bool:
    value = (raw or "").strip()
    if not value:
        return False
    try:
        url = httpx.URL(value)
    except (httpx.InvalidURL, TypeError):
        return False
    return url.scheme in {"http", "https"} and bool(url.host)


def _format_validation_error(exc: ValidationError) -> str:
    parts: List[str] = []
    for error in exc.errors():
        location = ".".join(str(item) for item in error.get("loc", ()))
        parts.append(f"{location}: {error.get('msg', 'invalid value')}")
    return "; ".join(parts)


def _validate_telegram_config(config: TelegramConfig) -> None:
    if config.api_id <= 0:
        raise ConfigError("telegram.api_id must be positive")
    if not config.api_hash.strip():
        raise ConfigError("telegram.api_hash must not be empty")
    if not config.session_file.strip():
        raise ConfigError("telegram.session_file must not be empty")


def _validate_openai_config(config: OpenAiConfig) -> None:
    if not config.api_key.strip():
        raise ConfigError("openai.api_key must not be empty")
    if not config.model.strip():
        raise ConfigError("openai.model must not be empty")
    if not is_valid_http_url(config.base_url):
        raise ConfigError("openai.base_url must be a valid URL")


def _validate_rewrite_config(config: RewriteConfig) -> None:
    if not config.system_prompt.strip():
        raise ConfigError("rewrite.system_prompt must not be empty")
    if not config.chats:
        raise ConfigError("rewrite.chats must not be empty")


def validate_config_for_mode(config: AppConfig, mode: ConfigMode) -> None:
    _validate_telegram_config(config.telegram)
    if mode is not ConfigMode.REWRITE:
        return

    if config.openai is None:
        raise ConfigError("missing required [openai] section for rewrite mode")
    _validate_openai_config(config.openai)

    if config.rewrite is None:
        raise ConfigError("missing required [rewrite] section for rewrite mode")
    _validate_rewrite_config(config.rewrite)


def parse_and_validate_config(raw: str, mode: ConfigMode) -> AppConfig:
    try:
        payload: Dict[str, Any] = tomllib.loads(raw)
    except tomllib.TOMLDecodeError as exc:
        raise ConfigError(f"failed to parse config file as TOML: {exc}") from exc

    try:
        config = AppConfig.model_validate(payload)
    except ValidationError as exc:
        raise ConfigError(
            f"invalid config file: {_format_validation_error(exc)}"
        ) from exc

    validate_config_for_mode(config, mode)
    return config


def load_config_for_mode(path: Path, mode: ConfigMode) -> AppConfig:
    try:
        raw = Path(path).read_text(encoding="utf-8")
    except (OSError, UnicodeDecodeError) as exc:
        raise ConfigError(f"failed to read config file: {path}") from exc
    return parse_and_validate_config(raw, mode)


def extract_hot_config(config: AppConfig) -> HotConfig:
    openai = config.openai_required()
    rewrite = config.rewrite_required()
    return HotConfig(
        llm_api_key=openai.api_key,
        llm_model=openai.model,
        llm_base_url=openai.base_url,
        rewrite=HotRewriteConfig(
            chats=tuple(rewrite.chats),
            system_prompt=rewrite.system_prompt,
            context_messages=rewrite.context_messages,
        ),
    )


def load_hot_config(path: Path) -> HotConfig:
    config = load_config_for_mode(path, ConfigMode.REWRITE)
    return extract_hot_config(config)
