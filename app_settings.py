"""Application configuration helpers for the chat client."""

from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Any

import streamlit as st

from api_client import IMAGE_API_BASE, TEXT_API_BASE


DEFAULT_SYSTEM_PROMPT = "You are an assistant with an ENTP personality. Answer in an ENTP tone."
DEFAULT_VOICE = "alloy"
DEFAULT_HISTORY_LIMIT = 20
DEFAULT_TIMEOUT = 60


@dataclass(frozen=True)
class AppSettings:
    """Immutable configuration bundle for the chat client."""

    text_api_base: str
    image_api_base: str
    api_key: str | None
    default_system_prompt: str
    default_voice: str
    image_model: str
    history_limit: int
    record_generated_media: bool
    stream_replies: bool
    storage_path: str
    storage_quota_bytes: int | None
    request_timeout: int
    log_level: str


def _safe_secret(key: str) -> Any:
    """Return a Streamlit secret when available."""

    try:
        return st.secrets.get(key)
    except Exception:
        return None


def _setting(key: str, default: Any = None) -> Any:
    value = _safe_secret(key)
    if value is None:
        value = os.getenv(key)
    return default if value is None else value


def _coerce_bool(value: Any, default: bool = False) -> bool:
    """Parse truthy/falsey strings and primitives into booleans."""

    if isinstance(value, bool):
        return value
    if value is None:
        return default
    if isinstance(value, (int, float)):
        return bool(value)
    text = str(value).strip().lower()
    if not text:
        return default
    if text in {"1", "true", "yes", "on", "enabled", "enable"}:
        return True
    if text in {"0", "false", "no", "off", "disabled", "disable"}:
        return False
    return default


def _coerce_int(value: Any, default: int | None, *, minimum: int = 0) -> int | None:
    if value is None or (isinstance(value, str) and not value.strip()):
        return default
    try:
        number = int(str(value).strip())
    except (TypeError, ValueError):
        return default
    return max(minimum, number)


def load_settings() -> AppSettings:
    """Collect runtime configuration from secrets and environment."""

    text_api_base = str(_setting("CHAT_TEXT_API", TEXT_API_BASE))
    image_api_base = str(_setting("CHAT_IMAGE_API", IMAGE_API_BASE))
    api_key = _setting("CHAT_API_KEY")
    return AppSettings(
        text_api_base=text_api_base.rstrip("/"),
        image_api_base=image_api_base.rstrip("/"),
        api_key=str(api_key) if api_key else None,
        default_system_prompt=str(_setting("CHAT_SYSTEM_PROMPT", DEFAULT_SYSTEM_PROMPT)),
        default_voice=str(_setting("CHAT_DEFAULT_VOICE", DEFAULT_VOICE)),
        image_model=str(_setting("CHAT_IMAGE_MODEL", "flux")),
        history_limit=_coerce_int(_setting("CHAT_HISTORY_LIMIT"), DEFAULT_HISTORY_LIMIT) or 0,
        record_generated_media=_coerce_bool(_setting("CHAT_RECORD_MEDIA"), default=False),
        stream_replies=_coerce_bool(_setting("CHAT_STREAM"), default=True),
        storage_path=str(_setting("CHAT_STORAGE_PATH", ".chat_data")),
        storage_quota_bytes=_coerce_int(_setting("CHAT_STORAGE_QUOTA"), None, minimum=1),
        request_timeout=_coerce_int(_setting("CHAT_REQUEST_TIMEOUT"), DEFAULT_TIMEOUT, minimum=1) or DEFAULT_TIMEOUT,
        log_level=str(_setting("CHAT_LOG_LEVEL", "INFO")).upper(),
    )


__all__ = ["AppSettings", "DEFAULT_SYSTEM_PROMPT", "load_settings"]
