"""Wire the chat services together and cache them per browser session."""

from __future__ import annotations

from typing import Any, Callable, MutableMapping

from api_client import GenerationClient
from app_settings import AppSettings, load_settings
from chat_store import KV, ChatStore, open_kv
from services.chat_service import ChatService
from services.session_registry import SessionRegistry
from services.transport import ResponseMode, TransportAdapter

_SETTINGS_KEY = "__chat_settings__"
_CHAT_SERVICE_KEY = "__chat_service__"


def get_settings(
    session_state: MutableMapping[str, Any],
    *,
    loader: Callable[[], AppSettings] = load_settings,
) -> AppSettings:
    settings = session_state.get(_SETTINGS_KEY)
    if not isinstance(settings, AppSettings):
        settings = loader()
        session_state[_SETTINGS_KEY] = settings
    return settings


def build_chat_service(
    settings: AppSettings,
    *,
    client: GenerationClient | None = None,
    kv: KV | None = None,
) -> ChatService:
    """Create the client, store, registry and service for one user."""

    client = client or GenerationClient(
        text_base_url=settings.text_api_base,
        image_base_url=settings.image_api_base,
        api_key=settings.api_key,
        timeout=settings.request_timeout,
    )
    transport = TransportAdapter(
        client,
        history_limit=settings.history_limit,
        image_model=settings.image_model,
    )
    catalog = transport.fetch_models()
    store = ChatStore(
        kv or open_kv(settings.storage_path, quota_bytes=settings.storage_quota_bytes),
        default_system_prompt=settings.default_system_prompt,
        default_voice=settings.default_voice,
    )
    registry = SessionRegistry(
        store,
        default_system_prompt=settings.default_system_prompt,
        catalog=catalog,
        default_voice=settings.default_voice,
    )
    registry.bootstrap()
    return ChatService(
        registry,
        transport,
        mode=ResponseMode.STREAM if settings.stream_replies else ResponseMode.SINGLE,
        record_generated_media=settings.record_generated_media,
    )


def get_chat_service(session_state: MutableMapping[str, Any]) -> ChatService:
    service = session_state.get(_CHAT_SERVICE_KEY)
    if not isinstance(service, ChatService):
        service = build_chat_service(get_settings(session_state))
        session_state[_CHAT_SERVICE_KEY] = service
    return service


__all__ = ["build_chat_service", "get_chat_service", "get_settings"]
