"""Tests for :mod:`services.session_registry`."""

from __future__ import annotations

import itertools
import json

import pytest

from chat_store import CHAT_STORAGE_KEY, LAST_ACTIVE_KEY, ChatStore, QuotaExceededError, open_kv
from models import Attachment, Message, ModelDescriptor, NotFoundError, Sender
from services.session_registry import SessionRegistry


DEFAULT_PROMPT = "Be brief."
CATALOG = (ModelDescriptor(id="openai", display_label="GPT"), ModelDescriptor(id="mistral", display_label="Mistral"))


class CountingStore(ChatStore):
    def __init__(self, kv=None) -> None:
        super().__init__(kv or open_kv(), default_system_prompt=DEFAULT_PROMPT)
        self.saves = 0

    def save(self, sessions) -> None:
        self.saves += 1
        super().save(sessions)


def _registry(store=None, catalog=CATALOG) -> SessionRegistry:
    ids = (f"id{index:03d}" for index in itertools.count(1))
    clock = itertools.count(100)
    return SessionRegistry(
        store or CountingStore(),
        default_system_prompt=DEFAULT_PROMPT,
        catalog=catalog,
        id_factory=lambda: next(ids),
        clock=lambda: float(next(clock)),
    )


def test_bootstrap_without_sessions_creates_default() -> None:
    registry = _registry()

    active = registry.bootstrap()

    assert len(registry) == 1
    assert active.name == "default"
    assert active.messages == []
    assert active.model_id == "openai"
    assert active.system_prompt == DEFAULT_PROMPT
    assert registry.store.load_last_active() == active.id


def test_empty_catalog_falls_back_to_known_model() -> None:
    registry = _registry(catalog=())

    assert registry.bootstrap().model_id == "openai"


def test_create_session_applies_defaults_and_activates() -> None:
    registry = _registry()
    registry.bootstrap()

    session_id = registry.create_session(system_prompt="Pirate voice")

    session = registry.get(session_id)
    assert registry.active_id == session_id
    assert session.name == "Chat 2"
    assert session.system_prompt == "Pirate voice"
    assert session.voice_id == "alloy"
    assert session_id in registry.store.load()


def test_switch_session_unknown_id_raises() -> None:
    registry = _registry()
    registry.bootstrap()

    with pytest.raises(NotFoundError):
        registry.switch_session("missing")


def test_switch_session_is_remembered_across_restarts() -> None:
    store = CountingStore()
    registry = _registry(store)
    first = registry.bootstrap().id
    registry.create_session()
    registry.switch_session(first)

    restarted = _registry(CountingStore(store.kv))

    assert restarted.bootstrap().id == first


def test_delete_active_falls_back_to_most_recent() -> None:
    registry = _registry()
    registry.bootstrap()
    second = registry.create_session()
    third = registry.create_session()
    registry.switch_session(second)

    active = registry.delete_session(second)

    assert active.id == third
    assert second not in registry.store.load()


def test_delete_inactive_session_keeps_active() -> None:
    registry = _registry()
    first = registry.bootstrap().id
    second = registry.create_session()

    assert registry.delete_session(first).id == second


def test_delete_only_session_creates_new_default() -> None:
    registry = _registry()
    only = registry.bootstrap().id

    active = registry.delete_session(only)

    assert active.id != only
    assert active.name == "default"
    assert active.system_prompt == DEFAULT_PROMPT
    assert list(registry.store.load()) == [active.id]


def test_clear_history_keeps_configuration() -> None:
    registry = _registry()
    session = registry.bootstrap()
    registry.update_config(session.id, model_id="mistral", system_prompt="Terse")
    session.messages.append(Message(sender=Sender.USER, content="hi"))
    registry.attach(session.id, Attachment.from_upload("a.txt", b"abc"))

    registry.clear_history(session.id)

    stored = registry.store.load()[session.id]
    assert stored.messages == []
    assert stored.pending_attachments == []
    assert stored.model_id == "mistral"
    assert stored.system_prompt == "Terse"


def test_detach_unknown_attachment_raises() -> None:
    registry = _registry()
    session = registry.bootstrap()

    with pytest.raises(NotFoundError):
        registry.detach(session.id, "nope")


def test_bootstrap_backfills_legacy_records_once() -> None:
    kv = open_kv()
    kv.put(
        CHAT_STORAGE_KEY,
        json.dumps(
            {
                "aaa": {"id": "aaa", "name": "Old", "messages": [], "createdAt": 1.0},
                "bbb": {"id": "bbb", "name": "Newer", "messages": [], "createdAt": 2.0},
            }
        ),
    )
    store = CountingStore(kv)
    registry = _registry(store)

    active = registry.bootstrap()

    assert active.id == "bbb"
    assert store.saves == 1
    stored = json.loads(kv.get(CHAT_STORAGE_KEY))
    assert stored["aaa"]["systemPrompt"] == DEFAULT_PROMPT
    assert stored["aaa"]["uploadedFiles"] == []
    assert stored["aaa"]["model"] == "openai"

    second_store = CountingStore(kv)
    _registry(second_store).bootstrap()
    assert second_store.saves == 0


def test_most_recent_ties_break_on_largest_id() -> None:
    kv = open_kv()
    record = {"messages": [], "systemPrompt": "", "uploadedFiles": [], "createdAt": 5.0, "model": "openai", "voice": "alloy"}
    kv.put(CHAT_STORAGE_KEY, json.dumps({"k1": {**record, "id": "k1"}, "k9": {**record, "id": "k9"}}))

    assert _registry(CountingStore(kv)).bootstrap().id == "k9"


def test_persistence_failure_is_reported_not_raised() -> None:
    registry = _registry(CountingStore(open_kv(quota_bytes=10)))

    session = registry.bootstrap()

    assert session.name == "default"
    assert registry.last_persist_error is not None
    assert registry.persist() is False


def test_theme_toggle_failure_is_reported_not_raised() -> None:
    kv = open_kv(quota_bytes=5)
    kv.put(LAST_ACTIVE_KEY, "abc")
    registry = _registry(CountingStore(kv))

    assert registry.toggle_theme() == "light"
    assert isinstance(registry.last_persist_error, QuotaExceededError)


def test_theme_toggle_round_trip() -> None:
    registry = _registry()

    assert registry.toggle_theme() == "dark"
    assert registry.store.load_theme() == "dark"
    assert registry.last_persist_error is None


def test_unreadable_store_file_does_not_break_persist(tmp_path) -> None:
    (tmp_path / f"{CHAT_STORAGE_KEY}.json").mkdir()
    registry = _registry(CountingStore(open_kv(str(tmp_path), quota_bytes=10_000)))

    session = registry.bootstrap()

    assert session.name == "default"
    assert registry.persist() is False
    assert registry.last_persist_error is not None
