"""Durable key-value storage for the chat session collection."""

from __future__ import annotations

import json
import logging
import os
import re
import threading
from dataclasses import dataclass, field
from typing import Any, Mapping

from models import Session


logger = logging.getLogger(__name__)

CHAT_STORAGE_KEY = "aiChatAppData"
LAST_ACTIVE_KEY = "aiChatAppLastActive"
THEME_STORAGE_KEY = "aiChatAppTheme"
THEMES = ("light", "dark")

_SAFE_KEY = re.compile(r"[^a-zA-Z0-9_-]")
_SCALARS = (str, int, float, bool, type(None))


class PersistenceError(RuntimeError):
    """Raised when the durable store cannot be written."""


class QuotaExceededError(PersistenceError):
    """Raised when a write would grow the store past its quota."""


@dataclass
class KV:
    """String key-value store backed by a dict or by one file per key."""

    store: Any
    backend: str
    quota_bytes: int | None = None

    def _path(self, key: str) -> str:
        return os.path.join(self.store, f"{_SAFE_KEY.sub('_', key)}.json")

    def get(self, key: str) -> str | None:
        if self.backend == "file":
            path = self._path(key)
            if not os.path.exists(path):
                return None
            try:
                with open(path, "r", encoding="utf-8") as handle:
                    return handle.read()
            except OSError as exc:
                raise PersistenceError(f"could not read {key!r}: {exc}") from exc
        return self.store.get(key)

    def keys(self) -> list[str]:
        if self.backend == "file":
            try:
                names = os.listdir(self.store)
            except OSError as exc:
                raise PersistenceError(f"could not list {self.store!r}: {exc}") from exc
            return [name[: -len(".json")] for name in names if name.endswith(".json")]
        return list(self.store)

    def usage(self, *, exclude: str | None = None) -> int:
        total = 0
        for key in self.keys():
            if exclude is not None and _SAFE_KEY.sub("_", key) == _SAFE_KEY.sub("_", exclude):
                continue
            value = self.get(key) or ""
            total += len(value.encode("utf-8"))
        return total

    def put(self, key: str, value: str) -> None:
        if self.quota_bytes is not None:
            needed = self.usage(exclude=key) + len(value.encode("utf-8"))
            if needed > self.quota_bytes:
                raise QuotaExceededError(
                    f"writing {key!r} needs {needed} bytes, quota is {self.quota_bytes}"
                )
        if self.backend == "file":
            path = self._path(key)
            tmp_path = f"{path}.tmp"
            try:
                with open(tmp_path, "w", encoding="utf-8") as handle:
                    handle.write(value)
                os.replace(tmp_path, path)
            except OSError as exc:
                raise PersistenceError(f"could not write {key!r}: {exc}") from exc
        else:
            self.store[key] = value


def open_kv(path: str | None = None, *, quota_bytes: int | None = None) -> KV:
    """Open a file-backed store at ``path`` or an in-memory one when omitted."""

    if path is None:
        return KV(store={}, backend="memory", quota_bytes=quota_bytes)
    os.makedirs(path, exist_ok=True)
    return KV(store=path, backend="file", quota_bytes=quota_bytes)


def _prune(value: Any, where: str) -> Any:
    """Return ``value`` with every part that cannot become JSON removed."""

    if isinstance(value, _SCALARS):
        return value
    if isinstance(value, Mapping):
        pruned: dict[str, Any] = {}
        for key, item in value.items():
            try:
                pruned[str(key)] = _prune(item, f"{where}.{key}")
            except TypeError:
                logger.warning("Dropping unserialisable field %s.%s", where, key)
        return pruned
    if isinstance(value, (list, tuple)):
        items: list[Any] = []
        for index, item in enumerate(value):
            try:
                items.append(_prune(item, f"{where}[{index}]"))
            except TypeError:
                logger.warning("Dropping unserialisable item %s[%d]", where, index)
        return items
    raise TypeError(f"{type(value).__name__} is not JSON serialisable")


def _needs_backfill(raw: Mapping[str, Any]) -> bool:
    if not isinstance(raw.get("systemPrompt"), str):
        return True
    if "uploadedFiles" not in raw and "pendingAttachments" not in raw:
        return True
    return not isinstance(raw.get("createdAt"), (int, float))


@dataclass
class LoadResult:
    sessions: dict[str, Session] = field(default_factory=dict)
    backfilled: tuple[str, ...] = ()


class ChatStore:
    """Load and save the session map plus the last-active and theme scalars.

    Writes are serialised through a lock; the last writer wins.
    """

    def __init__(
        self,
        kv: KV,
        *,
        default_system_prompt: str,
        default_model: str = "",
        default_voice: str = "",
    ) -> None:
        self._kv = kv
        self._default_system_prompt = default_system_prompt
        self._default_model = default_model
        self._default_voice = default_voice
        self._lock = threading.Lock()

    @property
    def kv(self) -> KV:
        return self._kv

    def load_result(self) -> LoadResult:
        try:
            text = self._kv.get(CHAT_STORAGE_KEY)
        except PersistenceError as exc:
            logger.warning("Could not read chat data: %s", exc)
            return LoadResult()
        if not text:
            return LoadResult()
        try:
            raw = json.loads(text)
        except ValueError:
            logger.warning("Stored chat data is corrupt; starting empty")
            return LoadResult()
        if not isinstance(raw, Mapping):
            logger.warning("Stored chat data has unexpected type %s", type(raw).__name__)
            return LoadResult()

        sessions: dict[str, Session] = {}
        backfilled: list[str] = []
        for session_id, record in raw.items():
            if not isinstance(record, Mapping):
                logger.warning("Skipping malformed session record %r", session_id)
                continue
            session = Session.from_dict(
                str(session_id),
                record,
                default_system_prompt=self._default_system_prompt,
                default_model=self._default_model,
                default_voice=self._default_voice,
            )
            sessions[session.id] = session
            if _needs_backfill(record):
                backfilled.append(session.id)
        return LoadResult(sessions=sessions, backfilled=tuple(backfilled))

    def load(self) -> dict[str, Session]:
        return self.load_result().sessions

    def save(self, sessions: Mapping[str, Session]) -> None:
        with self._lock:
            payload = {
                session_id: _prune(session.asdict(), session_id)
                for session_id, session in list(sessions.items())
            }
            self._kv.put(CHAT_STORAGE_KEY, json.dumps(payload, ensure_ascii=False))

    def load_last_active(self) -> str | None:
        try:
            value = self._kv.get(LAST_ACTIVE_KEY)
        except PersistenceError:
            return None
        return value or None

    def save_last_active(self, session_id: str) -> None:
        with self._lock:
            self._kv.put(LAST_ACTIVE_KEY, session_id)

    def load_theme(self) -> str:
        try:
            value = self._kv.get(THEME_STORAGE_KEY)
        except PersistenceError:
            return THEMES[0]
        return value if value in THEMES else THEMES[0]

    def save_theme(self, theme: str) -> None:
        if theme not in THEMES:
            raise ValueError(f"unknown theme {theme!r}")
        with self._lock:
            self._kv.put(THEME_STORAGE_KEY, theme)

    def toggle_theme(self) -> str:
        theme = "dark" if self.load_theme() == "light" else "light"
        self.save_theme(theme)
        return theme


__all__ = [
    "CHAT_STORAGE_KEY",
    "ChatStore",
    "KV",
    "LAST_ACTIVE_KEY",
    "LoadResult",
    "PersistenceError",
    "QuotaExceededError",
    "THEME_STORAGE_KEY",
    "open_kv",
]
