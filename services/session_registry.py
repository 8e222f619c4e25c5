"""In-memory registry of chat sessions backed by :mod:`chat_store`."""

from __future__ import annotations

import logging
import time
from typing import Callable, Sequence

from chat_store import ChatStore, PersistenceError
from models import Attachment, ModelDescriptor, NotFoundError, Session, new_id


logger = logging.getLogger(__name__)

DEFAULT_SESSION_NAME = "default"
FALLBACK_MODEL = "openai"
DEFAULT_VOICE = "alloy"


class SessionRegistry:
    """Owns every session and which one is active.

    Each mutating call persists the whole collection. Persistence failures
    are logged and remembered in :attr:`last_persist_error`; the in-memory
    state stays authoritative.
    """

    def __init__(
        self,
        store: ChatStore,
        *,
        default_system_prompt: str,
        catalog: Sequence[ModelDescriptor] = (),
        default_voice: str = DEFAULT_VOICE,
        id_factory: Callable[[], str] = new_id,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._store = store
        self._sessions: dict[str, Session] = {}
        self._active_id: str | None = None
        self.catalog: tuple[ModelDescriptor, ...] = tuple(catalog)
        self.default_system_prompt = default_system_prompt
        self.default_voice = default_voice
        self._id_factory = id_factory
        self._clock = clock
        self.last_persist_error: PersistenceError | None = None

    # Accessors ---------------------------------------------------------
    @property
    def store(self) -> ChatStore:
        return self._store

    @property
    def active_id(self) -> str | None:
        return self._active_id

    @property
    def active(self) -> Session:
        if self._active_id is None:
            raise NotFoundError("no active session")
        return self.get(self._active_id)

    @property
    def default_model(self) -> str:
        return self.catalog[0].id if self.catalog else FALLBACK_MODEL

    def __contains__(self, session_id: object) -> bool:
        return session_id in self._sessions

    def __len__(self) -> int:
        return len(self._sessions)

    def get(self, session_id: str) -> Session:
        try:
            return self._sessions[session_id]
        except KeyError:
            raise NotFoundError(f"session {session_id!r} not found") from None

    def list_sessions(self) -> list[Session]:
        """Return sessions, most recently created first."""

        return sorted(self._sessions.values(), key=lambda item: (item.created_at, item.id), reverse=True)

    def _most_recent(self) -> Session | None:
        ordered = self.list_sessions()
        return ordered[0] if ordered else None

    # Persistence -------------------------------------------------------
    def persist(self) -> bool:
        try:
            self._store.save(self._sessions)
        except PersistenceError as exc:
            logger.warning("Could not persist chat sessions: %s", exc)
            self.last_persist_error = exc
            return False
        self.last_persist_error = None
        return True

    def _remember_active(self) -> None:
        if self._active_id is None:
            return
        try:
            self._store.save_last_active(self._active_id)
        except PersistenceError as exc:
            logger.warning("Could not remember active session: %s", exc)
            self.last_persist_error = exc

    def toggle_theme(self) -> str:
        """Flip the stored theme and return the one now in effect."""

        try:
            return self._store.toggle_theme()
        except PersistenceError as exc:
            logger.warning("Could not save theme preference: %s", exc)
            self.last_persist_error = exc
            return self._store.load_theme()

    # Lifecycle ---------------------------------------------------------
    def bootstrap(self) -> Session:
        """Load stored sessions, backfill defaults and pick the active one."""

        result = self._store.load_result()
        self._sessions = dict(result.sessions)
        if not self._sessions:
            logger.info("No stored sessions; creating the default session")
            self.create_session()
            return self.active

        backfilled = set(result.backfilled)
        for session in self._sessions.values():
            if not session.model_id:
                session.model_id = self.default_model
                backfilled.add(session.id)
            if not session.voice_id:
                session.voice_id = self.default_voice
                backfilled.add(session.id)

        last_active = self._store.load_last_active()
        if last_active in self._sessions:
            self._active_id = last_active
        else:
            recent = self._most_recent()
            self._active_id = recent.id if recent else None
            self._remember_active()

        if backfilled:
            logger.info("Backfilled defaults for %d stored session(s)", len(backfilled))
            self.persist()
        return self.active

    def _next_name(self) -> str:
        if not self._sessions:
            return DEFAULT_SESSION_NAME
        taken = {session.name for session in self._sessions.values()}
        index = len(self._sessions) + 1
        while f"Chat {index}" in taken:
            index += 1
        return f"Chat {index}"

    def create_session(self, name: str | None = None, system_prompt: str | None = None) -> str:
        session_id = self._id_factory()
        while session_id in self._sessions:
            session_id = self._id_factory()
        session = Session(
            id=session_id,
            name=(name or "").strip() or self._next_name(),
            system_prompt=self.default_system_prompt if system_prompt is None else system_prompt,
            model_id=self.default_model,
            voice_id=self.default_voice,
            created_at=self._clock(),
        )
        self._sessions[session_id] = session
        self._active_id = session_id
        self._remember_active()
        self.persist()
        return session_id

    def switch_session(self, session_id: str) -> Session:
        session = self.get(session_id)
        self._active_id = session_id
        self._remember_active()
        return session

    def delete_session(self, session_id: str) -> Session:
        """Remove a session and return whichever session is active afterwards."""

        self.get(session_id)
        del self._sessions[session_id]
        if self._active_id == session_id:
            recent = self._most_recent()
            if recent is None:
                self._active_id = None
                self.create_session()
                return self.active
            self._active_id = recent.id
            self._remember_active()
        self.persist()
        return self.active

    def clear_history(self, session_id: str) -> Session:
        session = self.get(session_id)
        session.messages = []
        session.pending_attachments = []
        self.persist()
        return session

    def rename_session(self, session_id: str, name: str) -> Session:
        session = self.get(session_id)
        cleaned = (name or "").strip()
        if not cleaned:
            raise ValueError("session name must not be empty")
        session.name = cleaned
        self.persist()
        return session

    def update_config(
        self,
        session_id: str,
        *,
        model_id: str | None = None,
        system_prompt: str | None = None,
        voice_id: str | None = None,
    ) -> Session:
        session = self.get(session_id)
        if model_id is not None:
            session.model_id = model_id
        if system_prompt is not None:
            session.system_prompt = system_prompt
        if voice_id is not None:
            session.voice_id = voice_id
        self.persist()
        return session

    # Attachments -------------------------------------------------------
    def attach(self, session_id: str, attachment: Attachment) -> Attachment:
        session = self.get(session_id)
        session.pending_attachments.append(attachment)
        self.persist()
        return attachment

    def detach(self, session_id: str, attachment_id: str) -> Attachment:
        session = self.get(session_id)
        attachment = session.find_attachment(attachment_id)
        session.pending_attachments.remove(attachment)
        self.persist()
        return attachment


__all__ = ["DEFAULT_SESSION_NAME", "FALLBACK_MODEL", "SessionRegistry"]
