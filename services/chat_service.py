"""Send orchestration shared by every chat surface."""

from __future__ import annotations

import logging
import threading
from typing import Callable, Iterator

from api_client import TransportError
from conversation import EmptyTurnError, begin_user_turn, take_attachments
from models import Message, MessageKind, Sender
from services.session_registry import SessionRegistry
from services.stream_reconciler import Done, Partial, StreamEvent
from services.transport import ResponseMode, TransportAdapter


logger = logging.getLogger(__name__)

_MEDIA_LABELS = {MessageKind.IMAGE: "Image", MessageKind.AUDIO: "Audio"}


class SendInProgressError(RuntimeError):
    """Raised when a session already has an outbound request in flight."""


class ReplyStream:
    """Reply events that release the session once exhausted or closed.

    Closing is safe before the first event is read. Consumers that may raise
    mid-loop should use it as a context manager.
    """

    def __init__(self, events: Iterator[StreamEvent], release: Callable[[], None]) -> None:
        self._events = events
        self._release: Callable[[], None] | None = release

    def __enter__(self) -> "ReplyStream":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    def __iter__(self) -> "ReplyStream":
        return self

    def __next__(self) -> StreamEvent:
        try:
            return next(self._events)
        except BaseException:
            self.close()
            raise

    def close(self) -> None:
        release, self._release = self._release, None
        if release is None:
            return
        try:
            close = getattr(self._events, "close", None)
            if close is not None:
                close()
        finally:
            release()


class ChatService:
    """Runs user turns against the transport, one request per session at a time."""

    def __init__(
        self,
        registry: SessionRegistry,
        transport: TransportAdapter,
        *,
        mode: ResponseMode = ResponseMode.STREAM,
        record_generated_media: bool = False,
    ) -> None:
        self.registry = registry
        self.transport = transport
        self.mode = mode
        self.record_generated_media = record_generated_media
        self._busy: set[str] = set()
        self._lock = threading.Lock()

    def is_busy(self, session_id: str) -> bool:
        with self._lock:
            return session_id in self._busy

    def _claim(self, session_id: str) -> None:
        with self._lock:
            if session_id in self._busy:
                raise SendInProgressError(f"session {session_id!r} is waiting for a reply")
            self._busy.add(session_id)

    def _release(self, session_id: str) -> None:
        with self._lock:
            self._busy.discard(session_id)

    def send_message(
        self,
        session_id: str,
        text: str,
        *,
        mode: ResponseMode | None = None,
    ) -> ReplyStream:
        """Record the user turn and return the reply updates.

        An empty turn raises :class:`EmptyTurnError` before any request is
        made. The session stays busy until the returned iterator is exhausted
        or closed.
        """

        self._claim(session_id)
        try:
            session = self.registry.get(session_id)
            turn = begin_user_turn(session, text)
            self.registry.persist()
            events = self.transport.reply(
                session,
                turn,
                persist=self.registry.persist,
                mode=mode or self.mode,
            )
        except BaseException:
            self._release(session_id)
            raise
        return ReplyStream(events, lambda: self._release(session_id))

    def run_turn(
        self,
        session_id: str,
        text: str,
        *,
        on_partial: Callable[[str], object] | None = None,
        on_complete: Callable[[str, str | None], object] | None = None,
        mode: ResponseMode | None = None,
    ) -> Done:
        """Callback flavour of :meth:`send_message` for rendering layers."""

        done: Done | None = None
        with self.send_message(session_id, text, mode=mode) as events:
            for event in events:
                if isinstance(event, Partial):
                    if on_partial is not None:
                        on_partial(event.text)
                else:
                    done = event
                    if on_complete is not None:
                        on_complete(event.text, event.error)
        if done is None:
            raise RuntimeError("reply ended without a completion")
        return done

    def generate_media(self, session_id: str, prompt: str, kind: MessageKind) -> Message:
        """Generate an image or audio clip and return the assistant message.

        Failures come back as an assistant text message. Nothing is stored
        unless ``record_generated_media`` is set.
        """

        cleaned = (prompt or "").strip()
        if not cleaned:
            raise EmptyTurnError("a prompt is required to generate media")
        session = self.registry.get(session_id)
        self._claim(session_id)
        try:
            discarded = take_attachments(session)
            if discarded:
                logger.info("Discarding %d pending attachment(s) for media generation", len(discarded))
            label = _MEDIA_LABELS.get(kind, kind.value)
            try:
                url = self.transport.generate_resource(cleaned, kind, voice=session.voice_id)
            except TransportError as exc:
                logger.error("%s generation failed: %s", label, exc.message)
                reply = Message(sender=Sender.ASSISTANT, content=f"{label} generation failed: {exc.message}")
            else:
                reply = Message(sender=Sender.ASSISTANT, content=cleaned, kind=kind, resource_url=url)
            if self.record_generated_media:
                # Stored with the media kind so it stays out of text context.
                session.messages.append(Message(sender=Sender.USER, content=cleaned, kind=kind))
                session.messages.append(reply)
            self.registry.persist()
            return reply
        finally:
            self._release(session_id)


__all__ = ["ChatService", "ReplyStream", "SendInProgressError"]
