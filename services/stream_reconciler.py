"""Reconcile an incremental chat response body into ordered text updates.

The reconciler owns the single in-flight assistant message of a session for
the duration of one reply. Chunks are fed in arrival order; every extracted
text delta produces a :class:`Partial` carrying the whole text so far, and the
reply always ends with exactly one :class:`Done`, whether it completed, failed
or was abandoned by the consumer.
"""

from __future__ import annotations

import codecs
import json
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Iterable, Iterator, Mapping, Union

import requests

from api_client import TransportError
from conversation import open_in_flight
from models import Message, Session


logger = logging.getLogger(__name__)

DONE_SENTINEL = "[DONE]"
ERROR_MARKER = "\n\n[Error] "
_SSE_FIELDS = {"event", "id", "retry"}


class ParseError(ValueError):
    """Raised for a stream record that cannot be decoded."""


class Framing(str, Enum):
    EVENT_STREAM = "event-stream"
    PLAIN_TEXT = "plain-text"
    DOCUMENT = "document"


class ReconcilerState(str, Enum):
    IDLE = "idle"
    REQUESTING = "requesting"
    STREAMING = "streaming"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


_TERMINAL = {ReconcilerState.COMPLETED, ReconcilerState.FAILED, ReconcilerState.CANCELLED}


@dataclass(frozen=True)
class Partial:
    text: str


@dataclass(frozen=True)
class Done:
    text: str
    error: str | None = None

    @property
    def failed(self) -> bool:
        return self.error is not None


StreamEvent = Union[Partial, Done]


class LineBuffer:
    """Split decoded chunks into complete lines, carrying the tail over."""

    def __init__(self, encoding: str = "utf-8") -> None:
        self._decoder = codecs.getincrementaldecoder(encoding)(errors="replace")
        self._pending = ""

    def decode(self, chunk: bytes | str) -> str:
        if isinstance(chunk, str):
            return chunk
        return self._decoder.decode(chunk)

    def feed(self, chunk: bytes | str) -> list[str]:
        self._pending += self.decode(chunk)
        parts = self._pending.split("\n")
        self._pending = parts.pop()
        return [part.rstrip("\r") for part in parts]

    def flush(self) -> str:
        tail = self._pending + self._decoder.decode(b"", final=True)
        self._pending = ""
        return tail.rstrip("\r")


@dataclass(frozen=True)
class Record:
    kind: str
    payload: str = ""


_SKIP = Record("skip")
_END = Record("done")


def classify_line(line: str) -> Record:
    """Unwrap one line of an event stream or newline-delimited JSON body."""

    stripped = line.strip()
    if not stripped or stripped.startswith(":"):
        return _SKIP
    if stripped.startswith("data:"):
        payload = stripped[len("data:"):].strip()
        if payload == DONE_SENTINEL:
            return _END
        return Record("payload", payload) if payload else _SKIP
    if stripped == DONE_SENTINEL:
        return _END
    if stripped.split(":", 1)[0].strip() in _SSE_FIELDS:
        return _SKIP
    return Record("payload", stripped)


def _first_choice(obj: Mapping[str, Any]) -> Mapping[str, Any] | None:
    choices = obj.get("choices")
    if isinstance(choices, list) and choices and isinstance(choices[0], Mapping):
        return choices[0]
    return None


def _chat_delta(obj: Mapping[str, Any]) -> str | None:
    choice = _first_choice(obj)
    if choice is None or not isinstance(choice.get("delta"), Mapping):
        return None
    content = choice["delta"].get("content")
    return content if isinstance(content, str) else ""


def _chat_message(obj: Mapping[str, Any]) -> str | None:
    choice = _first_choice(obj)
    if choice is None or not isinstance(choice.get("message"), Mapping):
        return None
    content = choice["message"].get("content")
    return content if isinstance(content, str) else ""


def _choice_text(obj: Mapping[str, Any]) -> str | None:
    choice = _first_choice(obj)
    if choice is None:
        return None
    text = choice.get("text")
    return text if isinstance(text, str) else ""


def _flat_text(obj: Mapping[str, Any]) -> str | None:
    for key in ("content", "output", "text", "response"):
        value = obj.get(key)
        if isinstance(value, str):
            return value
    return None


# Tried in order; the first decoder recognising the shape wins.
_DECODERS: tuple[Callable[[Mapping[str, Any]], str | None], ...] = (
    _chat_delta,
    _chat_message,
    _choice_text,
    _flat_text,
)


def decode_payload(payload: str) -> str:
    """Return the text carried by one structured record.

    An empty string means the record was understood but carries no text
    (role announcements, usage summaries).
    """

    try:
        obj = json.loads(payload)
    except ValueError as exc:
        raise ParseError(f"invalid JSON: {exc}") from exc
    if not isinstance(obj, Mapping):
        raise ParseError(f"expected an object, got {type(obj).__name__}")
    for decoder in _DECODERS:
        text = decoder(obj)
        if text is not None:
            return text
    if obj.get("choices") is not None or obj.get("usage") is not None:
        return ""
    raise ParseError(f"unrecognised record keys: {sorted(obj)[:5]}")


class StreamReconciler:
    """State machine folding one reply into the session's in-flight message."""

    def __init__(
        self,
        session: Session,
        *,
        persist: Callable[[], object],
        framing: Framing = Framing.EVENT_STREAM,
        error_marker: str = ERROR_MARKER,
    ) -> None:
        self.session = session
        self.framing = framing
        self.state = ReconcilerState.IDLE
        self.message: Message | None = None
        self._persist = persist
        self._error_marker = error_marker
        self._buffer = LineBuffer()
        self._document: list[str] = []
        self._text = ""
        self._sentinel_seen = False

    @property
    def text(self) -> str:
        return self._text

    @property
    def finished(self) -> bool:
        return self.state in _TERMINAL

    def start(self) -> Message:
        if self.state is not ReconcilerState.IDLE:
            raise RuntimeError(f"reconciler already {self.state.value}")
        self.message = open_in_flight(self.session)
        self.state = ReconcilerState.REQUESTING
        return self.message

    def feed(self, chunk: bytes | str) -> list[Partial]:
        if self.state is ReconcilerState.IDLE:
            raise RuntimeError("reconciler not started")
        if self.finished:
            raise RuntimeError(f"reconciler already {self.state.value}")
        self.state = ReconcilerState.STREAMING
        if self._sentinel_seen:
            return []
        if self.framing is Framing.PLAIN_TEXT:
            return self._append(self._buffer.decode(chunk))
        if self.framing is Framing.DOCUMENT:
            self._document.append(self._buffer.decode(chunk))
            return []
        return self._consume(self._buffer.feed(chunk))

    def _consume(self, lines: Iterable[str]) -> list[Partial]:
        updates: list[Partial] = []
        for line in lines:
            if self._sentinel_seen:
                break
            record = classify_line(line)
            if record is _END:
                self._sentinel_seen = True
                break
            if record is _SKIP:
                continue
            try:
                delta = decode_payload(record.payload)
            except ParseError as exc:
                logger.warning("Skipping stream record %r: %s", line[:200], exc)
                continue
            updates.extend(self._append(delta))
        return updates

    def _append(self, delta: str) -> list[Partial]:
        if not delta:
            return []
        self._text += delta
        if self.message is not None:
            self.message.content = self._text
        return [Partial(self._text)]

    def _finalize(self, state: ReconcilerState, error: str | None = None) -> Done:
        if self.message is not None:
            self.message.content = self._text
            self.message.freeze()
        self.state = state
        self._persist()
        return Done(self._text, error)

    def finish(self) -> list[StreamEvent]:
        """Handle end of stream: drain buffered data and freeze the message."""

        events: list[StreamEvent] = []
        if self.framing is Framing.DOCUMENT:
            document = "".join(self._document) + self._buffer.flush()
            if document.strip():
                try:
                    events.extend(self._append(decode_payload(document)))
                except ParseError as exc:
                    logger.warning("Skipping reply body %r: %s", document[:200], exc)
        elif self.framing is Framing.PLAIN_TEXT:
            events.extend(self._append(self._buffer.flush()))
        elif not self._sentinel_seen:
            events.extend(self._consume([self._buffer.flush()]))
        events.append(self._finalize(ReconcilerState.COMPLETED))
        return events

    def fail(self, error: str) -> Done:
        """Keep the partial text, append a visible error suffix and freeze."""

        self._text += f"{self._error_marker}{error}"
        return self._finalize(ReconcilerState.FAILED, error)

    def cancel(self) -> Done:
        return self._finalize(ReconcilerState.CANCELLED)

    def reconcile(self, chunks: Iterable[bytes | str]) -> Iterator[StreamEvent]:
        """Drive the whole reply over ``chunks``.

        Errors raised while producing chunks become a failed :class:`Done`.
        Closing the generator early still freezes and persists the message.
        """

        if self.state is ReconcilerState.IDLE:
            self.start()
        drained = False
        try:
            for chunk in chunks:
                yield from self.feed(chunk)
                if self._sentinel_seen:
                    break
            drained = True
        except TransportError as exc:
            logger.error("Reply failed: %s", exc.message)
            yield self.fail(exc.message)
            return
        except requests.RequestException as exc:
            logger.error("Reply stream broke: %s", exc)
            yield self.fail(f"network error: {exc}")
            return
        finally:
            close = getattr(chunks, "close", None)
            if close is not None:
                close()
            if not drained and not self.finished:
                self.cancel()
        yield from self.finish()


def reconcile_chunks(
    session: Session,
    chunks: Iterable[bytes | str],
    *,
    persist: Callable[[], object],
    framing: Framing = Framing.EVENT_STREAM,
) -> Iterator[StreamEvent]:
    return StreamReconciler(session, persist=persist, framing=framing).reconcile(chunks)


__all__ = [
    "DONE_SENTINEL",
    "Done",
    "Framing",
    "LineBuffer",
    "ParseError",
    "Partial",
    "ReconcilerState",
    "StreamEvent",
    "StreamReconciler",
    "classify_line",
    "decode_payload",
    "reconcile_chunks",
]
