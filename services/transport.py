"""Translate session state into generation requests and responses back into updates."""

from __future__ import annotations

import logging
from contextlib import closing
from enum import Enum
from typing import Any, Callable, Iterator

import requests

from api_client import GenerationClient, TransportError
from conversation import UserTurn, context_history
from models import AttachmentMeta, MessageKind, ModelDescriptor, Sender, Session
from services.stream_reconciler import Framing, StreamEvent, StreamReconciler


logger = logging.getLogger(__name__)

DEFAULT_HISTORY_LIMIT = 20
DEFAULT_IMAGE_MODEL = "flux"
_ERROR_BODY_LIMIT = 200


class ResponseMode(str, Enum):
    STREAM = "stream"
    SINGLE = "single"
    RESOURCE = "resource"


class ResponseShape(str, Enum):
    EVENT_STREAM = "event-stream"
    PLAIN_TEXT = "plain-text"
    DOCUMENT = "document"
    RESOURCE = "resource"


_FRAMING = {
    ResponseShape.EVENT_STREAM: Framing.EVENT_STREAM,
    ResponseShape.PLAIN_TEXT: Framing.PLAIN_TEXT,
    ResponseShape.DOCUMENT: Framing.DOCUMENT,
}


def classify_response(response: requests.Response, *, streaming: bool = True) -> ResponseShape:
    """Return the body shape announced by the response headers."""

    content_type = (response.headers.get("Content-Type") or "").split(";", 1)[0].strip().lower()
    if content_type == "text/event-stream" or content_type.endswith("ndjson") or content_type.endswith("jsonl"):
        return ResponseShape.EVENT_STREAM
    if content_type == "application/json" or content_type.endswith("+json"):
        return ResponseShape.DOCUMENT
    if content_type.startswith(("image/", "audio/")):
        return ResponseShape.RESOURCE
    if content_type.startswith("text/"):
        return ResponseShape.PLAIN_TEXT
    return ResponseShape.EVENT_STREAM if streaming else ResponseShape.DOCUMENT


def describe_error(response: requests.Response) -> str:
    """Return a readable message for a non-2xx response."""

    status = f"{response.status_code} {response.reason or ''}".strip()
    try:
        payload = response.json()
    except ValueError:
        payload = None
    detail: str | None = None
    if isinstance(payload, dict):
        for key in ("error", "detail", "message"):
            value = payload.get(key)
            if isinstance(value, dict):
                value = value.get("message") or value.get("detail")
            if isinstance(value, str) and value.strip():
                detail = value.strip()
                break
    if detail is None:
        raw = (response.text or "").strip()
        detail = raw[:_ERROR_BODY_LIMIT] + ("…" if len(raw) > _ERROR_BODY_LIMIT else "")
    return f"{status} - {detail}" if detail else status


def attachment_marker(meta: AttachmentMeta) -> str:
    return f"[Attachment: {meta.name} ({meta.mime_type}, {meta.size_bytes} bytes)]"


def compose_user_content(turn: UserTurn) -> str | list[dict[str, Any]]:
    """Build the content of the current user turn.

    At most one image is embedded inline; further images are ignored. Other
    attachments, and images whose bytes are gone, become text markers.
    """

    images = turn.images
    if len(images) > 1:
        logger.warning("Only one image per turn is supported; ignoring %d more", len(images) - 1)
    image = images[0] if images else None

    markers = [
        attachment_marker(item.meta)
        for item in turn.attachments
        if not (item.is_image and item.payload is not None)
    ]
    text = "\n".join(part for part in (turn.text, *markers) if part)
    if image is None:
        return text
    return [
        {"type": "text", "text": text},
        {"type": "image_url", "image_url": {"url": image.to_data_url()}},
    ]


def build_messages(session: Session, turn: UserTurn, *, history_limit: int) -> list[dict[str, Any]]:
    messages: list[dict[str, Any]] = []
    if session.system_prompt and session.system_prompt.strip():
        messages.append({"role": "system", "content": session.system_prompt})
    exclude = [turn.message] if turn.message is not None else []
    for message in context_history(session, history_limit, exclude=exclude):
        role = "user" if message.sender is Sender.USER else "assistant"
        messages.append({"role": role, "content": message.content})
    messages.append({"role": "user", "content": compose_user_content(turn)})
    return messages


class TransportAdapter:
    """Boundary between sessions and the generation service."""

    def __init__(
        self,
        client: GenerationClient,
        *,
        history_limit: int = DEFAULT_HISTORY_LIMIT,
        image_model: str = DEFAULT_IMAGE_MODEL,
        verify_resources: bool = False,
    ) -> None:
        self._client = client
        self.history_limit = max(0, int(history_limit))
        self.image_model = image_model
        self.verify_resources = verify_resources

    def fetch_models(self) -> list[ModelDescriptor]:
        """Return the model catalog, or an empty list when it cannot be read."""

        try:
            records = self._client.list_models()
        except (requests.RequestException, ValueError) as exc:
            logger.error("Error fetching models: %s", exc)
            return []
        models = [ModelDescriptor.from_dict(record) for record in records]
        return [model for model in models if model.id]

    def build_payload(self, session: Session, turn: UserTurn) -> dict[str, Any]:
        return {
            "model": session.model_id,
            "messages": build_messages(session, turn, history_limit=self.history_limit),
        }

    def reply(
        self,
        session: Session,
        turn: UserTurn,
        *,
        persist: Callable[[], object],
        mode: ResponseMode = ResponseMode.STREAM,
    ) -> Iterator[StreamEvent]:
        """Request a text reply and yield its updates.

        The in-flight message is created on first iteration and is frozen
        before the iterator is exhausted or closed.
        """

        if mode is ResponseMode.RESOURCE:
            raise ValueError("resource generation does not produce a text reply")
        payload = self.build_payload(session, turn)
        reconciler = StreamReconciler(session, persist=persist)
        return reconciler.reconcile(self._body(payload, reconciler, streaming=mode is ResponseMode.STREAM))

    def _body(
        self,
        payload: dict[str, Any],
        reconciler: StreamReconciler,
        *,
        streaming: bool,
    ) -> Iterator[bytes]:
        try:
            if streaming:
                response = self._client.open_chat_stream(payload)
            else:
                response = self._client.post_chat(payload)
        except requests.RequestException as exc:
            raise TransportError(f"network error: {exc}") from exc
        with closing(response):
            if not response.ok:
                raise TransportError(describe_error(response), status_code=response.status_code)
            shape = classify_response(response, streaming=streaming)
            if shape is ResponseShape.RESOURCE:
                raise TransportError(f"expected a text reply, got {response.headers.get('Content-Type')}")
            reconciler.framing = _FRAMING[shape]
            if streaming:
                yield from response.iter_content(chunk_size=None)
            else:
                yield response.content

    def generate_resource(
        self,
        prompt: str,
        kind: MessageKind,
        *,
        voice: str | None = None,
    ) -> str:
        """Return the locator of a generated image or audio clip."""

        cleaned = (prompt or "").strip()
        if not cleaned:
            raise ValueError("a prompt is required to generate media")
        if kind is MessageKind.IMAGE:
            url = self._client.image_url(cleaned, model=self.image_model)
        elif kind is MessageKind.AUDIO:
            url = self._client.audio_url(cleaned, voice=voice or "alloy")
        else:
            raise ValueError(f"{kind.value} is not a generated resource kind")
        if self.verify_resources:
            self._verify(url)
        return url

    def _verify(self, url: str) -> None:
        try:
            response = requests.get(url, timeout=self._client.timeout, stream=True)
        except requests.RequestException as exc:
            raise TransportError(f"network error: {exc}") from exc
        with closing(response):
            if not response.ok:
                raise TransportError(describe_error(response), status_code=response.status_code)
            if classify_response(response) is not ResponseShape.RESOURCE:
                raise TransportError(f"expected media, got {response.headers.get('Content-Type')}")


__all__ = [
    "DEFAULT_HISTORY_LIMIT",
    "ResponseMode",
    "ResponseShape",
    "TransportAdapter",
    "attachment_marker",
    "build_messages",
    "classify_response",
    "compose_user_content",
    "describe_error",
]
