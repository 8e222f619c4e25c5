"""Shared dataclasses for chat sessions, messages and attachments."""

from __future__ import annotations

import base64
import mimetypes
import secrets
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Mapping, Sequence


class NotFoundError(LookupError):
    """Raised when a session or attachment id is unknown."""


class Sender(str, Enum):
    USER = "user"
    ASSISTANT = "assistant"

    @classmethod
    def coerce(cls, value: Any) -> "Sender":
        # Older records stored assistant turns as "ai".
        if value in ("ai", "bot", cls.ASSISTANT.value):
            return cls.ASSISTANT
        return cls.USER


class MessageKind(str, Enum):
    TEXT = "text"
    IMAGE = "image"
    AUDIO = "audio"

    @classmethod
    def coerce(cls, value: Any) -> "MessageKind":
        try:
            return cls(str(value))
        except ValueError:
            return cls.TEXT


def _base36(number: int) -> str:
    alphabet = "0123456789abcdefghijklmnopqrstuvwxyz"
    if number <= 0:
        return "0"
    digits: list[str] = []
    while number:
        number, rem = divmod(number, 36)
        digits.append(alphabet[rem])
    return "".join(reversed(digits))


def new_id() -> str:
    """Return a time-ordered, collision-resistant identifier."""

    return _base36(int(time.time() * 1000)) + secrets.token_hex(4)


def _coerce_int(value: Any, default: int = 0) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        return default


@dataclass(frozen=True)
class AttachmentMeta:
    """Durable description of a user supplied file."""

    id: str
    name: str
    mime_type: str
    size_bytes: int

    @property
    def is_image(self) -> bool:
        return self.mime_type.startswith("image/")

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> "AttachmentMeta":
        name = str(payload.get("name") or "attachment")
        mime_type = payload.get("type") or payload.get("mimeType") or payload.get("mime_type")
        if not isinstance(mime_type, str) or not mime_type:
            mime_type = mimetypes.guess_type(name)[0] or "application/octet-stream"
        size = payload.get("size") if payload.get("size") is not None else payload.get("sizeBytes")
        return cls(
            id=str(payload.get("id") or new_id()),
            name=name,
            mime_type=mime_type,
            size_bytes=_coerce_int(size),
        )

    def asdict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "type": self.mime_type,
            "size": self.size_bytes,
        }


@dataclass(eq=False)
class Attachment:
    """A file held in memory until the next outbound request consumes it.

    ``payload`` is ``None`` for attachments restored from storage: only the
    metadata survives a reload.
    """

    meta: AttachmentMeta
    payload: bytes | None = field(default=None, repr=False)

    @classmethod
    def from_upload(cls, name: str, data: bytes, mime_type: str | None = None) -> "Attachment":
        mime = mime_type or mimetypes.guess_type(name)[0] or "application/octet-stream"
        meta = AttachmentMeta(id=new_id(), name=name or "attachment", mime_type=mime, size_bytes=len(data))
        return cls(meta=meta, payload=bytes(data))

    @property
    def id(self) -> str:
        return self.meta.id

    @property
    def is_image(self) -> bool:
        return self.meta.is_image

    def to_data_url(self) -> str:
        if self.payload is None:
            raise ValueError(f"attachment {self.meta.name!r} has no payload")
        encoded = base64.b64encode(self.payload).decode("ascii")
        return f"data:{self.meta.mime_type};base64,{encoded}"


@dataclass
class Message:
    sender: Sender
    content: str = ""
    kind: MessageKind = MessageKind.TEXT
    resource_url: str | None = None
    attachments: list[AttachmentMeta] = field(default_factory=list)
    in_flight: bool = False

    def freeze(self) -> None:
        self.in_flight = False

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> "Message":
        files = payload.get("attachments")
        if files is None:
            files = payload.get("files") or []
        attachments: list[AttachmentMeta] = []
        if isinstance(files, Sequence) and not isinstance(files, str):
            attachments = [AttachmentMeta.from_dict(item) for item in files if isinstance(item, Mapping)]
        content = payload.get("content")
        url = payload.get("resourceUrl") or payload.get("url")
        return cls(
            sender=Sender.coerce(payload.get("sender")),
            content=content if isinstance(content, str) else "",
            kind=MessageKind.coerce(payload.get("kind") or payload.get("type")),
            resource_url=url if isinstance(url, str) else None,
            attachments=attachments,
        )

    def asdict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "sender": self.sender.value,
            "kind": self.kind.value,
            "content": self.content,
            "attachments": [meta.asdict() for meta in self.attachments],
        }
        if self.resource_url:
            data["resourceUrl"] = self.resource_url
        return data


@dataclass
class Session:
    """One conversation thread with its own history and configuration."""

    id: str
    name: str
    system_prompt: str
    model_id: str
    voice_id: str
    messages: list[Message] = field(default_factory=list)
    pending_attachments: list[Attachment] = field(default_factory=list)
    created_at: float = field(default_factory=time.time)

    @property
    def in_flight(self) -> Message | None:
        for message in reversed(self.messages):
            if message.in_flight:
                return message
        return None

    def find_attachment(self, attachment_id: str) -> Attachment:
        for attachment in self.pending_attachments:
            if attachment.id == attachment_id:
                return attachment
        raise NotFoundError(f"attachment {attachment_id!r} not found in session {self.id!r}")

    @classmethod
    def from_dict(
        cls,
        session_id: str,
        payload: Mapping[str, Any],
        *,
        default_system_prompt: str,
        default_model: str = "",
        default_voice: str = "",
    ) -> "Session":
        raw_messages = payload.get("messages")
        messages: list[Message] = []
        if isinstance(raw_messages, Sequence) and not isinstance(raw_messages, str):
            messages = [Message.from_dict(item) for item in raw_messages if isinstance(item, Mapping)]

        raw_files = payload.get("pendingAttachments")
        if raw_files is None:
            raw_files = payload.get("uploadedFiles")
        pending: list[Attachment] = []
        if isinstance(raw_files, Sequence) and not isinstance(raw_files, str):
            pending = [Attachment(AttachmentMeta.from_dict(item)) for item in raw_files if isinstance(item, Mapping)]

        system_prompt = payload.get("systemPrompt")
        if not isinstance(system_prompt, str):
            system_prompt = default_system_prompt
        created_at = payload.get("createdAt")
        return cls(
            id=str(payload.get("id") or session_id),
            name=str(payload.get("name") or "default"),
            system_prompt=system_prompt,
            model_id=str(payload.get("model") or payload.get("modelId") or default_model),
            voice_id=str(payload.get("voice") or payload.get("voiceId") or default_voice),
            messages=messages,
            pending_attachments=pending,
            created_at=float(created_at) if isinstance(created_at, (int, float)) else 0.0,
        )

    def asdict(self) -> dict[str, Any]:
        """Return the serialisable projection; binary payloads are never included."""

        return {
            "id": self.id,
            "name": self.name,
            "systemPrompt": self.system_prompt,
            "model": self.model_id,
            "voice": self.voice_id,
            "createdAt": self.created_at,
            "messages": [message.asdict() for message in self.messages],
            "uploadedFiles": [attachment.meta.asdict() for attachment in self.pending_attachments],
        }


@dataclass(frozen=True)
class ModelDescriptor:
    """Entry of the remote model catalog."""

    id: str
    display_label: str
    voices: tuple[str, ...] = ()

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> "ModelDescriptor":
        model_id = str(payload.get("name") or payload.get("id") or "")
        description = payload.get("description")
        label = description.strip() if isinstance(description, str) and description.strip() else model_id
        voices_field = payload.get("voices") or []
        voices: tuple[str, ...] = ()
        if isinstance(voices_field, Sequence) and not isinstance(voices_field, str):
            voices = tuple(str(item) for item in voices_field if item)
        return cls(id=model_id, display_label=label, voices=voices)


__all__ = [
    "Attachment",
    "AttachmentMeta",
    "Message",
    "MessageKind",
    "ModelDescriptor",
    "NotFoundError",
    "Sender",
    "Session",
    "new_id",
]
