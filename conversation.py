"""Invariant enforcement for the messages of a single session."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Sequence

from models import Attachment, Message, MessageKind, Sender, Session


class EmptyTurnError(ValueError):
    """Raised for a user turn with no text and no attachments."""


class InFlightError(RuntimeError):
    """Raised when a second in-flight message would be opened on a session."""


@dataclass
class UserTurn:
    """Outbound content of one user turn.

    The attachments are owned by the turn once it exists; the session no
    longer references them.
    """

    text: str
    attachments: list[Attachment] = field(default_factory=list)
    message: Message | None = None

    @property
    def images(self) -> list[Attachment]:
        return [item for item in self.attachments if item.is_image and item.payload is not None]


def take_attachments(session: Session) -> list[Attachment]:
    """Move the pending attachments out of the session."""

    taken = session.pending_attachments
    session.pending_attachments = []
    return taken


def begin_user_turn(session: Session, text: str) -> UserTurn:
    """Validate and record a user turn, transferring pending attachments to it."""

    cleaned = (text or "").strip()
    if not cleaned and not session.pending_attachments:
        raise EmptyTurnError("user turn needs text or at least one attachment")
    if session.in_flight is not None:
        raise InFlightError(f"session {session.id!r} already has a reply in progress")
    attachments = take_attachments(session)
    message = Message(
        sender=Sender.USER,
        content=cleaned,
        attachments=[item.meta for item in attachments],
    )
    session.messages.append(message)
    return UserTurn(text=cleaned, attachments=attachments, message=message)


def open_in_flight(session: Session) -> Message:
    if session.in_flight is not None:
        raise InFlightError(f"session {session.id!r} already has a reply in progress")
    message = Message(sender=Sender.ASSISTANT, content="", in_flight=True)
    session.messages.append(message)
    return message


def context_history(
    session: Session,
    limit: int,
    *,
    exclude: Sequence[Message] = (),
) -> list[Message]:
    """Return the bounded tail of text turns usable as model context.

    Image and audio turns are dropped before the bound is applied, and so are
    messages still in flight and the ones listed in ``exclude``.
    """

    if limit <= 0:
        return []
    excluded = {id(message) for message in exclude}
    usable = [
        message
        for message in session.messages
        if message.kind is MessageKind.TEXT and not message.in_flight and id(message) not in excluded
    ]
    return usable[-limit:]


__all__ = [
    "EmptyTurnError",
    "InFlightError",
    "UserTurn",
    "begin_user_turn",
    "context_history",
    "open_in_flight",
    "take_attachments",
]
