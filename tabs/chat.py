"""Chat tab renderer."""

from __future__ import annotations

from typing import Iterable, Sequence

import streamlit as st

from models import Attachment, Message, MessageKind, Sender
from services.stream_reconciler import Done, Partial, StreamEvent

_EMPTY_REPLY = "_(empty reply)_"
_CURSOR = "▌"


def render_message(message: Message) -> None:
    role = "user" if message.sender is Sender.USER else "assistant"
    with st.chat_message(role):
        if message.kind is MessageKind.IMAGE and message.resource_url:
            st.image(message.resource_url, caption=message.content or None)
        elif message.kind is MessageKind.AUDIO and message.resource_url:
            if message.content:
                st.caption(message.content)
            st.audio(message.resource_url)
        else:
            st.markdown(message.content or _EMPTY_REPLY)
        for meta in message.attachments:
            st.caption(f"📎 {meta.name} ({meta.mime_type})")


def render_tab(messages: Sequence[Message], pending_attachments: Sequence[Attachment]) -> None:
    """Render the stored history and the attachments waiting for the next turn."""

    for attachment in pending_attachments:
        note = "" if attachment.payload is not None else " (contents lost on reload, re-select to send)"
        st.info(f"Attachment ready: {attachment.meta.name}{note}")
    for message in messages:
        if message.in_flight:
            continue
        render_message(message)


def stream_reply(events: Iterable[StreamEvent]) -> Done | None:
    """Render reply updates in place and return the completion event."""

    done: Done | None = None
    try:
        with st.chat_message("assistant"):
            placeholder = st.empty()
            for event in events:
                if isinstance(event, Partial):
                    placeholder.markdown(event.text + _CURSOR)
                else:
                    done = event
                    placeholder.markdown(event.text or _EMPTY_REPLY)
    finally:
        # A rerun or stop raised mid-render must still release the session.
        close = getattr(events, "close", None)
        if close is not None:
            close()
    return done


__all__ = ["render_message", "render_tab", "stream_reply"]
