"""Streamlit entry point for the multi-session chat client."""

from __future__ import annotations

import logging

import streamlit as st

from conversation import EmptyTurnError
from models import Attachment, MessageKind
from services.api_helpers import get_chat_service, get_settings
from services.chat_service import ChatService, SendInProgressError
from tabs.chat import render_message, render_tab, stream_reply

_RERUN_FN = getattr(st, "rerun", None) or getattr(st, "experimental_rerun", None)
_ATTACHED_UPLOADS_KEY = "__attached_uploads__"
_DARK_CSS = """
<style>
.stApp { background-color: #16181d; color: #e6e6e6; }
</style>
"""


def _trigger_rerun():
    if _RERUN_FN:
        try:
            _RERUN_FN()
        except RuntimeError:
            pass


def _render_sidebar(service: ChatService) -> None:
    registry = service.registry
    sidebar = st.sidebar
    if sidebar.button("New chat", key="new_chat"):
        registry.create_session()
        _trigger_rerun()

    sessions = registry.list_sessions()
    ids = [session.id for session in sessions]
    labels = {session.id: session.name for session in sessions}
    selected = sidebar.radio(
        "Chats",
        ids,
        index=ids.index(registry.active_id) if registry.active_id in ids else 0,
        format_func=lambda session_id: labels.get(session_id, session_id),
        key="chat_selector",
    )
    if selected and selected != registry.active_id:
        registry.switch_session(selected)
        _trigger_rerun()

    active = registry.active
    col_clear, col_delete = sidebar.columns(2)
    if col_clear.button("Clear", key="clear_chat"):
        registry.clear_history(active.id)
        _trigger_rerun()
    if col_delete.button("Delete", key="delete_chat"):
        registry.delete_session(active.id)
        _trigger_rerun()

    catalog = list(registry.catalog)
    model_ids = [model.id for model in catalog] or [active.model_id]
    model_labels = {model.id: model.display_label for model in catalog}
    model_id = sidebar.selectbox(
        "Model",
        model_ids,
        index=model_ids.index(active.model_id) if active.model_id in model_ids else 0,
        format_func=lambda value: model_labels.get(value, value),
        disabled=not catalog,
        key=f"model_{active.id}",
    )
    voices = next((model.voices for model in catalog if model.id == model_id), ())
    voice_id = active.voice_id
    if voices:
        voice_id = sidebar.selectbox(
            "Voice",
            list(voices),
            index=list(voices).index(active.voice_id) if active.voice_id in voices else 0,
            key=f"voice_{active.id}",
        )
    system_prompt = sidebar.text_area("System prompt", value=active.system_prompt, key=f"prompt_{active.id}")
    if (model_id, voice_id, system_prompt) != (active.model_id, active.voice_id, active.system_prompt):
        registry.update_config(active.id, model_id=model_id, voice_id=voice_id, system_prompt=system_prompt)

    theme = registry.store.load_theme()
    if sidebar.button("Dark mode" if theme == "light" else "Light mode", key="theme_toggle"):
        registry.toggle_theme()
        _trigger_rerun()
    if registry.last_persist_error is not None:
        sidebar.warning(f"Chats could not be saved: {registry.last_persist_error}")


def _attach_uploads(service: ChatService, session_id: str, uploads) -> None:
    attached: set[str] = st.session_state.setdefault(_ATTACHED_UPLOADS_KEY, set())
    for upload in uploads or []:
        marker = getattr(upload, "file_id", None) or f"{upload.name}:{upload.size}"
        if marker in attached:
            continue
        attached.add(marker)
        service.registry.attach(session_id, Attachment.from_upload(upload.name, upload.getvalue(), upload.type))


def _render_chat(service: ChatService) -> None:
    active = service.registry.active
    st.title(active.name)
    render_tab(active.messages, active.pending_attachments)

    uploads = st.file_uploader("Attach files", accept_multiple_files=True, key=f"uploads_{active.id}")
    _attach_uploads(service, active.id, uploads)

    busy = service.is_busy(active.id)
    col_image, col_audio = st.columns(2)
    media_prompt = st.session_state.get("media_prompt", "")
    st.text_input("Image / audio prompt", key="media_prompt")
    if col_image.button("Generate image", disabled=busy, key="generate_image"):
        _generate(service, active.id, media_prompt, MessageKind.IMAGE)
    if col_audio.button("Generate audio", disabled=busy, key="generate_audio"):
        _generate(service, active.id, media_prompt, MessageKind.AUDIO)

    prompt = st.chat_input("Message", disabled=busy)
    if prompt is None:
        return
    try:
        events = service.send_message(active.id, prompt)
    except EmptyTurnError:
        st.warning("Type a message or attach a file first.")
        return
    except SendInProgressError:
        st.warning("Still waiting for the previous reply.")
        return
    with st.chat_message("user"):
        st.markdown(prompt)
    stream_reply(events)


def _generate(service: ChatService, session_id: str, prompt: str, kind: MessageKind) -> None:
    try:
        message = service.generate_media(session_id, prompt, kind)
    except EmptyTurnError:
        st.warning("Describe what to generate first.")
        return
    except SendInProgressError:
        st.warning("Still waiting for the previous reply.")
        return
    render_message(message)


def main() -> None:
    """Invoke the chat application."""

    settings = get_settings(st.session_state)
    logging.basicConfig(level=settings.log_level)
    st.set_page_config(page_title="AI Chat", layout="wide")
    service = get_chat_service(st.session_state)
    if service.registry.store.load_theme() == "dark":
        st.markdown(_DARK_CSS, unsafe_allow_html=True)
    _render_sidebar(service)
    _render_chat(service)


if __name__ == "__main__":  # pragma: no cover
    main()
