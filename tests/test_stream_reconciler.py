"""Tests for :mod:`services.stream_reconciler`."""

from __future__ import annotations

import logging

import pytest
import requests

from api_client import TransportError
from conversation import InFlightError
from models import Session
from services.stream_reconciler import (
    Done,
    Framing,
    ParseError,
    Partial,
    ReconcilerState,
    StreamReconciler,
    classify_line,
    decode_payload,
    reconcile_chunks,
)


SCENARIO_CHUNKS = [
    'data: {"choices":[{"delta":{"content":"Hi"}}]}\n',
    'data: {"choices":[{"delta":{"content":" there"}}]}\n',
    "data: [DONE]\n",
]


def _session(session_id: str = "s1") -> Session:
    return Session(id=session_id, name="default", system_prompt="", model_id="openai", voice_id="alloy")


class PersistSpy:
    def __init__(self) -> None:
        self.calls = 0

    def __call__(self) -> bool:
        self.calls += 1
        return True


def test_scenario_yields_two_partials_and_one_completion() -> None:
    session = _session()
    persist = PersistSpy()

    events = list(reconcile_chunks(session, SCENARIO_CHUNKS, persist=persist))

    assert events == [Partial("Hi"), Partial("Hi there"), Done("Hi there")]
    assert persist.calls == 1
    assert session.messages[-1].content == "Hi there"
    assert session.messages[-1].in_flight is False
    assert session.in_flight is None


def test_records_split_across_chunk_boundaries() -> None:
    chunks = [
        'data: {"choices":[{"delta":{"con',
        'tent":"Hel"}}]}\n\ndata: {"choices":[{"delta":{"content":"lo"}}]}\n',
        "data: [DONE]\n",
    ]

    events = list(reconcile_chunks(_session(), chunks, persist=PersistSpy()))

    assert [event.text for event in events if isinstance(event, Partial)] == ["Hel", "Hello"]
    assert events[-1] == Done("Hello")


def test_multibyte_character_split_between_byte_chunks() -> None:
    raw = 'data: {"choices":[{"delta":{"content":"héllo"}}]}\n'.encode("utf-8")
    cut = raw.index("é".encode("utf-8")) + 1

    events = list(reconcile_chunks(_session(), [raw[:cut], raw[cut:]], persist=PersistSpy()))

    assert events[-1] == Done("héllo")


def test_unparseable_lines_are_logged_and_skipped(caplog) -> None:
    chunks = [
        "data: {not json}\n",
        'data: {"choices":[{"delta":{"content":"ok"}}]}\n',
    ]

    with caplog.at_level(logging.WARNING):
        events = list(reconcile_chunks(_session(), chunks, persist=PersistSpy()))

    assert events == [Partial("ok"), Done("ok")]
    assert "not json" not in events[-1].text
    assert any("Skipping stream record" in record.message for record in caplog.records)


def test_event_fields_and_comments_are_ignored() -> None:
    chunks = [
        ": keep-alive\n",
        "event: message\n",
        'data: {"choices":[{"delta":{"role":"assistant"}}]}\n',
        'data: {"choices":[{"delta":{"content":"x"}}]}\n',
    ]

    events = list(reconcile_chunks(_session(), chunks, persist=PersistSpy()))

    assert events == [Partial("x"), Done("x")]


def test_final_line_without_newline_is_processed_on_close() -> None:
    chunks = ['data: {"choices":[{"delta":{"content":"tail"}}]}']

    events = list(reconcile_chunks(_session(), chunks, persist=PersistSpy()))

    assert events == [Partial("tail"), Done("tail")]


def test_records_after_sentinel_are_ignored() -> None:
    chunks = ['data: [DONE]\ndata: {"choices":[{"delta":{"content":"late"}}]}\n']

    events = list(reconcile_chunks(_session(), chunks, persist=PersistSpy()))

    assert events == [Done("")]


def test_empty_reply_is_persisted_as_frozen_message() -> None:
    session = _session()
    persist = PersistSpy()

    events = list(reconcile_chunks(session, [], persist=persist))

    assert events == [Done("")]
    assert len(session.messages) == 1
    assert session.messages[0].content == ""
    assert session.messages[0].in_flight is False
    assert persist.calls == 1


def test_transport_error_keeps_partial_text_and_marks_error() -> None:
    session = _session()
    persist = PersistSpy()

    def chunks():
        yield SCENARIO_CHUNKS[0]
        raise TransportError("boom", status_code=502)

    events = list(reconcile_chunks(session, chunks(), persist=persist))

    assert events[0] == Partial("Hi")
    done = events[-1]
    assert isinstance(done, Done)
    assert done.failed
    assert done.error == "boom"
    assert done.text.startswith("Hi")
    assert "boom" in done.text
    assert session.messages[-1].content == done.text
    assert session.in_flight is None
    assert persist.calls == 1


def test_broken_connection_becomes_failed_completion() -> None:
    def chunks():
        yield SCENARIO_CHUNKS[0]
        raise requests.exceptions.ChunkedEncodingError("connection reset")

    events = list(reconcile_chunks(_session(), chunks(), persist=PersistSpy()))

    assert events[-1].failed
    assert "network error" in events[-1].text


def test_closing_early_freezes_and_persists_partial_text() -> None:
    session = _session()
    persist = PersistSpy()
    reconciler = StreamReconciler(session, persist=persist)
    closed: list[bool] = []

    def chunks():
        try:
            yield from SCENARIO_CHUNKS
        finally:
            closed.append(True)

    stream = reconciler.reconcile(chunks())
    assert next(stream) == Partial("Hi")
    stream.close()

    assert reconciler.state is ReconcilerState.CANCELLED
    assert session.messages[-1].content == "Hi"
    assert session.in_flight is None
    assert persist.calls == 1
    assert closed == [True]


def test_replay_produces_identical_text() -> None:
    first = list(reconcile_chunks(_session("a"), SCENARIO_CHUNKS, persist=PersistSpy()))
    second = list(reconcile_chunks(_session("b"), SCENARIO_CHUNKS, persist=PersistSpy()))

    assert first[-1].text == second[-1].text == "Hi there"


def test_partial_updates_never_shrink() -> None:
    chunks = [
        'data: {"choices":[{"delta":{"content":"a"}}]}\n',
        'data: {"choices":[{"delta":{"content":""}}]}\n',
        'data: {"choices":[{"delta":{"content":"bc"}}]}\n',
        'data: {"choices":[{"delta":{"content":"d"}}]}\n',
    ]

    partials = [
        event.text
        for event in reconcile_chunks(_session(), chunks, persist=PersistSpy())
        if isinstance(event, Partial)
    ]

    assert partials == ["a", "abc", "abcd"]
    assert all(len(left) <= len(right) for left, right in zip(partials, partials[1:]))


def test_plain_text_framing_appends_chunks_verbatim() -> None:
    events = list(
        reconcile_chunks(_session(), [b"Hel", b"lo\n", b"world"], persist=PersistSpy(), framing=Framing.PLAIN_TEXT)
    )

    assert events == [Partial("Hel"), Partial("Hello\n"), Partial("Hello\nworld"), Done("Hello\nworld")]


def test_document_framing_decodes_whole_body() -> None:
    body = b'{\n  "choices": [\n    {"message": {"content": "Whole reply"}}\n  ]\n}'

    events = list(reconcile_chunks(_session(), [body], persist=PersistSpy(), framing=Framing.DOCUMENT))

    assert events == [Partial("Whole reply"), Done("Whole reply")]


def test_second_in_flight_message_is_rejected() -> None:
    session = _session()
    StreamReconciler(session, persist=PersistSpy()).start()

    with pytest.raises(InFlightError):
        StreamReconciler(session, persist=PersistSpy()).start()


def test_decode_payload_variants() -> None:
    assert decode_payload('{"choices":[{"delta":{"content":"d"}}]}') == "d"
    assert decode_payload('{"choices":[{"delta":{"role":"assistant"}}]}') == ""
    assert decode_payload('{"choices":[{"message":{"content":"m"}}]}') == "m"
    assert decode_payload('{"output":"legacy"}') == "legacy"
    assert decode_payload('{"choices":[],"usage":{"total_tokens":3}}') == ""
    with pytest.raises(ParseError):
        decode_payload('{"unexpected": 1}')
    with pytest.raises(ParseError):
        decode_payload("[1, 2]")


def test_classify_line_unwraps_records() -> None:
    assert classify_line("data: [DONE]").kind == "done"
    assert classify_line("data:{\"text\":\"x\"}").payload == '{"text":"x"}'
    assert classify_line("retry: 100").kind == "skip"
    assert classify_line('{"text":"bare"}').payload == '{"text":"bare"}'
