"""Tests for StreamGenerate reply decoding across both known layouts."""

from __future__ import annotations

import json

import pytest

from envelope import Candidate, Location, SchemaVariant, decode, scan_reply_id
from errors import (
    ConfigurationError,
    DecodeError,
    MalformedEnvelopeError,
    MalformedInnerDocumentError,
    SchemaMismatchError,
)


def test_legacy_example_reply(envelope, legacy) -> None:
    reply = decode(envelope(legacy()), SchemaVariant.LEGACY)

    assert reply.content == "hello"
    assert reply.conversation_id == "cid"
    assert reply.turn_id == "rid"
    assert reply.query == "hi"
    assert reply.candidates == (Candidate(id="ch1", text="hello", fragments=("hello",)),)
    assert reply.selected_reply_id == "ch1"
    assert reply.has_continuity
    assert reply.location is None


def test_legacy_keeps_every_candidate(envelope, legacy) -> None:
    choices = [["rc_1", "first"], ["rc_2", ["second", "part two"]], ["rc_3", "third"]]
    reply = decode(envelope(legacy(choices=choices)), "legacy")

    assert [c.id for c in reply.candidates] == ["rc_1", "rc_2", "rc_3"]
    assert reply.candidates[0] == Candidate(id="rc_1", text="first")
    assert reply.candidates[1].fragments == ("second", "part two")
    assert reply.selected_reply_id == reply.candidates[0].id


def test_legacy_exposes_factuality_queries(envelope, legacy) -> None:
    doc = legacy()
    doc[3] = [["is the sky blue", 1]]
    reply = decode(envelope(doc), SchemaVariant.LEGACY)
    assert reply.factuality_queries == [["is the sky blue", 1]]


def test_current_skips_default_draft(envelope, current) -> None:
    reply = decode(envelope(current()), SchemaVariant.CURRENT)

    assert reply.content == "Default answer"
    assert reply.conversation_id == "c_8f1e"
    assert reply.turn_id == "r_77ab"
    assert reply.query == "what is up"
    assert len(reply.candidates) == 2
    assert reply.candidates[0] == Candidate(
        id="rc_two", text="Second answer", fragments=("Second answer", "with a tail")
    )
    assert reply.selected_reply_id == "rc_two"
    assert reply.factuality_queries is None


def test_current_reads_location(envelope, current) -> None:
    reply = decode(envelope(current(location=["Mountain View, CA", "city"])))
    assert reply.location == Location(address="Mountain View, CA", place_type="city")


def test_current_ignores_empty_location(envelope, current) -> None:
    reply = decode(envelope(current(location=[None, None])))
    assert reply.location is None


def test_fallback_scan_finds_single_draft_id(envelope, current) -> None:
    doc = current(choices=[["rc_abc123", ["Only answer"]]])
    reply = decode(envelope(doc), SchemaVariant.CURRENT)

    assert reply.candidates == ()
    assert reply.content == "Only answer"
    assert reply.selected_reply_id == "rc_abc123"
    assert reply.has_continuity


def test_fallback_scan_searches_whole_document(envelope, current) -> None:
    doc = current(choices=[["draft-0", ["Only answer"]]])
    doc[6] = [[None, [["meta", "rc_abc123"]]]]
    reply = decode(envelope(doc))
    assert reply.selected_reply_id == "rc_abc123"


def test_scan_reply_id_returns_first_match_in_document_order() -> None:
    assert scan_reply_id([["x", ["rc_first"]], "rc_second"]) == "rc_first"
    assert scan_reply_id([1, None, ["plain"]]) is None


def test_missing_ids_are_not_an_error(envelope, current) -> None:
    doc = current(ids=[None, ""], choices=[["draft-0", ["Only answer"]]])
    reply = decode(envelope(doc))

    assert reply.content == "Only answer"
    assert reply.conversation_id is None
    assert reply.turn_id is None
    assert reply.selected_reply_id is None
    assert not reply.has_continuity


def test_decode_is_deterministic(envelope, current) -> None:
    body = envelope(current(location=["Paris", "city"]))
    assert decode(body) == decode(body)
    assert decode(body) == decode(body.decode("utf-8"))


@pytest.mark.parametrize(
    "body",
    [
        b"",
        b")]}'\n\n1234",
        b")]}'\n\n1234\nnot json",
        b")]}'\n\n1234\n[]",
        b")]}'\n\n1234\n[1, 2]",
        b")]}'\n\n1234\n[[\"wrb.fr\", null]]",
    ],
)
def test_malformed_envelope(body: bytes) -> None:
    with pytest.raises(MalformedEnvelopeError) as exc_info:
        decode(body)
    assert exc_info.value.stage == "envelope"


@pytest.mark.parametrize("chat_data", [None, 42, "not json", '{"a": 1}', '"text"'])
def test_malformed_inner_document(chat_data) -> None:
    line = json.dumps([["wrb.fr", None, chat_data]])
    body = f")]}}'\n\n1234\n{line}\n".encode()
    with pytest.raises(MalformedInnerDocumentError) as exc_info:
        decode(body)
    assert exc_info.value.stage == "inner"


def test_current_without_drafts_is_schema_mismatch(envelope, current) -> None:
    with pytest.raises(SchemaMismatchError) as exc_info:
        decode(envelope(current(choices=[])))
    assert exc_info.value.field == "content"
    assert exc_info.value.stage == "schema"


def test_legacy_non_string_content_is_schema_mismatch(envelope, legacy) -> None:
    doc = legacy()
    doc[0] = [None]
    with pytest.raises(SchemaMismatchError) as exc_info:
        decode(envelope(doc), SchemaVariant.LEGACY)
    assert exc_info.value.field == "content"


def test_short_document_is_schema_mismatch(envelope) -> None:
    with pytest.raises(SchemaMismatchError) as exc_info:
        decode(envelope([["hello"]]), SchemaVariant.LEGACY)
    assert exc_info.value.field == "candidates"
    assert "no index 4" in str(exc_info.value)


def test_legacy_body_under_current_schema_fails_typed(envelope, legacy) -> None:
    with pytest.raises(DecodeError):
        decode(envelope(legacy()), SchemaVariant.CURRENT)


def test_schema_variant_parse() -> None:
    assert SchemaVariant.parse("Legacy") is SchemaVariant.LEGACY
    assert SchemaVariant.parse(SchemaVariant.CURRENT) is SchemaVariant.CURRENT
    assert SchemaVariant.CURRENT.build_label.endswith("_20240717.08_p5")
    with pytest.raises(ConfigurationError):
        SchemaVariant.parse("2025")


@pytest.mark.parametrize("schema", [SchemaVariant.CURRENT, SchemaVariant.LEGACY])
def test_null_id_block_still_returns_content(envelope, current, legacy, schema) -> None:
    doc = current() if schema is SchemaVariant.CURRENT else legacy()
    doc[1] = None
    reply = decode(envelope(doc), schema)

    assert reply.content in ("Default answer", "hello")
    assert reply.conversation_id is None
    assert reply.turn_id is None
    assert not reply.has_continuity


def test_non_string_ids_are_unresolved(envelope, current) -> None:
    reply = decode(envelope(current(ids=[123, ["r_x"]])))
    assert reply.conversation_id is None
    assert reply.turn_id is None
    assert reply.selected_reply_id == "rc_two"


def test_non_string_candidate_id_falls_back_to_scan(envelope, current) -> None:
    doc = current(choices=[["rc_default", ["Default answer"]], [None, ["Second answer"]]])
    reply = decode(envelope(doc))

    assert reply.candidates == (Candidate(id=None, text="Second answer", fragments=("Second answer",)),)
    assert reply.selected_reply_id == "rc_default"
    assert reply.has_continuity


def test_legacy_non_string_candidate_id_falls_back_to_scan(envelope, legacy) -> None:
    doc = legacy(choices=[[7, "hello"]])
    doc[2] = ["rc_echoed"]
    reply = decode(envelope(doc), SchemaVariant.LEGACY)

    assert reply.candidates[0].id is None
    assert reply.selected_reply_id == "rc_echoed"


def test_invalid_utf8_is_malformed_envelope(envelope, current) -> None:
    body = envelope(current()).replace(b"Default answer", b"Default \xff answer")
    with pytest.raises(MalformedEnvelopeError) as exc_info:
        decode(body)
    assert "UTF-8" in str(exc_info.value)
