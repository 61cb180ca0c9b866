#!/usr/bin/env python3
"""
Gemini reply envelope decoder.

StreamGenerate answers with a line-oriented body. Line 3 is a JSON
array-of-arrays whose item [0][2] is a *string* holding the real chat data,
so the useful part is JSON inside JSON:

    )]}'
    <length>
    <length>
    [["wrb.fr",null,"[[\\"rc_...\\"], ...]"]]

The chat data layout is positional and has changed between backend builds.
Each known layout is a SchemaVariant with its own extractor; decode() picks
the extractor from the registry and never branches on layout elsewhere.
"""

import json
import sys
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Iterator, Optional

from config import BUILD_LABELS
from errors import (
    ConfigurationError,
    MalformedEnvelopeError,
    MalformedInnerDocumentError,
    SchemaMismatchError,
)

ENVELOPE_LINE = 3
CHAT_DATA_INDEX = 2
REPLY_ID_PREFIX = "rc_"


def _log(msg: str, verbose: bool) -> None:
    if verbose:
        print(f"[gemini-envelope] {msg}", file=sys.stderr)


class SchemaVariant(str, Enum):
    """Known chat data layouts, each tied to one backend build label."""

    LEGACY = "legacy"
    CURRENT = "current"

    @property
    def build_label(self) -> str:
        return BUILD_LABELS[self.value]

    @classmethod
    def parse(cls, name: "str | SchemaVariant") -> "SchemaVariant":
        if isinstance(name, cls):
            return name
        try:
            return cls(str(name).strip().lower())
        except ValueError:
            choices = ", ".join(v.value for v in cls)
            raise ConfigurationError(
                f"Unknown schema '{name}'. Expected one of: {choices}"
            ) from None


# ── Result types ─────────────────────────────────────────────────────

@dataclass(frozen=True)
class Candidate:
    """One alternative reply ("draft") for a single turn."""

    id: Optional[str]
    text: str
    fragments: tuple[str, ...] = ()


@dataclass(frozen=True)
class Location:
    address: Optional[str] = None
    place_type: Optional[str] = None


@dataclass(frozen=True)
class TurnReply:
    content: str
    conversation_id: Optional[str] = None
    turn_id: Optional[str] = None
    selected_reply_id: Optional[str] = None
    query: Optional[str] = None
    candidates: tuple[Candidate, ...] = ()
    location: Optional[Location] = None
    factuality_queries: Any = None

    @property
    def has_continuity(self) -> bool:
        """True when all three ids needed for the next turn were found."""
        return bool(self.conversation_id and self.turn_id and self.selected_reply_id)

    def to_dict(self) -> dict:
        return {
            "content": self.content,
            "conversation_id": self.conversation_id,
            "turn_id": self.turn_id,
            "selected_reply_id": self.selected_reply_id,
            "query": self.query,
            "candidates": [
                {"id": c.id, "text": c.text, "fragments": list(c.fragments)}
                for c in self.candidates
            ],
            "location": (
                {"address": self.location.address, "place_type": self.location.place_type}
                if self.location else None
            ),
            "factuality_queries": self.factuality_queries,
        }


# ── Positional access helpers ────────────────────────────────────────

def _at(doc: list, path: tuple[int, ...], field_name: str) -> Any:
    """Follow list indices, raising SchemaMismatchError on the first miss."""
    node: Any = doc
    walked = "doc"
    for index in path:
        if not isinstance(node, list):
            raise SchemaMismatchError(
                field_name, f"{walked} is {type(node).__name__}, expected list"
            )
        if index >= len(node):
            raise SchemaMismatchError(
                field_name, f"{walked} has {len(node)} items, no index {index}"
            )
        node = node[index]
        walked += f"[{index}]"
    return node


def _text(doc: list, path: tuple[int, ...], field_name: str) -> str:
    value = _at(doc, path, field_name)
    if not isinstance(value, str):
        raise SchemaMismatchError(field_name, f"expected string, got {type(value).__name__}")
    return value


def _optional_text(doc: list, path: tuple[int, ...], field_name: str) -> Optional[str]:
    """Like _text, but null and "" come back as None."""
    value = _at(doc, path, field_name)
    if value is None or value == "":
        return None
    if not isinstance(value, str):
        raise SchemaMismatchError(field_name, f"expected string or null, got {type(value).__name__}")
    return value


def _optional_id(doc: list, path: tuple[int, ...]) -> Optional[str]:
    """Id slot lookup that never fails; anything but a non-empty string is None."""
    node: Any = doc
    for index in path:
        if not isinstance(node, list) or index >= len(node):
            return None
        node = node[index]
    return node if isinstance(node, str) and node else None


def _string_list(value: Any, field_name: str) -> tuple[str, ...]:
    if not isinstance(value, list) or not all(isinstance(v, str) for v in value):
        raise SchemaMismatchError(field_name, "expected list of strings")
    return tuple(value)


# ── Extractors ───────────────────────────────────────────────────────

Extractor = Callable[[list], dict]

_EXTRACTORS: dict[SchemaVariant, Extractor] = {}


def _extractor(variant: SchemaVariant) -> Callable[[Extractor], Extractor]:
    def register(func: Extractor) -> Extractor:
        _EXTRACTORS[variant] = func
        return func
    return register


@_extractor(SchemaVariant.LEGACY)
def _extract_legacy(doc: list) -> dict:
    """2023 layout: text at doc[0][0], every doc[4] entry is a candidate."""
    choices = _at(doc, (4,), "candidates")
    if not isinstance(choices, list):
        raise SchemaMismatchError("candidates", "doc[4] is not a list")

    candidates = []
    for i in range(len(choices)):
        name = f"candidates[{i}]"
        body = _at(doc, (4, i, 1), name)
        choice_id = _optional_id(doc, (4, i, 0))
        if isinstance(body, str):
            candidates.append(Candidate(id=choice_id, text=body))
        else:
            fragments = _string_list(body, name)
            if not fragments:
                raise SchemaMismatchError(name, "candidate has no text")
            candidates.append(Candidate(id=choice_id, text=fragments[0], fragments=fragments))

    return {
        "content": _text(doc, (0, 0), "content"),
        "conversation_id": _optional_id(doc, (1, 0)),
        "turn_id": _optional_id(doc, (1, 1)),
        "query": _optional_text(doc, (2, 0), "query"),
        "candidates": tuple(candidates),
        "factuality_queries": doc[3] if len(doc) > 3 else None,
    }


@_extractor(SchemaVariant.CURRENT)
def _extract_current(doc: list) -> dict:
    """2024 layout: text lives in the default draft at doc[4][0]."""
    choices = _at(doc, (4,), "candidates")
    if not isinstance(choices, list):
        raise SchemaMismatchError("candidates", "doc[4] is not a list")

    # Entry 0 is the default draft, already surfaced as content.
    candidates = []
    for i in range(1, len(choices)):
        name = f"candidates[{i}]"
        fragments = _string_list(_at(doc, (4, i, 1), name), name)
        if not fragments:
            raise SchemaMismatchError(name, "candidate has no text")
        candidates.append(Candidate(
            id=_optional_id(doc, (4, i, 0)),
            text=fragments[0],
            fragments=fragments,
        ))

    location = None
    if len(doc) > 7 and isinstance(doc[7], list):
        raw = doc[7]
        address = raw[0] if len(raw) > 0 and isinstance(raw[0], str) else None
        place_type = raw[1] if len(raw) > 1 and isinstance(raw[1], str) else None
        if address or place_type:
            location = Location(address=address, place_type=place_type)

    return {
        "content": _text(doc, (4, 0, 1, 0), "content"),
        "conversation_id": _optional_id(doc, (1, 0)),
        "turn_id": _optional_id(doc, (1, 1)),
        "query": _optional_text(doc, (2, 0, 0), "query"),
        "candidates": tuple(candidates),
        "location": location,
    }


# ── Fallback ─────────────────────────────────────────────────────────

def _string_leaves(node: Any) -> Iterator[str]:
    if isinstance(node, str):
        yield node
    elif isinstance(node, list):
        for item in node:
            yield from _string_leaves(item)
    elif isinstance(node, dict):
        for item in node.values():
            yield from _string_leaves(item)


def scan_reply_id(doc: Any) -> Optional[str]:
    """
    Heuristic: first string leaf (depth-first, document order) that looks
    like a draft id.

    Google does not document this layout. Sometimes there is only one
    draft and the structured slots hold nothing usable, but the draft id
    still appears somewhere in the tree with an "rc_" prefix.
    """
    for leaf in _string_leaves(doc):
        if leaf.startswith(REPLY_ID_PREFIX):
            return leaf
    return None


# ── Entry point ──────────────────────────────────────────────────────

def parse_chat_data(raw_body: "bytes | str") -> list:
    """Unwrap the envelope and return the inner chat data array."""
    if isinstance(raw_body, bytes):
        try:
            text = raw_body.decode("utf-8")
        except UnicodeDecodeError as e:
            raise MalformedEnvelopeError(f"body is not valid UTF-8: {e}") from e
    else:
        text = raw_body

    lines = text.split("\n")
    if len(lines) <= ENVELOPE_LINE:
        raise MalformedEnvelopeError(
            f"expected at least {ENVELOPE_LINE + 1} lines, got {len(lines)}"
        )

    try:
        outer = json.loads(lines[ENVELOPE_LINE])
    except json.JSONDecodeError as e:
        raise MalformedEnvelopeError(f"line {ENVELOPE_LINE} is not JSON: {e}") from e

    if not (
        isinstance(outer, list) and outer
        and isinstance(outer[0], list) and len(outer[0]) > CHAT_DATA_INDEX
    ):
        raise MalformedEnvelopeError(
            f"line {ENVELOPE_LINE} is not an array of arrays with chat data at [0][{CHAT_DATA_INDEX}]"
        )

    chat_data = outer[0][CHAT_DATA_INDEX]
    if not isinstance(chat_data, str):
        raise MalformedInnerDocumentError(
            f"chat data is {type(chat_data).__name__}, expected JSON string"
        )

    try:
        doc = json.loads(chat_data)
    except json.JSONDecodeError as e:
        raise MalformedInnerDocumentError(f"chat data is not JSON: {e}") from e

    if not isinstance(doc, list):
        raise MalformedInnerDocumentError(f"chat data is {type(doc).__name__}, expected array")
    return doc


def decode(
    raw_body: "bytes | str",
    schema: "SchemaVariant | str" = SchemaVariant.CURRENT,
    verbose: bool = False,
) -> TurnReply:
    """
    Decode a StreamGenerate reply body into a TurnReply.

    Raises:
        MalformedEnvelopeError: Body too short or line 3 has the wrong shape.
        MalformedInnerDocumentError: Embedded chat data is not a JSON array.
        SchemaMismatchError: A required position is missing for this schema.

    Missing conversation ids are not an error; they come back as None and
    TurnReply.has_continuity is False.
    """
    variant = SchemaVariant.parse(schema)
    doc = parse_chat_data(raw_body)
    fields = _EXTRACTORS[variant](doc)

    candidates = fields["candidates"]
    selected = candidates[0].id if candidates else None
    if not selected:
        selected = scan_reply_id(doc)
        _log(f"no candidate id for {variant.value} schema, scan found {selected!r}", verbose)

    return TurnReply(selected_reply_id=selected, **fields)
