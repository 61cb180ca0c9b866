from __future__ import annotations

import asyncio
import json
from typing import Any, Callable

import httpx
import pytest

LANDING_HTML = (
    "<html><head><script>window.WIZ_global_data = "
    '{"FdrFJe":"-123","SNlM0e":"AFWLbD2x:1700000000000","qwAQke":"BardChatUi"};'
    "</script></head><body></body></html>"
)


def make_envelope(doc: Any) -> bytes:
    """Wrap a chat data document the way StreamGenerate does."""
    outer = [["wrb.fr", None, json.dumps(doc)]]
    lines = [")]}'", "", "1234", json.dumps(outer), "25", '[["e",4,null,null,1234]]', ""]
    return "\n".join(lines).encode("utf-8")


def legacy_doc(
    content: str = "hello",
    ids: list | None = None,
    choices: list | None = None,
) -> list:
    return [
        [content],
        ids if ids is not None else ["cid", "rid"],
        ["hi"],
        [],
        choices if choices is not None else [["ch1", ["hello"]]],
    ]


def current_doc(
    ids: list | None = None,
    choices: list | None = None,
    location: list | None = None,
) -> list:
    doc = [
        None,
        ids if ids is not None else ["c_8f1e", "r_77ab"],
        [["what is up"], 1],
        None,
        choices if choices is not None else [
            ["rc_default", ["Default answer"], [], None],
            ["rc_two", ["Second answer", "with a tail"]],
            ["rc_three", ["Third answer"]],
        ],
        None,
        None,
    ]
    if location is not None:
        doc.append(location)
    return doc


class FakeGemini:
    """Serves the landing page and queued StreamGenerate replies.

    A queued STALL reply never answers, so the caller has to cancel.
    """

    STALL = object()

    def __init__(self, landing: str = LANDING_HTML, landing_status: int = 200, replies=None):
        self.landing = landing
        self.landing_status = landing_status
        self.replies = list(replies or [])
        self.requests: list[httpx.Request] = []
        self.transport = httpx.MockTransport(self.handle)

    async def handle(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if request.method == "GET":
            return httpx.Response(self.landing_status, text=self.landing)
        reply = self.replies.pop(0)
        if reply is self.STALL:
            await asyncio.Event().wait()
        if isinstance(reply, Exception):
            raise reply
        if isinstance(reply, httpx.Response):
            return reply
        return httpx.Response(200, content=reply)

    @property
    def posts(self) -> list[httpx.Request]:
        return [r for r in self.requests if r.method == "POST"]


@pytest.fixture
def envelope() -> Callable[[Any], bytes]:
    return make_envelope


@pytest.fixture
def legacy() -> Callable[..., list]:
    return legacy_doc


@pytest.fixture
def current() -> Callable[..., list]:
    return current_doc


@pytest.fixture
def fake_gemini() -> Callable[..., FakeGemini]:
    return FakeGemini
