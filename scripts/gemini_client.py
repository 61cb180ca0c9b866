#!/usr/bin/env python3
"""
Gemini web client: direct HTTP calls against the endpoints the Gemini
web app uses internally. No official API is involved.

Auth flow:
  1. GET https://gemini.google.com/ with the __Secure-1PSID cookie
     → scrape the SNlM0e anti-forgery token from the HTML
  2. POST .../StreamGenerate with f.req (double-JSON payload) + at (token)
     → line-oriented reply, decoded by envelope.decode()

A Session carries the three conversation ids Gemini expects echoed back on
the next turn. They are replaced together, and only after a reply decodes
with all three present. Turns on one Session must not overlap.
"""

import json
import random
import re
import sys
import time
import warnings
from dataclasses import dataclass, field
from urllib.parse import quote, urlsplit

import httpx

from config import (
    BLOCKED_MARKER,
    DEFAULT_SCHEMA,
    DEFAULT_TIMEOUT,
    GEMINI_URL,
    PSID_COOKIE,
    PSIDTS_COOKIE,
    REQID_RANGE,
    REQID_STEP,
    SNLM0E_PATTERN,
    STREAM_GENERATE_URL,
    USER_AGENT,
)
from envelope import SchemaVariant, TurnReply, decode
from errors import (
    BlockedError,
    ConfigurationError,
    ContinuityUnresolved,
    DecodeError,
    FatalAuthError,
    GeminiError,
    TransportError,
    UnrecognizedPageError,
)

PROXY_SCHEMES = ("http", "https", "socks5", "socks5h")


def _log(msg: str, verbose: bool) -> None:
    if verbose:
        print(f"[gemini-api] {msg}", file=sys.stderr)


# ── Cookie / header helpers ──────────────────────────────────────────

def build_cookie_header(psid: str, psidts: str | None = None) -> str:
    """Build Cookie header string from the session cookies."""
    cookies = [(PSID_COOKIE, psid), (PSIDTS_COOKIE, psidts)]
    return "; ".join(f"{name}={value}" for name, value in cookies if value)


def _base_headers(cookie_header: str) -> dict:
    """Headers sent on every request of a session."""
    return {
        "Cookie": cookie_header,
        "User-Agent": USER_AGENT,
    }


def _post_headers() -> dict:
    """StreamGenerate rejects posts without a matching Origin/Referer pair."""
    return {
        "Content-Type": "application/x-www-form-urlencoded;charset=UTF-8",
        "Origin": GEMINI_URL,
        "Referer": f"{GEMINI_URL}/",
    }


def _validate_proxy(proxy: str) -> str:
    parts = urlsplit(proxy)
    if parts.scheme not in PROXY_SCHEMES or not parts.hostname:
        raise ConfigurationError(
            f"Invalid proxy URL '{proxy}'. Expected scheme://host[:port] "
            f"with scheme one of {', '.join(PROXY_SCHEMES)}"
        )
    return proxy


def _initial_reqid() -> int:
    return random.randrange(*REQID_RANGE)


# ── Session ──────────────────────────────────────────────────────────

@dataclass
class Session:
    """
    One authenticated conversation with Gemini.

    psid, psidts and snlm0e are fixed for the lifetime of the session; a new
    token means a new Session. reqid only ever grows. The three conversation
    ids are either all empty (fresh or reset) or all set.
    """

    psid: str
    snlm0e: str
    client: httpx.AsyncClient = field(repr=False)
    psidts: str = ""
    schema: SchemaVariant = SchemaVariant.CURRENT
    reqid: int = field(default_factory=_initial_reqid)
    conversation_id: str = ""
    turn_id: str = ""
    selected_reply_id: str = ""

    @property
    def continuity(self) -> tuple[str, str, str]:
        return (self.conversation_id, self.turn_id, self.selected_reply_id)

    async def aclose(self) -> None:
        await self.client.aclose()

    async def __aenter__(self) -> "Session":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()


@dataclass(frozen=True)
class TurnRequest:
    """A message plus the conversation ids it continues, fixed at build time."""

    message: str
    conversation_id: str = ""
    turn_id: str = ""
    selected_reply_id: str = ""

    @classmethod
    def from_session(cls, session: Session, message: str) -> "TurnRequest":
        return cls(message, *session.continuity)

    def payload(self) -> str:
        return build_payload(
            self.message, self.conversation_id, self.turn_id, self.selected_reply_id
        )

    def form_body(self, snlm0e: str) -> str:
        return build_form_body(self.payload(), snlm0e)


def _compact_json(value) -> str:
    # Same byte layout as the web app's JSON.stringify
    return json.dumps(value, separators=(",", ":"), ensure_ascii=False)


def build_payload(
    message: str,
    conversation_id: str = "",
    turn_id: str = "",
    selected_reply_id: str = "",
) -> str:
    """
    Build the f.req value: [null, "<json of [[message],null,[ids]]>"].

    The inner array is serialized to a string first and then wrapped, so the
    result is JSON whose second element is itself JSON.
    """
    inner = _compact_json([[message], None, [conversation_id, turn_id, selected_reply_id]])
    return _compact_json([None, inner])


def build_form_body(payload: str, snlm0e: str) -> str:
    """Form body exactly as the web app sends it, trailing '&' included."""
    return f"f.req={quote(payload, safe='')}&at={quote(snlm0e, safe='')}&"


def build_stream_params(schema: SchemaVariant, reqid: int) -> dict:
    return {
        "bl": schema.build_label,
        "_reqid": str(reqid),
        "rt": "c",
    }


def build_stream_url(schema: SchemaVariant, reqid: int) -> str:
    """Full StreamGenerate URL with its query string."""
    return str(httpx.URL(STREAM_GENERATE_URL, params=build_stream_params(schema, reqid)))


# ── Bootstrap ────────────────────────────────────────────────────────

async def create_session(
    psid: str,
    psidts: str | None = None,
    proxy: str | None = None,
    schema: "SchemaVariant | str" = DEFAULT_SCHEMA,
    timeout: float = DEFAULT_TIMEOUT,
    transport: httpx.AsyncBaseTransport | None = None,
    verbose: bool = False,
) -> Session:
    """
    Open a Gemini session: fetch the landing page and scrape SNlM0e.

    No retries here. Hammering the landing page is what trips Google's
    bot detection in the first place.

    Raises:
        ConfigurationError: Empty cookie, invalid proxy or unknown schema.
        TransportError: Network failure or non-2xx status.
        BlockedError: Google served a CAPTCHA page.
        UnrecognizedPageError: No SNlM0e token in the page.
    """
    if not psid or not psid.strip():
        raise ConfigurationError(
            f"No {PSID_COOKIE} cookie provided. Pass --psid or set PSID in .env"
        )
    variant = SchemaVariant.parse(schema)

    client_kwargs = {
        "headers": _base_headers(build_cookie_header(psid.strip(), (psidts or "").strip())),
        "timeout": httpx.Timeout(timeout, connect=30.0),
        "follow_redirects": True,
    }
    if proxy:
        client_kwargs["proxy"] = _validate_proxy(proxy)
    if transport is not None:
        client_kwargs["transport"] = transport

    client = httpx.AsyncClient(**client_kwargs)
    try:
        _log(f"bootstrap: GET {GEMINI_URL}/ (proxy={'yes' if proxy else 'no'})", verbose)
        try:
            resp = await client.get(f"{GEMINI_URL}/")
            resp.raise_for_status()
        except httpx.HTTPStatusError as e:
            raise TransportError(
                f"Landing page returned {e.response.status_code}",
                status_code=e.response.status_code,
            ) from e
        except httpx.HTTPError as e:
            raise TransportError(f"Landing page request failed: {e}") from e

        body = resp.text
        if BLOCKED_MARKER in body:
            raise BlockedError(
                "Google detected it as a malicious action. The block will expire "
                "shortly after those requests stop. Try again later."
            )

        match = re.search(SNLM0E_PATTERN, body)
        if not match:
            _log(f"bootstrap: no SNlM0e in {len(body)} chars of HTML", verbose)
            raise UnrecognizedPageError("SNlM0e not found. Check your cookies.")
    except BaseException:
        await client.aclose()
        raise

    session = Session(
        psid=psid.strip(),
        psidts=(psidts or "").strip(),
        snlm0e=match.group(1),
        client=client,
        schema=variant,
    )
    _log(f"bootstrap: got SNlM0e ({len(session.snlm0e)} chars), reqid={session.reqid}", verbose)
    return session


# ── Turns ────────────────────────────────────────────────────────────

async def submit(session: Session, message: str, verbose: bool = False) -> TurnReply:
    """
    Send one message and decode the reply.

    On a fully decoded reply the session's ids are replaced and reqid
    advances by REQID_STEP. If the reply lacks any id, the session is left
    as it was and a ContinuityUnresolved warning is issued.

    Raises:
        TransportError: Network failure or non-2xx status. Not retried.
        DecodeError: Reply could not be decoded. Session unchanged.
    """
    request = TurnRequest.from_session(session, message)
    params = build_stream_params(session.schema, session.reqid)

    _log(
        f"turn: POST reqid={session.reqid} bl={params['bl']} "
        f"prompt={len(message)} chars continuing={bool(request.conversation_id)}",
        verbose,
    )

    try:
        resp = await session.client.post(
            STREAM_GENERATE_URL,
            params=params,
            headers=_post_headers(),
            content=request.form_body(session.snlm0e).encode("utf-8"),
        )
        resp.raise_for_status()
    except httpx.HTTPStatusError as e:
        raise TransportError(
            f"StreamGenerate returned {e.response.status_code}",
            status_code=e.response.status_code,
        ) from e
    except httpx.HTTPError as e:
        raise TransportError(f"StreamGenerate request failed: {e}") from e

    reply = decode(resp.content, session.schema, verbose=verbose)

    if reply.has_continuity:
        session.conversation_id = reply.conversation_id
        session.turn_id = reply.turn_id
        session.selected_reply_id = reply.selected_reply_id
        session.reqid += REQID_STEP
        _log(f"turn: conversation={reply.conversation_id} next reqid={session.reqid}", verbose)
    else:
        _log(
            f"turn: continuity unresolved (conversation={reply.conversation_id!r} "
            f"turn={reply.turn_id!r} choice={reply.selected_reply_id!r}), "
            f"keeping reqid={session.reqid}",
            verbose,
        )
        warnings.warn(
            ContinuityUnresolved(
                "couldn't get conversation_id, response_id or choice_id; "
                "the next message starts a new thread"
            ),
            stacklevel=2,
        )
    return reply


def reset(session: Session) -> None:
    """Forget the current conversation. reqid is left alone."""
    session.conversation_id = ""
    session.turn_id = ""
    session.selected_reply_id = ""


# ── High-level orchestrator ──────────────────────────────────────────

async def gemini_prompt(
    prompt: str,
    psid: str,
    psidts: str | None = None,
    proxy: str | None = None,
    schema: "SchemaVariant | str" = DEFAULT_SCHEMA,
    timeout: float = DEFAULT_TIMEOUT,
    transport: httpx.AsyncBaseTransport | None = None,
    verbose: bool = False,
) -> dict:
    """
    Complete one-shot flow: bootstrap → one turn → close.

    Returns:
        dict with 'success' and either the reply fields or 'error' plus
        'error_type' (the exception class name).
    """
    start_time = time.time()
    try:
        session = await create_session(
            psid, psidts=psidts, proxy=proxy, schema=schema,
            timeout=timeout, transport=transport, verbose=verbose,
        )
        async with session:
            with warnings.catch_warnings(record=True) as caught:
                warnings.simplefilter("always", ContinuityUnresolved)
                reply = await submit(session, prompt, verbose=verbose)
    except FatalAuthError as e:
        return {"success": False, "error": f"Auth failed: {e}", "error_type": type(e).__name__}
    except DecodeError as e:
        return {
            "success": False,
            "error": f"Could not decode reply ({e.stage}): {e.detail}",
            "error_type": type(e).__name__,
        }
    except GeminiError as e:
        result = {"success": False, "error": str(e), "error_type": type(e).__name__}
        if isinstance(e, TransportError) and e.status_code:
            result["status_code"] = e.status_code
        return result

    result = {
        "success": True,
        "response": reply.content,
        "prompt": prompt,
        "schema": session.schema.value,
        "mode": "api",
        "total_time_seconds": int(time.time() - start_time),
        "continuity_resolved": reply.has_continuity,
    }
    result.update(reply.to_dict())
    if caught:
        result["warnings"] = [str(w.message) for w in caught]
    return result
