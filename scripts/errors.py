"""Exception types for the Gemini client."""

from __future__ import annotations


class GeminiError(Exception):
    """Base exception for the Gemini client."""


class ConfigurationError(GeminiError):
    """Raised when credentials, proxy or schema settings are unusable."""


class FatalAuthError(GeminiError):
    """Raised when the session cannot be bootstrapped with this cookie.

    Callers must not retry automatically.
    """


class BlockedError(FatalAuthError):
    """Raised when Google serves a bot challenge instead of the app."""


class UnrecognizedPageError(FatalAuthError):
    """Raised when the anti-forgery token is missing from the landing page."""


class TransportError(GeminiError):
    """Raised on network, TLS, proxy or HTTP status failures."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class DecodeError(GeminiError):
    """Raised when a reply body cannot be decoded. ``stage`` names where."""

    stage = "decode"

    def __init__(self, message: str) -> None:
        super().__init__(f"{self.stage}: {message}")
        self.detail = message


class MalformedEnvelopeError(DecodeError):
    """Line 3 of the reply is missing or is not the expected outer JSON."""

    stage = "envelope"


class MalformedInnerDocumentError(DecodeError):
    """The embedded chat data string is not a JSON array."""

    stage = "inner"


class SchemaMismatchError(DecodeError):
    """A required position in the chat data is missing or has the wrong type."""

    stage = "schema"

    def __init__(self, field: str, message: str) -> None:
        self.field = field
        super().__init__(f"{field}: {message}")


class ContinuityUnresolved(UserWarning):
    """Reply decoded but conversation ids were not all found.

    The session keeps its previous ids, so the next turn starts a fresh
    branch from the service's point of view.
    """
