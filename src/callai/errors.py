"""Exception types raised by callai.

Every error carries whatever partial content had been produced when it
was raised, so callers can decide whether a truncated answer is usable.
"""

from __future__ import annotations

from typing import Any


class CallAIError(Exception):
    """Base for all callai errors."""

    def __init__(
        self,
        message: str,
        *,
        status: int | None = None,
        details: Any = None,
        partial_content: str | None = None,
    ):
        super().__init__(message)
        self.message = message
        self.status = status
        self.details = details
        self.partial_content = partial_content


class ValidationError(CallAIError, ValueError):
    """Malformed prompt or options. Never retried."""


class AuthenticationError(CallAIError):
    """The provider rejected the API key.

    ``refresh_error`` is set when a refresh callback was tried and
    failed itself.
    """

    def __init__(self, message: str, *, refresh_error: BaseException | None = None, **kwargs):
        super().__init__(message, **kwargs)
        self.refresh_error = refresh_error


class APIError(CallAIError):
    """Non-authentication HTTP failure or an error envelope."""


class StreamError(APIError):
    """Error reported by the provider inside an event stream."""


class TransportError(CallAIError):
    """Network failure between us and the provider."""


class PartialStreamError(CallAIError):
    """The stream ended before it completed.

    ``partial_content`` holds everything assembled up to that point and
    ``original_error`` the failure that interrupted it, if any.
    """

    def __init__(self, message: str, *, original_error: BaseException | None = None, **kwargs):
        super().__init__(message, **kwargs)
        self.original_error = original_error


class PartialJSONError(CallAIError):
    """Buffered JSON could not be parsed or outgrew its limit."""
