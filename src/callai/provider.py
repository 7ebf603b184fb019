"""HTTP transport to OpenAI-compatible chat-completions endpoints.

The SDK client does the HTTP work; bodies are built by
:mod:`callai.request` and passed through untouched.  SDK exceptions
are translated to :mod:`callai.errors` here and nowhere else.
"""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator
from contextlib import AsyncExitStack, contextmanager
from typing import Any

import httpx
import openai
from openai import AsyncOpenAI

from callai.errors import APIError, AuthenticationError, TransportError
from callai.keys import is_key_error
from callai.request import DEFAULT_ENDPOINT

logger = logging.getLogger(__name__)


def _error_message(e: openai.APIStatusError) -> str:
    body = e.body
    if isinstance(body, dict):
        message = body.get("message") or body.get("error")
        if isinstance(message, dict):
            message = message.get("message")
        if message:
            return str(message)
    elif isinstance(body, str) and body:
        return body
    return e.message


@contextmanager
def translate_errors():
    """Re-raise SDK and HTTP failures as callai errors."""
    try:
        yield
    except openai.APIStatusError as e:
        message = _error_message(e)
        status = e.status_code
        if is_key_error(status, message):
            raise AuthenticationError(message, status=status, details=e.body) from e
        raise APIError(message, status=status, details=e.body) from e
    except openai.APIConnectionError as e:
        raise TransportError(f"Connection to provider failed: {e}") from e
    except httpx.HTTPError as e:
        raise TransportError(f"HTTP transport failed: {e}") from e


class ByteStream:
    """Raw body bytes of an open streaming response.

    Iterate once; :meth:`aclose` releases the connection and is safe to
    call more than once.
    """

    def __init__(self, response, stack: AsyncExitStack):
        self._response = response
        self._stack = stack

    async def __aiter__(self) -> AsyncIterator[bytes]:
        with translate_errors():
            async for chunk in self._response.iter_bytes():
                yield chunk

    async def aclose(self) -> None:
        await self._stack.aclose()


class ChatProvider:
    """Chat-completions client, OpenRouter by default.

    Args:
        base_url: Default endpoint; a call may override it.
        api_key: Default key; each call passes its own.
        http_client: Optional ``httpx.AsyncClient`` handed to the SDK.
        timeout: Request timeout in seconds.
        max_retries: SDK-level retries. Kept at 0 so key refresh and
            model fallback are the only retries.
    """

    system = "openrouter"

    def __init__(
        self,
        base_url: str = DEFAULT_ENDPOINT,
        api_key: str | None = None,
        http_client: httpx.AsyncClient | None = None,
        timeout: float = 600.0,
        max_retries: int = 0,
    ):
        self.base_url = base_url.rstrip("/")
        self.client = AsyncOpenAI(
            base_url=self.base_url,
            api_key=api_key or "DUMMY",
            max_retries=max_retries,
            timeout=timeout,
            http_client=http_client,
        )

    def _client_for(self, api_key: str, base_url: str | None):
        overrides: dict[str, Any] = {"api_key": api_key}
        if base_url and base_url.rstrip("/") != self.base_url:
            overrides["base_url"] = base_url.rstrip("/")
        return self.client.with_options(**overrides)

    def _create(self, body: dict[str, Any], api_key: str, headers: dict[str, str], base_url: str | None):
        rest = {k: v for k, v in body.items() if k not in ("model", "messages", "stream")}
        return self._client_for(api_key, base_url).chat.completions.with_streaming_response.create(
            model=body["model"],
            messages=body["messages"],
            stream=body.get("stream", False),
            extra_body=rest,
            extra_headers=headers,
        )

    async def complete(
        self,
        body: dict[str, Any],
        *,
        api_key: str,
        headers: dict[str, str],
        base_url: str | None = None,
    ) -> Any:
        """Send a buffered request and return the decoded JSON envelope."""
        with translate_errors():
            async with self._create(body, api_key, headers, base_url) as response:
                return await response.json()

    async def open_stream(
        self,
        body: dict[str, Any],
        *,
        api_key: str,
        headers: dict[str, str],
        base_url: str | None = None,
    ) -> ByteStream:
        """Send a streaming request and return its open byte stream.

        HTTP status failures are raised here, before any byte is read.
        """
        stack = AsyncExitStack()
        try:
            with translate_errors():
                response = await stack.enter_async_context(
                    self._create(body, api_key, headers, base_url)
                )
        except BaseException:
            await stack.aclose()
            raise
        return ByteStream(response, stack)
