import json
from collections.abc import AsyncIterator

import httpx
import pytest

from callai.provider import ChatProvider

API_KEY = "sk-test-key"


# ---------------------------------------------------------------------------
# Envelope and SSE builders (mirror the OpenRouter wire shape)
# ---------------------------------------------------------------------------

def chat_envelope(
    content: str | None = None,
    *,
    tool_calls: list[dict] | None = None,
    model: str = "openai/gpt-4o",
    usage: dict | None = None,
) -> dict:
    """Buffered chat-completion response body."""
    message: dict = {"role": "assistant", "content": content}
    if tool_calls is not None:
        message["tool_calls"] = tool_calls
    envelope = {
        "id": "gen-1",
        "object": "chat.completion",
        "model": model,
        "choices": [{"index": 0, "message": message, "finish_reason": "stop"}],
    }
    if usage is not None:
        envelope["usage"] = usage
    return envelope


def tool_call(arguments: dict | str, name: str = "generate_structured_data", call_id: str = "call_1") -> dict:
    if not isinstance(arguments, str):
        arguments = json.dumps(arguments)
    return {
        "id": call_id,
        "type": "function",
        "function": {"name": name, "arguments": arguments},
    }


def sse(payload: dict | str) -> bytes:
    """One complete ``data:`` frame."""
    data = payload if isinstance(payload, str) else json.dumps(payload)
    return f"data: {data}\n\n".encode()


DONE = b"data: [DONE]\n\n"


def content_chunk(text: str | None = None, finish_reason: str | None = None) -> dict:
    delta = {} if text is None else {"content": text}
    return {
        "object": "chat.completion.chunk",
        "choices": [{"index": 0, "delta": delta, "finish_reason": finish_reason}],
    }


def tool_chunk(
    arguments_delta: str | None = None,
    *,
    index: int = 0,
    name: str | None = None,
    call_id: str | None = None,
    finish_reason: str | None = None,
) -> dict:
    function: dict = {}
    if name is not None:
        function["name"] = name
    if arguments_delta is not None:
        function["arguments"] = arguments_delta
    call: dict = {"index": index, "function": function}
    if call_id is not None:
        call["id"] = call_id
        call["type"] = "function"
    return {
        "object": "chat.completion.chunk",
        "choices": [{"index": 0, "delta": {"tool_calls": [call]}, "finish_reason": finish_reason}],
    }


def text_stream(*pieces: str) -> list[bytes]:
    """Frames for a plain text answer, finish reason and terminal marker included."""
    return [sse(content_chunk(p)) for p in pieces] + [sse(content_chunk(finish_reason="stop")), DONE]


async def _aiter(chunks: list[bytes]) -> AsyncIterator[bytes]:
    for chunk in chunks:
        yield chunk


# ---------------------------------------------------------------------------
# Mock HTTP server
# ---------------------------------------------------------------------------

class MockServer:
    """Returns pre-queued responses through ``httpx.MockTransport``.

    Every request is recorded with its decoded JSON body.  No network
    calls are made.
    """

    def __init__(self):
        self.responses: list = []
        self.requests: list[httpx.Request] = []

    def queue_json(self, body: dict, status: int = 200) -> None:
        self.responses.append(lambda: httpx.Response(status, json=body))

    def queue_error(self, status: int, message: str, code: int | None = None) -> None:
        error = {"message": message, "code": code if code is not None else status}
        self.responses.append(lambda: httpx.Response(status, json={"error": error}))

    def queue_stream(self, chunks: list[bytes], status: int = 200) -> None:
        self.responses.append(lambda: httpx.Response(
            status,
            content=_aiter(chunks),
            headers={"content-type": "text/event-stream"},
        ))

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if not self.responses:
            raise AssertionError(f"Unexpected request to {request.url}")
        return self.responses.pop(0)()

    @property
    def bodies(self) -> list[dict]:
        return [json.loads(r.content) for r in self.requests]

    @property
    def last_body(self) -> dict:
        return self.bodies[-1]


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch):
    for name in ("CALLAI_API_KEY", "OPENROUTER_API_KEY", "CALLAI_CHAT_URL", "CALLAI_DEBUG"):
        monkeypatch.delenv(name, raising=False)


@pytest.fixture
def server():
    return MockServer()


@pytest.fixture
def provider(server):
    client = httpx.AsyncClient(transport=httpx.MockTransport(server.handler))
    return ChatProvider(http_client=client)


@pytest.fixture
def book_schema():
    return {
        "name": "book_recommendation",
        "properties": {
            "title": {"type": "string"},
            "author": {"type": "string"},
            "year": {"type": "number"},
            "genre": {"type": "string"},
            "rating": {"type": "number", "description": "Rating from 1 to 5"},
        },
    }
