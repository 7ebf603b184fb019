"""Streaming primitives for provider responses.

Each decoded event payload becomes a :class:`StreamChunk`.  Tool-call
arguments arrive as JSON text cut at arbitrary offsets; the
:class:`PartialJSONAssembler` holds them back until the buffer contains
one structurally complete value, so a property name split as
``"popul" + "ation"`` is never parsed half-way.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Any

from callai.errors import PartialJSONError

DEFAULT_MAX_BUFFER = 1024 * 1024


class PartialJSONAssembler:
    """Accumulates JSON text and returns values only once they are complete.

    A bracket-depth scanner that understands strings and escapes runs
    over every incoming character.  A full ``json.loads`` is attempted
    only when the depth returns to zero, or when :meth:`finish` signals
    that no more text will arrive.
    """

    def __init__(self, max_buffer_size: int = DEFAULT_MAX_BUFFER) -> None:
        self.max_buffer_size = max_buffer_size
        self.parse_attempts = 0
        self._buffer = ""
        self._scanned = 0
        self._depth = 0
        self._start = 0
        self._in_string = False
        self._escaped = False

    @property
    def buffer(self) -> str:
        return self._buffer

    def accumulate(self, delta: str) -> Any | None:
        """Append *delta*; return the value if one is now complete."""
        self._buffer += delta
        if len(self._buffer) > self.max_buffer_size:
            raise PartialJSONError(
                f"Buffered JSON exceeded {self.max_buffer_size} characters",
                partial_content=self._buffer,
            )
        end = self._scan()
        if end is None:
            return None

        text = self._buffer[self._start:end]
        self.parse_attempts += 1
        try:
            value = json.loads(text)
        except json.JSONDecodeError:
            # balanced but not yet valid; keep going from here
            return None
        self._buffer = self._buffer[end:].lstrip()
        self._reset_scan()
        return value

    def finish(self) -> Any | None:
        """Parse whatever is left.  Returns ``None`` for an empty buffer."""
        text = self._buffer.strip()
        if not text:
            return None
        self.parse_attempts += 1
        try:
            value = json.loads(text)
        except json.JSONDecodeError as e:
            raise PartialJSONError(
                f"Incomplete JSON at end of stream: {e}", partial_content=self._buffer
            ) from e
        self._buffer = ""
        self._reset_scan()
        return value

    def _reset_scan(self) -> None:
        self._scanned = 0
        self._depth = 0
        self._start = 0
        self._in_string = False
        self._escaped = False

    def _scan(self) -> int | None:
        """Advance the scanner; return the end offset of a closed top-level value."""
        buf = self._buffer
        for i in range(self._scanned, len(buf)):
            ch = buf[i]
            if self._in_string:
                if self._escaped:
                    self._escaped = False
                elif ch == "\\":
                    self._escaped = True
                elif ch == '"':
                    self._in_string = False
            elif ch == '"':
                self._in_string = True
            elif ch in "{[":
                if self._depth == 0:
                    self._start = i
                self._depth += 1
            elif ch in "}]":
                if self._depth == 0:
                    # stray closer outside any value
                    continue
                self._depth -= 1
                if self._depth == 0:
                    self._scanned = i + 1
                    return i + 1
        self._scanned = len(buf)
        return None


@dataclass
class ToolCallFragment:
    """A fragment of a tool call from a streaming chunk."""

    index: int
    call_id: str | None = None
    name: str | None = None
    arguments_delta: str | None = None


@dataclass
class StreamChunk:
    """Normalised streaming chunk from any provider."""

    content_delta: str | None = None
    tool_call_fragments: list[ToolCallFragment] | None = None
    tool_input: Any = None
    finish_reason: str | None = None
    error: Any = None


@dataclass
class ToolCall:
    """A tool call whose arguments have been fully assembled."""

    id: str = ""
    name: str = ""
    arguments: Any = None


@dataclass
class _PendingCall:
    call: ToolCall
    assembler: PartialJSONAssembler
    complete: bool = False


class ToolCallAccumulator:
    """Assembles complete tool calls from streaming fragments."""

    def __init__(self, max_buffer_size: int = DEFAULT_MAX_BUFFER) -> None:
        self.max_buffer_size = max_buffer_size
        self._pending: dict[int, _PendingCall] = {}

    def feed(self, fragment: ToolCallFragment) -> ToolCall | None:
        """Add *fragment*; return its call once the arguments are complete."""
        if fragment.index not in self._pending:
            self._pending[fragment.index] = _PendingCall(
                ToolCall(), PartialJSONAssembler(self.max_buffer_size)
            )
        pending = self._pending[fragment.index]
        if fragment.call_id is not None:
            pending.call.id = fragment.call_id
        if fragment.name is not None:
            pending.call.name = fragment.name
        if not fragment.arguments_delta or pending.complete:
            return None
        value = pending.assembler.accumulate(fragment.arguments_delta)
        if value is None:
            return None
        pending.call.arguments = value
        pending.complete = True
        return pending.call

    def partial_text(self) -> str:
        """Raw argument text buffered for calls that never completed."""
        return "".join(
            p.assembler.buffer for _, p in sorted(self._pending.items()) if not p.complete
        )

    def finalize(self) -> list[ToolCall]:
        """Close every call and return them in index order.

        Raises :class:`PartialJSONError` if a call's arguments are not
        valid JSON once the stream is over.
        """
        for pending in self._pending.values():
            if not pending.complete:
                pending.call.arguments = pending.assembler.finish()
                pending.complete = True
        return [self._pending[i].call for i in sorted(self._pending)]


def _fragments(delta: dict) -> list[ToolCallFragment] | None:
    tool_calls = delta.get("tool_calls")
    if not tool_calls:
        return None
    fragments = []
    for position, tc in enumerate(tool_calls):
        function = tc.get("function") or {}
        fragments.append(ToolCallFragment(
            index=tc.get("index", position),
            call_id=tc.get("id"),
            name=function.get("name"),
            arguments_delta=function.get("arguments"),
        ))
    return fragments


def _tool_use_block(blocks: Any) -> dict | None:
    if isinstance(blocks, list):
        for block in blocks:
            if isinstance(block, dict) and block.get("type") == "tool_use":
                return block
    return None


def chunk_from_payload(payload: dict) -> StreamChunk:
    """Interpret one decoded event payload.

    Handles OpenAI-style ``choices[].delta`` chunks as well as the
    Anthropic event shapes OpenRouter sometimes passes through.
    """
    choices = payload.get("choices") or []
    choice = choices[0] if choices else {}
    if (
        payload.get("error")
        or payload.get("type") == "error"
        or choice.get("finish_reason") == "error"
    ):
        error = payload.get("error") or (choice.get("message") or {}).get("content") or payload
        return StreamChunk(error=error, finish_reason="error")

    kind = payload.get("type")
    if kind == "tool_use":
        return StreamChunk(tool_input=payload.get("input"))
    if kind == "content_block_start":
        block = payload.get("content_block") or {}
        if block.get("type") == "tool_use" and block.get("input"):
            return StreamChunk(tool_input=block["input"])
        return StreamChunk()
    if kind == "content_block_delta":
        delta = payload.get("delta") or {}
        if delta.get("type") == "input_json_delta":
            return StreamChunk(tool_call_fragments=[
                ToolCallFragment(index=payload.get("index", 0), arguments_delta=delta.get("partial_json"))
            ])
        return StreamChunk(content_delta=delta.get("text"))
    if kind == "message_stop":
        return StreamChunk(finish_reason="stop")

    block = _tool_use_block(payload.get("content"))
    if block is not None:
        return StreamChunk(tool_input=block.get("input"), finish_reason=payload.get("stop_reason"))

    finish_reason = choice.get("finish_reason")
    delta = choice.get("delta")
    if isinstance(delta, dict):
        block = _tool_use_block(delta.get("content"))
        if block is not None:
            return StreamChunk(tool_input=block.get("input"), finish_reason=finish_reason)
        content = delta.get("content")
        return StreamChunk(
            content_delta=content if isinstance(content, str) else None,
            tool_call_fragments=_fragments(delta),
            finish_reason=finish_reason,
        )
    message = choice.get("message")
    if isinstance(message, dict):
        content = message.get("content")
        block = _tool_use_block(content)
        if block is not None:
            return StreamChunk(tool_input=block.get("input"), finish_reason=finish_reason)
        if isinstance(content, list):
            content = "".join(
                b.get("text") or "" for b in content if isinstance(b, dict) and b.get("type") == "text"
            )
        return StreamChunk(
            content_delta=content or None,
            tool_call_fragments=_fragments(message),
            finish_reason=finish_reason,
        )
    return StreamChunk(finish_reason=finish_reason)
