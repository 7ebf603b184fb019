"""Uniform content extraction from provider response envelopes.

Providers answer in several shapes: OpenAI-style chat completions,
Anthropic ``tool_use`` blocks, arrays of function calls.  Each shape is
one :data:`Envelope` variant.  :func:`classify` tries the variants in a
fixed order, tool-call shapes first because some providers send both a
tool call and plain content.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from typing import Any, Union

from callai.errors import APIError, CallAIError
from callai.schema import extract_json_block

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ToolUseBlock:
    """``{"type": "tool_use", "input": ...}``"""

    input: Any


@dataclass(frozen=True)
class ToolUseWrapper:
    """``{"tool_use": {"input": ...}}``"""

    input: Any


@dataclass(frozen=True)
class FunctionCallArray:
    """``[{"type": "function", "function": {"arguments": "..."}}, ...]``"""

    calls: list


@dataclass(frozen=True)
class PlainContent:
    value: Any


Envelope = Union[ToolUseBlock, ToolUseWrapper, FunctionCallArray, PlainContent]


def _is_function_call_array(value: Any) -> bool:
    return (
        isinstance(value, list)
        and len(value) > 0
        and isinstance(value[0], dict)
        and isinstance(value[0].get("function"), dict)
    )


def classify(content: Any) -> Envelope:
    if isinstance(content, dict) and content.get("type") == "tool_use":
        return ToolUseBlock(content.get("input"))
    if isinstance(content, dict) and isinstance(content.get("tool_use"), dict):
        return ToolUseWrapper(content["tool_use"].get("input"))
    if _is_function_call_array(content):
        return FunctionCallArray(content)
    return PlainContent(content)


def _as_text(value: Any) -> str:
    if value is None:
        return "{}"
    return value if isinstance(value, str) else json.dumps(value)


def normalize(content: Any, *, verbatim: bool = False) -> str:
    """Turn extracted *content* into the string handed to the caller.

    Objects are serialised to JSON.  Strings lose a surrounding code
    fence unless *verbatim* is set.
    """
    envelope = classify(content)
    if isinstance(envelope, (ToolUseBlock, ToolUseWrapper)):
        return _as_text(envelope.input)
    if isinstance(envelope, FunctionCallArray):
        arguments = envelope.calls[0]["function"].get("arguments")
        if arguments is not None:
            return _as_text(arguments)
        return json.dumps(envelope.calls)

    value = envelope.value
    if not isinstance(value, str):
        return json.dumps(value)
    if verbatim:
        return value
    return extract_json_block(value)


def _tool_use_in_blocks(blocks: Any) -> dict | None:
    if not isinstance(blocks, list):
        return None
    for block in blocks:
        if isinstance(block, dict) and block.get("type") == "tool_use":
            return block
    return None


def _text_in_blocks(blocks: list) -> str:
    return "".join(
        block.get("text") or ""
        for block in blocks
        if isinstance(block, dict) and block.get("type") == "text"
    )


def raise_for_error_envelope(envelope: Any) -> None:
    """Raise :class:`APIError` if *envelope* reports an error in-band."""
    if not isinstance(envelope, dict) or not envelope.get("error"):
        return
    error = envelope["error"]
    if isinstance(error, dict):
        message = error.get("message") or "API returned an error"
        status = error.get("code") if isinstance(error.get("code"), int) else None
    else:
        message, status = str(error), None
    raise APIError(message, status=status or 400, details=error)


def extract_content(envelope: Any) -> Any:
    """Pull the content value out of a buffered chat-completion envelope.

    Tool calls win over plain content.  The returned value still needs
    :func:`normalize` to become a string.
    """
    raise_for_error_envelope(envelope)

    if isinstance(envelope, dict) and envelope.get("type") == "tool_use":
        return envelope
    block = _tool_use_in_blocks(envelope.get("content") if isinstance(envelope, dict) else None)
    if block is not None:
        return block

    choices = envelope.get("choices") if isinstance(envelope, dict) else None
    if choices:
        choice = choices[0]
        message = choice.get("message") or {}
        if message.get("tool_calls"):
            return message["tool_calls"]
        function_call = message.get("function_call")
        if isinstance(function_call, dict) and "arguments" in function_call:
            return [{"type": "function", "function": function_call}]
        if function_call:
            return function_call
        content = message.get("content")
        block = _tool_use_in_blocks(content)
        if block is not None:
            return block
        if isinstance(content, list):
            return _text_in_blocks(content)
        if content:
            return content
        if choice.get("text"):
            return choice["text"]
        if content is not None:
            return content

    if isinstance(envelope, dict) and isinstance(envelope.get("content"), list):
        return _text_in_blocks(envelope["content"])
    if isinstance(envelope, str):
        return envelope
    logger.debug(f"Unrecognised envelope: {envelope!r}")
    raise CallAIError(
        f"Failed to extract content from API response: {json.dumps(envelope, default=str)[:200]}",
        details=envelope,
    )
