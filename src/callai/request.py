"""Call options and request body assembly."""

from __future__ import annotations

import logging
import os
from collections.abc import Awaitable, Callable, Mapping, Sequence
from typing import Any, Optional, Union

import pydantic
from pydantic import BaseModel, ConfigDict, Field

from callai.errors import ValidationError
from callai.message import Message, MessageRole
from callai.schema import Schema
from callai.strategy import SchemaStrategy

logger = logging.getLogger(__name__)

DEFAULT_ENDPOINT = "https://openrouter.ai/api/v1"
DEFAULT_REFERER = "https://vibes.diy"
DEFAULT_TITLE = "Vibes"

Prompt = Union[str, Sequence[Union[Message, Mapping[str, Any]]]]


class RequestOptions(BaseModel):
    """Options for one call.

    Keyword options that are not fields here are kept and copied into
    the request body as-is.  Instances are immutable; retries derive new
    ones with ``model_copy(update=...)``.
    """

    model_config = ConfigDict(
        frozen=True,
        extra="allow",
        populate_by_name=True,
        arbitrary_types_allowed=True,
    )

    model: Optional[str] = None
    response_schema: Any = Field(default=None, alias="schema")
    stream: bool = False
    api_key: Optional[str] = None
    refresh_token: Optional[str] = None
    update_refresh_token: Optional[Callable[[str], Awaitable[str]]] = None
    force_system_message: bool = False
    use_tool_mode: bool = False
    debug: bool = False
    provider: Optional[str] = None
    endpoint: Optional[str] = None
    temperature: Optional[float] = None
    top_p: Optional[float] = None
    max_tokens: Optional[int] = None
    stop: Union[str, list[str], None] = None
    response_format: Union[str, dict, None] = None
    referer: Optional[str] = None
    title: Optional[str] = None
    headers: dict[str, str] = Field(default_factory=dict)
    skip_retry: bool = False
    skip_refresh: bool = False

    @classmethod
    def coerce(cls, options: Any = None, **kwargs) -> RequestOptions:
        """Build options from an instance, a mapping, keywords, or a mix."""
        if options is None:
            data: dict[str, Any] = {}
        elif isinstance(options, RequestOptions):
            if not kwargs:
                return options
            data = options.model_dump(by_alias=True)
        elif isinstance(options, Mapping):
            data = dict(options)
        else:
            raise ValidationError(
                f"options must be a mapping or RequestOptions, got {type(options).__name__}"
            )
        data.update(kwargs)
        try:
            return cls.model_validate(data)
        except pydantic.ValidationError as e:
            raise ValidationError(f"Invalid options: {e}", details=e.errors()) from e

    @property
    def extra_body(self) -> dict[str, Any]:
        return dict(self.model_extra or {})

    @property
    def debug_enabled(self) -> bool:
        return self.debug or bool(os.environ.get("CALLAI_DEBUG"))


def to_messages(prompt: Prompt) -> list[Message]:
    """Validate *prompt* and return it as a message list.

    A plain string becomes a single user message.
    """
    if isinstance(prompt, str):
        if not prompt.strip():
            raise ValidationError("Prompt must not be empty")
        return [Message(role=MessageRole.USER, content=prompt)]
    if not isinstance(prompt, Sequence) or isinstance(prompt, (bytes, bytearray)):
        raise ValidationError(
            f"Prompt must be a string or a list of messages, got {type(prompt).__name__}"
        )
    if not prompt:
        raise ValidationError("Prompt must contain at least one message")

    messages = []
    for position, item in enumerate(prompt):
        if isinstance(item, Message):
            messages.append(item)
            continue
        try:
            messages.append(Message.model_validate(item))
        except pydantic.ValidationError as e:
            raise ValidationError(
                f"Invalid message at position {position}: {e}", details=e.errors()
            ) from e
    return messages


def resolve_api_key(options: RequestOptions) -> str:
    api_key = (
        options.api_key
        or os.environ.get("CALLAI_API_KEY")
        or os.environ.get("OPENROUTER_API_KEY")
    )
    if not api_key:
        raise ValidationError(
            "API key is required. Pass api_key or set CALLAI_API_KEY"
        )
    return api_key


def resolve_endpoint(options: RequestOptions) -> str:
    if options.endpoint:
        return options.endpoint.rstrip("/")
    origin = os.environ.get("CALLAI_CHAT_URL")
    if origin:
        return f"{origin.rstrip('/')}/api/v1"
    return DEFAULT_ENDPOINT


def build_headers(api_key: str, options: RequestOptions) -> dict[str, str]:
    return {
        "Authorization": f"Bearer {api_key}",
        "Content-Type": "application/json",
        "HTTP-Referer": options.referer or DEFAULT_REFERER,
        "X-Title": options.title or DEFAULT_TITLE,
        **options.headers,
    }


def build_request(
    messages: list[Message],
    strategy: SchemaStrategy,
    schema: Schema | None,
    options: RequestOptions,
    *,
    stream: bool,
) -> dict[str, Any]:
    """Assemble the chat-completions body for one attempt.

    The strategy fragment is merged last among the known fields, so a
    system-message strategy replaces ``messages``.  Extra options are
    copied over the top.
    """
    body: dict[str, Any] = {
        "model": strategy.model,
        "messages": [m.to_wire() for m in messages],
        "stream": stream,
    }
    if options.temperature is not None:
        body["temperature"] = options.temperature
    if options.top_p is not None:
        body["top_p"] = options.top_p
    if options.max_tokens is not None:
        body["max_tokens"] = options.max_tokens
    if options.stop is not None:
        body["stop"] = [options.stop] if isinstance(options.stop, str) else list(options.stop)
    if options.response_format == "json":
        body["response_format"] = {"type": "json_object"}
    elif isinstance(options.response_format, dict):
        body["response_format"] = options.response_format

    if schema is not None:
        body.update(strategy.prepare_request(schema, messages))
    body.update(options.extra_body)
    return body
