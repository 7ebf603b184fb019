"""Structured-output strategies and the selector that picks one per model.

Providers disagree on how to ask for structured output.  Each
:class:`ModelStrategy` knows how to render the request fragment for one
mechanism and how to turn that provider's answer back into a string.
:func:`select_strategy` is the only place that looks at model names.
"""

from __future__ import annotations

import re
from collections.abc import Callable, Sequence
from dataclasses import dataclass
from enum import Enum
from typing import Any

from callai.message import Message, MessageRole, TextPart
from callai.normalize import normalize
from callai.schema import Schema, close_object_schema, describe_schema

DEFAULT_SCHEMA_MODEL = "openai/gpt-4o"
DEFAULT_MODEL = "openrouter/auto"
DEFAULT_TOOL_NAME = "generate_structured_data"
DEFAULT_TOOL_DESCRIPTION = "Generate data according to the required schema"


class StrategyName(str, Enum):
    NONE = "none"
    TOOL_MODE = "tool_mode"
    JSON_SCHEMA = "json_schema"
    SYSTEM_MESSAGE = "system_message"


@dataclass(frozen=True)
class ModelFamilies:
    """Model-name patterns that drive strategy selection.

    Patterns are matched case-insensitively with ``re.search``.  The
    forced-stream family is an empirical reliability setting rather than
    a protocol rule, so callers may pass their own instance.
    """

    tool_mode: tuple[str, ...] = ("claude", "anthropic")
    json_schema: tuple[str, ...] = ("gemini", "openai", "gpt")
    json_schema_excluded: tuple[str, ...] = ("gpt-4-turbo",)
    force_stream: tuple[str, ...] = ("claude",)

    @staticmethod
    def _matches(patterns: Sequence[str], model: str) -> bool:
        return any(re.search(p, model, re.IGNORECASE) for p in patterns)

    def is_tool_mode(self, model: str) -> bool:
        return self._matches(self.tool_mode, model)

    def is_json_schema(self, model: str) -> bool:
        return self._matches(self.json_schema, model) and not self._matches(
            self.json_schema_excluded, model
        )

    def forces_stream(self, model: str) -> bool:
        return self._matches(self.force_stream, model)


DEFAULT_FAMILIES = ModelFamilies()


@dataclass(frozen=True)
class ModelStrategy:
    """One mechanism for requesting structured output."""

    name: StrategyName
    prepare_request: Callable[[Schema, list[Message]], dict[str, Any]]

    def process_response(self, content: Any) -> str:
        return normalize(content, verbatim=self.name is StrategyName.NONE)


@dataclass(frozen=True)
class SchemaStrategy:
    """The strategy chosen for one request."""

    strategy: ModelStrategy
    model: str
    should_force_stream: bool = False

    @property
    def name(self) -> StrategyName:
        return self.strategy.name

    def prepare_request(self, schema: Schema, messages: list[Message]) -> dict[str, Any]:
        return self.strategy.prepare_request(schema, messages)

    def process_response(self, content: Any) -> str:
        return self.strategy.process_response(content)


def _no_schema(schema: Schema, messages: list[Message]) -> dict[str, Any]:
    return {}


def _json_schema_request(schema: Schema, messages: list[Message]) -> dict[str, Any]:
    body = {
        "type": "object",
        "properties": schema.properties,
        "required": schema.required_fields(),
        "additionalProperties": (
            schema.additional_properties
            if schema.additional_properties is not None
            else False
        ),
        **schema.extra_keywords(),
    }
    if schema.description:
        body["description"] = schema.description
    return {
        "response_format": {
            "type": "json_schema",
            "json_schema": {
                "name": schema.name or "result",
                "strict": True,
                "schema": close_object_schema(body),
            },
        },
    }


def _tool_mode_request(schema: Schema, messages: list[Message]) -> dict[str, Any]:
    name = schema.name or DEFAULT_TOOL_NAME
    parameters = {
        "type": "object",
        "properties": schema.properties,
        "required": schema.required_fields(),
        "additionalProperties": (
            schema.additional_properties
            if schema.additional_properties is not None
            else False
        ),
    }
    return {
        "tools": [
            {
                "type": "function",
                "function": {
                    "name": name,
                    "description": schema.description or DEFAULT_TOOL_DESCRIPTION,
                    "parameters": parameters,
                },
            }
        ],
        "tool_choice": {"type": "function", "function": {"name": name}},
    }


def _system_message_request(schema: Schema, messages: list[Message]) -> dict[str, Any]:
    instructions = describe_schema(schema)
    merged: list[Message] = []
    found = False
    for message in messages:
        if message.role is MessageRole.SYSTEM and not found:
            found = True
            if isinstance(message.content, str):
                content = f"{message.content}\n\n{instructions}"
            else:
                content = [*message.content, TextPart(text=instructions)]
            message = message.model_copy(update={"content": content})
        merged.append(message)
    if not found:
        merged.insert(0, Message(role=MessageRole.SYSTEM, content=instructions))
    return {"messages": [m.to_wire() for m in merged]}


NONE = ModelStrategy(StrategyName.NONE, _no_schema)
JSON_SCHEMA = ModelStrategy(StrategyName.JSON_SCHEMA, _json_schema_request)
TOOL_MODE = ModelStrategy(StrategyName.TOOL_MODE, _tool_mode_request)
SYSTEM_MESSAGE = ModelStrategy(StrategyName.SYSTEM_MESSAGE, _system_message_request)


def select_strategy(
    model: str | None,
    schema: Schema | None,
    *,
    use_tool_mode: bool = False,
    force_system_message: bool = False,
    families: ModelFamilies = DEFAULT_FAMILIES,
) -> SchemaStrategy:
    """Choose how to request structured output from *model*.

    Without a schema the answer is always ``none``.  Otherwise explicit
    overrides win, then the tool-mode family, then the json-schema
    family, and everything else falls back to a system message.
    """
    resolved = model or (DEFAULT_SCHEMA_MODEL if schema is not None else DEFAULT_MODEL)

    if schema is None:
        return SchemaStrategy(NONE, resolved)
    if force_system_message:
        return SchemaStrategy(SYSTEM_MESSAGE, resolved)
    if use_tool_mode or families.is_tool_mode(resolved):
        return SchemaStrategy(
            TOOL_MODE, resolved, should_force_stream=families.forces_stream(resolved)
        )
    if families.is_json_schema(resolved):
        return SchemaStrategy(JSON_SCHEMA, resolved)
    return SchemaStrategy(SYSTEM_MESSAGE, resolved)
