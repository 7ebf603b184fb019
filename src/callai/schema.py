"""Structured-output schema descriptors.

A :class:`Schema` is passed through to the provider mostly untouched;
callai only fills in the defaults providers insist on
(``required``, ``additionalProperties``).  Anything that does not parse
as an object degrades to a plain-text description instead of failing.
"""

from __future__ import annotations

import json
import logging
import re
from collections.abc import Mapping
from typing import Any

from pydantic import BaseModel, ConfigDict, Field
from pydantic import ValidationError as PydanticValidationError

logger = logging.getLogger(__name__)

_FENCED_JSON = re.compile(r"```json\s*([\s\S]*?)\s*```")
_FENCED = re.compile(r"```\s*([\s\S]*?)\s*```")


class Schema(BaseModel):
    """Caller-supplied description of the structured output wanted."""

    model_config = ConfigDict(extra="allow", populate_by_name=True)

    name: str | None = None
    description: str | None = None
    properties: dict[str, Any] = Field(default_factory=dict)
    required: list[str] | None = None
    additional_properties: Any = Field(default=None, alias="additionalProperties")

    def extra_keywords(self) -> dict[str, Any]:
        """Schema keywords callai does not interpret, passed through as-is."""
        return dict(self.model_extra or {})

    def required_fields(self) -> list[str]:
        if self.required is not None:
            return list(self.required)
        return list(self.properties)


def parse_schema(raw: Any) -> Schema | None:
    """Coerce *raw* into a :class:`Schema`.

    Accepts a Schema, a mapping, or a JSON string.  Text that is not a
    JSON object becomes ``Schema(description=text)``.
    """
    if raw is None or raw == "":
        return None
    if isinstance(raw, Schema):
        return raw
    if isinstance(raw, str):
        try:
            decoded = json.loads(raw)
        except json.JSONDecodeError:
            logger.warning("Schema is not valid JSON; using it as a description")
            return Schema(description=raw)
        if not isinstance(decoded, dict):
            logger.warning("Schema JSON is not an object; using it as a description")
            return Schema(description=raw)
        raw = decoded
    if isinstance(raw, Mapping):
        try:
            return Schema.model_validate(dict(raw))
        except PydanticValidationError as e:
            logger.warning(f"Malformed schema, degrading to description: {e}")
            return Schema(description=json.dumps(raw, default=str))
    logger.warning(f"Unsupported schema type {type(raw).__name__}; using its text")
    return Schema(description=str(raw))


def close_object_schema(schema: dict[str, Any]) -> dict[str, Any]:
    """Return a copy of *schema* where every object is closed.

    Objects get ``additionalProperties: false`` and a ``required`` list
    naming all their properties unless either is already set; nested
    objects and array items are handled the same way.
    """
    result = dict(schema)
    if result.get("type") == "object":
        if result.get("additionalProperties") is None:
            result["additionalProperties"] = False
        properties = result.get("properties")
        if isinstance(properties, dict):
            if result.get("required") is None:
                result["required"] = list(properties)
            result["properties"] = {
                key: close_object_schema(value) if isinstance(value, dict) else value
                for key, value in properties.items()
            }
    if result.get("type") == "array" and isinstance(result.get("items"), dict):
        result["items"] = close_object_schema(result["items"])
    return result


def describe_schema(schema: Schema) -> str:
    """Render *schema* as instructions a model without structured output can follow."""
    lines = []
    for key, value in schema.properties.items():
        value = value if isinstance(value, dict) else {}
        kind = value.get("type", "string")
        comment = f" // {value['description']}" if value.get("description") else ""
        lines.append(f'  "{key}": {kind}{comment}')
    text = (
        "Please return your response as JSON following this schema exactly:\n"
        "{\n" + ",\n".join(lines) + "\n}\n"
        "Do not include any explanation or text outside of the JSON object."
    )
    if schema.description:
        text = f"{schema.description}\n\n{text}"
    return text


def extract_json_block(text: str) -> str:
    """Strip a Markdown code fence around a JSON answer, if there is one."""
    match = _FENCED_JSON.search(text) or _FENCED.search(text)
    if match:
        return match.group(1)
    return text
