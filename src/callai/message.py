from enum import Enum
from typing import Literal, Union

from pydantic import BaseModel, Field, field_serializer, field_validator


class MessageRole(Enum):
    SYSTEM = "system"
    ASSISTANT = "assistant"
    USER = "user"
    TOOL = "tool"


class ImageURL(BaseModel):
    url: str


class TextPart(BaseModel):
    type: Literal["text"] = "text"
    text: str


class ImagePart(BaseModel):
    type: Literal["image_url"] = "image_url"
    image_url: ImageURL


ContentPart = Union[TextPart, ImagePart]


class Message(BaseModel):
    role: MessageRole
    content: Union[str, list[ContentPart]] = Field(union_mode="left_to_right")

    @field_validator("content")
    @classmethod
    def content_not_empty(cls, content):
        if isinstance(content, str) and not content.strip():
            raise ValueError("content must not be empty")
        if isinstance(content, list) and not content:
            raise ValueError("content parts must not be empty")
        return content

    @field_serializer("role")
    def serialize_role(self, role: MessageRole, _info) -> str:
        return role.value

    def to_wire(self) -> dict:
        return self.model_dump(exclude_none=True)
