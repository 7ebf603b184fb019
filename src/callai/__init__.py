from callai.api import DeltaStream, call_ai
from callai.errors import (
    APIError,
    AuthenticationError,
    CallAIError,
    PartialJSONError,
    PartialStreamError,
    StreamError,
    TransportError,
    ValidationError,
)
from callai.instrumentation import instrument, uninstrument
from callai.message import Message, MessageRole
from callai.metadata import ResponseMetadata, get_metadata
from callai.provider import ChatProvider
from callai.request import RequestOptions
from callai.result import DualInterfaceResult
from callai.schema import Schema
from callai.strategy import ModelFamilies

__all__ = [
    "APIError",
    "AuthenticationError",
    "CallAIError",
    "ChatProvider",
    "DeltaStream",
    "DualInterfaceResult",
    "Message",
    "MessageRole",
    "ModelFamilies",
    "PartialJSONError",
    "PartialStreamError",
    "RequestOptions",
    "ResponseMetadata",
    "Schema",
    "StreamError",
    "TransportError",
    "ValidationError",
    "call_ai",
    "get_metadata",
    "instrument",
    "uninstrument",
]
