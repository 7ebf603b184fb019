"""The ``call_ai`` entry point.

One call runs through these stages:

1. Validate the prompt, options and API key (eagerly, before any I/O).
2. Pick a schema strategy for the model.
3. Send the request, refreshing the key once on an auth failure and
   falling back to ``openrouter/auto`` once on an invalid-model error.
4. Either buffer the envelope, or decode the event stream into deltas.
5. Attach metadata to whatever is handed back.
"""

from __future__ import annotations

import json
import logging
import re
from collections.abc import AsyncIterator
from typing import Any

from callai.errors import (
    APIError,
    CallAIError,
    PartialStreamError,
    StreamError,
    TransportError,
)
from callai.instrumentation import completion_span, record_error, record_usage
from callai.keys import KeyRefreshCoordinator
from callai.message import Message
from callai.metadata import ResponseMetadata, Timing, attach_metadata
from callai.normalize import extract_content
from callai.provider import ByteStream, ChatProvider
from callai.request import (
    Prompt,
    RequestOptions,
    build_headers,
    build_request,
    resolve_api_key,
    resolve_endpoint,
    to_messages,
)
from callai.result import DualInterfaceResult
from callai.schema import Schema, parse_schema
from callai.sse import SSEDecoder, StreamFrame
from callai.streaming import ToolCallAccumulator, chunk_from_payload
from callai.strategy import DEFAULT_FAMILIES, ModelFamilies, select_strategy

logger = logging.getLogger(__name__)

FALLBACK_MODEL = "openrouter/auto"

_INVALID_MODEL = re.compile(r"model|engine|not found|invalid|unavailable", re.IGNORECASE)

_default_provider: ChatProvider | None = None


def default_provider() -> ChatProvider:
    global _default_provider
    if _default_provider is None:
        _default_provider = ChatProvider()
    return _default_provider


def is_invalid_model_error(error: APIError) -> bool:
    return error.status in (400, 404) and bool(_INVALID_MODEL.search(error.message or ""))


def _error_text(error: Any) -> tuple[str, int]:
    if isinstance(error, dict):
        message = error.get("message") or json.dumps(error, default=str)
        code = error.get("code")
        return str(message), code if isinstance(code, int) else 400
    return str(error), 400


class _StreamDecoder:
    """Turns SSE frames into text deltas and tracks stream completion."""

    def __init__(self):
        self.tools = ToolCallAccumulator()
        self.collected: list[str] = []
        self.frames = 0
        self.finished = False
        self.terminated = False
        self.last_payload: Any = None
        self._emitted: set[int] = set()

    @property
    def partial_content(self) -> str:
        return "".join(self.collected) + self.tools.partial_text()

    @property
    def complete(self) -> bool:
        return self.terminated or self.finished

    def feed(self, frame: StreamFrame) -> list[str]:
        self.frames += 1
        if frame.is_terminal:
            self.terminated = True
            return []
        try:
            payload = json.loads(frame.data)
        except json.JSONDecodeError:
            logger.debug(f"Skipping non-JSON frame: {frame.data[:100]!r}")
            return []
        if not isinstance(payload, dict):
            return []
        self.last_payload = payload

        chunk = chunk_from_payload(payload)
        if chunk.error is not None:
            message, status = _error_text(chunk.error)
            raise StreamError(
                message, status=status, details=chunk.error, partial_content=self.partial_content
            )

        deltas = []
        if chunk.content_delta:
            deltas.append(chunk.content_delta)
        if chunk.tool_input is not None:
            deltas.append(json.dumps(chunk.tool_input))
        for fragment in chunk.tool_call_fragments or ():
            call = self.tools.feed(fragment)
            if call is not None:
                self._emitted.add(id(call))
                deltas.append(json.dumps(call.arguments))
        if chunk.finish_reason:
            self.finished = True
        self.collected.extend(deltas)
        return deltas

    def close(self) -> list[str]:
        """Emit tool calls whose arguments only became complete at the end."""
        deltas = []
        for call in self.tools.finalize():
            if id(call) in self._emitted or call.arguments is None:
                continue
            self._emitted.add(id(call))
            deltas.append(json.dumps(call.arguments))
        self.collected.extend(deltas)
        return deltas


class DeltaStream:
    """Async iterator of text deltas over an open response stream.

    Closing it releases the connection even if iteration never started.
    """

    def __init__(self, deltas: AsyncIterator[str], byte_stream: ByteStream):
        self._deltas = deltas
        self._byte_stream = byte_stream

    def __aiter__(self) -> DeltaStream:
        return self

    async def __anext__(self) -> str:
        return await self._deltas.__anext__()

    async def athrow(self, exc: BaseException) -> str:
        try:
            return await self._deltas.athrow(exc)
        except BaseException:
            await self._byte_stream.aclose()
            raise

    async def aclose(self) -> None:
        try:
            await self._deltas.aclose()
        finally:
            await self._byte_stream.aclose()


class _Call:
    """State for one ``call_ai`` invocation, including its retries."""

    def __init__(
        self,
        messages: list[Message],
        options: RequestOptions,
        schema: Schema | None,
        api_key: str,
        provider: ChatProvider,
        families: ModelFamilies,
    ):
        self.messages = messages
        self.options = options
        self.schema = schema
        self.api_key = api_key
        self.provider = provider
        self.families = families
        self.endpoint = resolve_endpoint(options)
        self.level = logging.INFO if options.debug_enabled else logging.DEBUG
        self.strategy = self._select(options.model)
        self.keys = KeyRefreshCoordinator(
            api_key,
            refresh_token=options.refresh_token,
            update_refresh_token=options.update_refresh_token,
            enabled=not options.skip_refresh,
        )
        self.fallback_used = False
        self.timing = Timing()
        self.result: DualInterfaceResult | None = None
        self.iterator: DeltaStream | None = None

    def _select(self, model: str | None):
        return select_strategy(
            model,
            self.schema,
            use_tool_mode=self.options.use_tool_mode,
            force_system_message=self.options.force_system_message,
            families=self.families,
        )

    def _metadata(self, raw_response: Any = None) -> ResponseMetadata:
        self.timing.finish()
        return ResponseMetadata(
            model=self.strategy.model,
            endpoint=self.endpoint,
            timing=self.timing,
            raw_response=raw_response,
        )

    # ------------------------------------------------------------------
    # Sending
    # ------------------------------------------------------------------

    async def _attempt(self, api_key: str, stream: bool) -> Any:
        body = build_request(self.messages, self.strategy, self.schema, self.options, stream=stream)
        headers = build_headers(api_key, self.options)
        logger.log(
            self.level,
            f"POST {self.endpoint}/chat/completions model={self.strategy.model} "
            f"strategy={self.strategy.name.value} stream={stream}",
        )
        logger.log(self.level, f"Request body: {json.dumps(body, default=str)}")
        async with completion_span(
            self.provider.system, self.strategy.model, stream=stream, strategy=self.strategy.name.value
        ) as span:
            try:
                if stream:
                    return await self.provider.open_stream(
                        body, api_key=api_key, headers=headers, base_url=self.endpoint
                    )
                envelope = await self.provider.complete(
                    body, api_key=api_key, headers=headers, base_url=self.endpoint
                )
            except CallAIError as e:
                record_error(span, e)
                raise
            record_usage(span, envelope)
            logger.log(self.level, f"Response: {json.dumps(envelope, default=str)[:2000]}")
            return envelope

    async def _with_refresh(self, stream: bool) -> Any:
        try:
            return await self.keys.run(lambda key: self._attempt(key, stream))
        finally:
            if self.keys.api_key != self.api_key:
                self.api_key = self.keys.api_key
                self.options = self.options.model_copy(
                    update={"api_key": self.keys.api_key, "refresh_token": self.keys.refresh_token}
                )

    async def send(self, stream: bool) -> Any:
        try:
            return await self._with_refresh(stream)
        except APIError as e:
            if (
                self.options.skip_retry
                or self.fallback_used
                or self.strategy.model == FALLBACK_MODEL
                or not is_invalid_model_error(e)
            ):
                raise
            logger.warning(
                f"Model {self.strategy.model!r} rejected ({e.message}); retrying with {FALLBACK_MODEL}"
            )
            self.fallback_used = True
            self.strategy = self._select(FALLBACK_MODEL)
            return await self._with_refresh(stream)

    # ------------------------------------------------------------------
    # Modes
    # ------------------------------------------------------------------

    async def buffered(self) -> str:
        envelope = await self.send(stream=False)
        content = extract_content(envelope)
        text = self.strategy.process_response(content)
        return attach_metadata(text, self._metadata(envelope))

    async def streamed(self) -> AsyncIterator[str]:
        byte_stream = await self.send(stream=True)
        self.iterator = DeltaStream(self._deltas(byte_stream), byte_stream)
        return self.iterator

    async def stream_then_buffer(self) -> str:
        byte_stream = await self.send(stream=True)
        parts: list[str] = []
        deltas = self._deltas(byte_stream, attach=False)
        try:
            async for delta in deltas:
                parts.append(delta)
        except PartialStreamError:
            raise
        except Exception as e:
            partial = "".join(parts)
            if isinstance(e, CallAIError) and e.partial_content:
                partial = e.partial_content
            raise PartialStreamError(
                f"Stream failed while buffering: {e}",
                partial_content=partial,
                original_error=e,
            ) from e
        finally:
            await deltas.aclose()
        text = self.strategy.process_response("".join(parts))
        return attach_metadata(text, self._metadata())

    async def _deltas(self, byte_stream: ByteStream, attach: bool = True) -> AsyncIterator[str]:
        decoder = SSEDecoder()
        state = _StreamDecoder()
        try:
            try:
                async for chunk in byte_stream:
                    for frame in decoder.decode(chunk):
                        for delta in state.feed(frame):
                            yield delta
                    if decoder.terminated:
                        break
                else:
                    for frame in decoder.flush():
                        for delta in state.feed(frame):
                            yield delta
            except TransportError as e:
                raise PartialStreamError(
                    f"Stream interrupted: {e}",
                    partial_content=state.partial_content,
                    original_error=e,
                ) from e
            if not state.complete:
                raise PartialStreamError(
                    "Stream ended before completion",
                    partial_content=state.partial_content,
                )
            for delta in state.close():
                yield delta
            logger.log(self.level, f"Stream complete after {state.frames} frames")
            if attach:
                meta = self._metadata(state.last_payload)
                for target in (self.result, self.iterator):
                    if target is not None:
                        attach_metadata(target, meta)
        finally:
            await byte_stream.aclose()


def _warn_provider_mismatch(options: RequestOptions, model: str) -> None:
    provider = options.provider
    if provider and provider != "auto" and not model.startswith(f"{provider}/"):
        logger.warning(
            f"Model {model!r} does not belong to provider {provider!r}; using it as given"
        )


def call_ai(
    prompt: Prompt,
    options: RequestOptions | dict | None = None,
    *,
    client: ChatProvider | None = None,
    families: ModelFamilies = DEFAULT_FAMILIES,
    **kwargs,
) -> DualInterfaceResult:
    """Call a chat model and return a result that is both awaitable and iterable.

    ``await call_ai(...)`` gives the final string (or, with
    ``stream=True``, an async iterator of deltas).  ``async for delta in
    call_ai(...)`` gives deltas in either mode; a buffered call yields
    its final string once.

    Args:
        prompt: A string, or a list of ``{"role", "content"}`` messages.
        options: ``RequestOptions`` or a mapping; keyword arguments are
            merged over it.
        client: Transport to use. Defaults to a shared OpenRouter client.
        families: Model-name patterns used for strategy selection.

    Raises:
        ValidationError: Synchronously, for a malformed prompt or options,
            or when no API key can be found.
    """
    opts = RequestOptions.coerce(options, **kwargs)
    messages = to_messages(prompt)
    api_key = resolve_api_key(opts)
    schema = parse_schema(opts.response_schema)

    call = _Call(messages, opts, schema, api_key, client or default_provider(), families)
    _warn_provider_mismatch(opts, call.strategy.model)

    if opts.stream:
        mode = call.streamed
    elif call.strategy.should_force_stream:
        mode = call.stream_then_buffer
    else:
        mode = call.buffered

    async def compute():
        call.timing = Timing()
        return await mode()

    result = DualInterfaceResult(compute)
    call.result = result
    return result
