"""The value :func:`callai.call_ai` returns.

Older callers ``await`` the call and receive a string (or, for
streaming calls, an async iterator of deltas); newer ones iterate the
result directly with ``async for``.  :class:`DualInterfaceResult`
supports both, backed by one lazily started computation.
"""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator, Awaitable, Callable, Generator
from typing import Any, Union

Outcome = Union[str, AsyncIterator[str]]


async def _once(value: str) -> AsyncIterator[str]:
    yield value


class DualInterfaceResult:
    """Awaitable and async-iterable view over a deferred call.

    The computation starts the first time either interface is used and
    produces exactly one outcome.  The delta sequence is not restartable:
    once drained, further iteration yields nothing.  A buffered string
    counts as drained once it has been awaited.

    Args:
        compute: Zero-argument callable returning an awaitable that
            resolves to the final string or an async iterator of deltas.
    """

    def __init__(self, compute: Callable[[], Awaitable[Outcome]]):
        self._compute = compute
        self._task: asyncio.Future | None = None
        self._iterator: AsyncIterator[str] | None = None
        self._exhausted = False

    def _resolve(self) -> asyncio.Future:
        if self._task is None:
            self._task = asyncio.ensure_future(self._compute())
        return self._task

    def __await__(self) -> Generator[Any, None, Outcome]:
        return self._deliver().__await__()

    async def _deliver(self) -> Outcome:
        outcome = await self._resolve()
        if isinstance(outcome, str) and self._iterator is None:
            # the string was handed out; iteration has nothing left to replay
            self._exhausted = True
        return outcome

    def __aiter__(self) -> DualInterfaceResult:
        return self

    async def _ensure_iterator(self) -> AsyncIterator[str]:
        if self._iterator is None:
            outcome = await self._resolve()
            self._iterator = _once(outcome) if isinstance(outcome, str) else outcome
        return self._iterator

    async def __anext__(self) -> str:
        if self._exhausted:
            raise StopAsyncIteration
        iterator = await self._ensure_iterator()
        try:
            return await iterator.__anext__()
        except BaseException:
            self._exhausted = True
            raise

    async def aclose(self) -> None:
        """Stop consuming and release the underlying response stream."""
        self._exhausted = True
        if self._iterator is None:
            if self._task is None:
                return
            if not self._task.done():
                self._task.cancel()
                return
            if self._task.cancelled() or self._task.exception() is not None:
                return
            outcome = self._task.result()
            if isinstance(outcome, str):
                return
            self._iterator = outcome
        aclose = getattr(self._iterator, "aclose", None)
        if aclose is not None:
            await aclose()

    async def athrow(self, exc: BaseException) -> str:
        """Raise *exc* inside the delta stream at its current position."""
        iterator = await self._ensure_iterator()
        athrow = getattr(iterator, "athrow", None)
        if athrow is None:
            self._exhausted = True
            raise exc
        try:
            return await athrow(exc)
        except BaseException:
            self._exhausted = True
            raise

    def __repr__(self) -> str:
        state = "pending" if self._task is None else ("exhausted" if self._exhausted else "active")
        return f"<DualInterfaceResult {state}>"
