"""Out-of-band metadata for call results.

Results are handed back untouched; timing, model and the raw envelope
live in a side table keyed by the identity of the result object.
Plain ``str`` objects cannot be weakly referenced, so string results
are boxed in :class:`ResponseText`, a ``str`` subclass that behaves like
the original string but has an identity of its own.  The table entry
disappears when the result object is garbage collected.
"""

from __future__ import annotations

import time
import weakref
from dataclasses import dataclass, field
from typing import Any


class ResponseText(str):
    """A ``str`` result that metadata can be attached to."""


@dataclass
class Timing:
    start_time: float = field(default_factory=time.time)
    end_time: float | None = None
    duration: float | None = None

    def finish(self) -> None:
        self.end_time = time.time()
        self.duration = self.end_time - self.start_time


@dataclass
class ResponseMetadata:
    model: str
    endpoint: str | None = None
    timing: Timing = field(default_factory=Timing)
    raw_response: Any = None


_board: dict[int, tuple[weakref.ref, ResponseMetadata]] = {}


def _forget(key: int, ref: weakref.ref) -> None:
    entry = _board.get(key)
    if entry is not None and entry[0] is ref:
        del _board[key]


def box(value: Any) -> Any:
    """Give string results an identity metadata can be attached to."""
    if isinstance(value, str) and not isinstance(value, ResponseText):
        return ResponseText(value)
    return value


def attach_metadata(value: Any, meta: ResponseMetadata) -> Any:
    """Associate *meta* with *value* and return the object to hand out.

    The returned object is *value* itself, or its boxed form for strings.
    Values that cannot be weakly referenced are returned without metadata.
    """
    value = box(value)
    key = id(value)
    try:
        ref = weakref.ref(value, lambda r, key=key: _forget(key, r))
    except TypeError:
        return value
    _board[key] = (ref, meta)
    return value


def get_metadata(value: Any) -> ResponseMetadata | None:
    """Return the metadata attached to *value*, or ``None``."""
    entry = _board.get(id(value))
    if entry is None:
        return None
    ref, meta = entry
    if ref() is not value:
        return None
    return meta
