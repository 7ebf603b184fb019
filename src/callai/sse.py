"""Server-Sent Events framing.

:class:`SSEDecoder` turns arbitrarily fragmented response bytes into
complete :class:`StreamFrame` objects.
"""

from __future__ import annotations

import codecs
from dataclasses import dataclass

TERMINAL_MARKER = "[DONE]"


@dataclass(frozen=True)
class StreamFrame:
    """One Server-Sent Event."""

    data: str
    event_type: str | None = None
    is_terminal: bool = False


class SSEDecoder:
    """Incremental Server-Sent Events decoder.

    Chunks may end mid-frame, mid-line, or in the middle of a multi-byte
    character; whatever is incomplete is kept until the next call.  Once
    the terminal frame has been seen all further input is ignored.
    """

    def __init__(self) -> None:
        self._utf8 = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._buffer = ""
        self._held_cr = False
        self.terminated = False

    def decode(self, chunk: bytes | str) -> list[StreamFrame]:
        if self.terminated:
            return []
        text = self._utf8.decode(chunk) if isinstance(chunk, bytes) else chunk
        return self._feed(text)

    def flush(self) -> list[StreamFrame]:
        """Emit whatever is left once the transport has closed."""
        if self.terminated:
            return []
        frames = self._feed(self._utf8.decode(b"", final=True))
        remainder = self._buffer + ("\n" if self._held_cr else "")
        self._buffer, self._held_cr = "", False
        if remainder.strip():
            frame = self._parse(remainder)
            if frame is not None:
                frames.extend(self._accept([frame]))
        return frames

    def _feed(self, text: str) -> list[StreamFrame]:
        if self._held_cr:
            text = "\r" + text
            self._held_cr = False
        if text.endswith("\r"):
            # may be the first half of a CRLF split across chunks
            text = text[:-1]
            self._held_cr = True
        self._buffer += text.replace("\r\n", "\n").replace("\r", "\n")

        *complete, self._buffer = self._buffer.split("\n\n")
        frames = []
        for block in complete:
            frame = self._parse(block)
            if frame is not None:
                frames.append(frame)
        return self._accept(frames)

    def _accept(self, frames: list[StreamFrame]) -> list[StreamFrame]:
        accepted = []
        for frame in frames:
            accepted.append(frame)
            if frame.is_terminal:
                self.terminated = True
                self._buffer = ""
                break
        return accepted

    @staticmethod
    def _parse(block: str) -> StreamFrame | None:
        event_type = None
        data_lines = []
        for line in block.split("\n"):
            if not line or line.startswith(":"):
                continue
            name, _, value = line.partition(":")
            if value.startswith(" "):
                value = value[1:]
            if name == "data":
                data_lines.append(value)
            elif name == "event":
                event_type = value
        if not data_lines:
            return None
        data = "\n".join(data_lines)
        return StreamFrame(
            data=data,
            event_type=event_type,
            is_terminal=data.strip() == TERMINAL_MARKER,
        )
