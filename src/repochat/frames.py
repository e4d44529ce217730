"""Event-stream framing for streamed answers.

Wire format, one frame per block, blocks separated by a blank line::

    event: delta
    data: {"delta": "Hello"}

`event` defaults to "message". Several `data:` lines are joined with
newlines before JSON decoding. Lines starting with ":" are comments.
"""

import codecs
import json
import logging
from collections import deque
from dataclasses import dataclass
from typing import Any

logger = logging.getLogger(__name__)

DEFAULT_EVENT = "message"


@dataclass
class Frame:
    """One typed unit of a streamed response."""

    event: str = DEFAULT_EVENT
    data: Any = None


class FrameDecoder:
    """Incremental decoder: feed raw chunks, drain complete frames.

    Chunks may split anywhere, including inside a UTF-8 sequence or a
    `data:` line. Nothing is parsed until its terminating blank line has
    arrived.
    """

    def __init__(self):
        self._utf8 = codecs.getincrementaldecoder("utf-8")()
        self._buffer = ""
        self._frames: deque[Frame] = deque()
        self.frames_decoded = 0
        self.frames_dropped = 0

    def feed(self, chunk: bytes | str) -> None:
        """Add a chunk. Raises UnicodeDecodeError on invalid UTF-8."""
        if isinstance(chunk, bytes):
            text = self._utf8.decode(chunk)
        else:
            text = chunk
        if not text:
            return

        self._buffer = (self._buffer + text).replace("\r\n", "\n")
        while "\n\n" in self._buffer:
            block, self._buffer = self._buffer.split("\n\n", 1)
            frame = self._parse_block(block)
            if frame is not None:
                self._frames.append(frame)

    def drain(self) -> list[Frame]:
        """Return and forget every frame completed so far, in order."""
        frames = list(self._frames)
        self._frames.clear()
        return frames

    @property
    def pending(self) -> str:
        """Text of the incomplete trailing block, if any."""
        return self._buffer

    def _parse_block(self, block: str) -> Frame | None:
        event = DEFAULT_EVENT
        data_lines = []
        for line in block.split("\n"):
            if not line or line.startswith(":"):
                continue
            name, _, value = line.partition(":")
            if value.startswith(" "):
                value = value[1:]
            if name == "event":
                event = value.strip() or DEFAULT_EVENT
            elif name == "data":
                data_lines.append(value)

        if not data_lines:
            return None

        raw = "\n".join(data_lines)
        try:
            data = json.loads(raw)
        except json.JSONDecodeError as e:
            self.frames_dropped += 1
            logger.warning("Dropping %r frame with malformed JSON: %s", event, e)
            return None

        self.frames_decoded += 1
        return Frame(event=event, data=data)


def encode_frame(frame: Frame) -> str:
    """Serialise a frame in the wire format, blank line included."""
    payload = json.dumps(frame.data, ensure_ascii=False)
    data = "\n".join(f"data: {line}" for line in payload.split("\n"))
    return f"event: {frame.event}\n{data}\n\n"
