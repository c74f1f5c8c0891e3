"""Incremental parser for `text/event-stream` bodies.

Frames are `event:`/`data:` lines terminated by a blank line. Reads may end in
the middle of a line (or of a UTF-8 sequence); the unfinished tail is kept in
the buffer until the next `feed()`.
"""
from __future__ import annotations

import codecs
import json
from dataclasses import dataclass
from typing import Any, List, Optional, Union


@dataclass(frozen=True)
class SSEFrame:
    event: str
    data: str
    id: Optional[str] = None

    def payload(self) -> Any:
        """Decoded JSON data; the raw string when it is not JSON; None when empty."""
        if not self.data:
            return None
        try:
            return json.loads(self.data)
        except ValueError:
            return self.data


class SSEParser:
    def __init__(self, *, default_event: str = "message") -> None:
        self.default_event = default_event
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._buf = ""
        self._event: Optional[str] = None
        self._data: List[str] = []
        self._id: Optional[str] = None

    @property
    def buffered(self) -> str:
        return self._buf

    def feed(self, chunk: Union[bytes, str]) -> List[SSEFrame]:
        text = self._decoder.decode(chunk) if isinstance(chunk, (bytes, bytearray)) else str(chunk)
        if not text:
            return []
        data = self._buf + text
        lines = data.split("\n")
        # Last element is either "" (chunk ended on a newline) or a partial line.
        self._buf = lines.pop()

        frames: List[SSEFrame] = []
        for raw in lines:
            line = raw[:-1] if raw.endswith("\r") else raw
            frame = self._take_line(line)
            if frame is not None:
                frames.append(frame)
        return frames

    def reset(self) -> None:
        self._decoder.reset()
        self._buf = ""
        self._clear_frame()

    def _clear_frame(self) -> None:
        self._event = None
        self._data = []
        self._id = None

    def _take_line(self, line: str) -> Optional[SSEFrame]:
        if line == "":
            if self._event is None and not self._data:
                return None
            frame = SSEFrame(
                event=self._event or self.default_event,
                data="\n".join(self._data),
                id=self._id,
            )
            self._clear_frame()
            return frame

        if line.startswith(":"):
            return None

        name, sep, value = line.partition(":")
        if not sep:
            value = ""
        elif value.startswith(" "):
            value = value[1:]

        if name == "event":
            self._event = value.strip() or None
        elif name == "data":
            self._data.append(value)
        elif name == "id":
            self._id = value
        return None
