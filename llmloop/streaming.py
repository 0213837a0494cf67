"""
llmloop - Server-Sent Events parsing for provider streams.

Providers stream responses as ``text/event-stream`` bodies. httpx handles
decoding and line splitting (``response.aiter_lines()``); the parser here
turns those lines into events, yielding each one as soon as its
terminating blank line arrives.
"""

import json
from dataclasses import dataclass
from typing import Any, AsyncIterator, Optional

DONE_SENTINEL = "[DONE]"


@dataclass
class SSEEvent:
    """An event received from an SSE stream."""

    event: str
    data: str
    id: Optional[str] = None
    retry: Optional[int] = None

    @property
    def is_done(self) -> bool:
        """Whether this is the OpenAI-style ``[DONE]`` terminator."""
        return self.data.strip() == DONE_SENTINEL

    def json(self) -> Any:
        """Decode the data payload. Raises ValueError on malformed JSON."""
        return json.loads(self.data)


class SSEParser:
    """SSE field parser fed one decoded line at a time."""

    def __init__(self) -> None:
        self._event_type = ""
        self._data_lines: list[str] = []
        self._event_id: Optional[str] = None
        self._retry: Optional[int] = None

    def feed_line(self, line: str) -> Optional[SSEEvent]:
        """Consume one line; return the event a blank line completes, if any."""
        line = line.rstrip("\r\n")
        if not line:
            return self._dispatch()
        self._process_line(line)
        return None

    def flush(self) -> Optional[SSEEvent]:
        """Emit an event left unterminated at end of body."""
        return self._dispatch()

    def _process_line(self, line: str) -> None:
        if line.startswith(":"):
            return

        if ":" in line:
            field, _, value = line.partition(":")
            if value.startswith(" "):
                value = value[1:]
        else:
            field = line
            value = ""

        if field == "event":
            self._event_type = value
        elif field == "data":
            self._data_lines.append(value)
        elif field == "id":
            self._event_id = value
        elif field == "retry":
            try:
                self._retry = int(value)
            except ValueError:
                pass

    def _dispatch(self) -> Optional[SSEEvent]:
        if not self._data_lines and not self._event_type:
            return None
        event = SSEEvent(
            event=self._event_type or "message",
            data="\n".join(self._data_lines),
            id=self._event_id,
            retry=self._retry,
        )
        self._event_type = ""
        self._data_lines = []
        self._event_id = None
        self._retry = None
        return event


async def aiter_sse(lines: AsyncIterator[str]) -> AsyncIterator[SSEEvent]:
    """Parse decoded lines (e.g. ``response.aiter_lines()``) into events."""
    parser = SSEParser()
    async for line in lines:
        event = parser.feed_line(line)
        if event is not None:
            yield event
    event = parser.flush()
    if event is not None:
        yield event
