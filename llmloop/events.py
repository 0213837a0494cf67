"""
llmloop - Normalized event model emitted by every provider adapter.

A stream is a finite sequence that starts with exactly one StreamStart and
ends with exactly one StreamEnd or StreamError. Tool-call argument fragments
for a call id arrive between its ToolCallStart and ToolCallEnd, in order.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, AsyncIterator, ClassVar, Iterable, Optional, Union

from .models import ModelReference, TokenUsage


class FinishReason(str, Enum):
    """Why a model stopped generating."""

    STOP = "stop"
    LENGTH = "length"
    TOOL_CALLS = "tool_calls"
    CONTENT_FILTER = "content_filter"
    CANCELLED = "cancelled"
    OTHER = "other"


class EventType(str, Enum):
    """Discriminator for normalized events."""

    STREAM_START = "stream_start"
    TEXT_DELTA = "text_delta"
    THINKING_START = "thinking_start"
    THINKING_DELTA = "thinking_delta"
    THINKING_END = "thinking_end"
    TOOL_CALL_START = "tool_call_start"
    TOOL_CALL_ARGS_DELTA = "tool_call_args_delta"
    TOOL_CALL_END = "tool_call_end"
    USAGE = "usage"
    STREAM_END = "stream_end"
    STREAM_ERROR = "stream_error"


@dataclass(frozen=True)
class StreamStart:
    request_id: str
    model: ModelReference
    type: ClassVar[EventType] = EventType.STREAM_START


@dataclass(frozen=True)
class TextDelta:
    text: str
    type: ClassVar[EventType] = EventType.TEXT_DELTA


@dataclass(frozen=True)
class ThinkingStart:
    type: ClassVar[EventType] = EventType.THINKING_START


@dataclass(frozen=True)
class ThinkingDelta:
    text: str
    type: ClassVar[EventType] = EventType.THINKING_DELTA


@dataclass(frozen=True)
class ThinkingEnd:
    signature: Optional[str] = None
    type: ClassVar[EventType] = EventType.THINKING_END


@dataclass(frozen=True)
class ToolCallStart:
    call_id: str
    function_name: str
    type: ClassVar[EventType] = EventType.TOOL_CALL_START


@dataclass(frozen=True)
class ToolCallArgsDelta:
    call_id: str
    fragment: str
    type: ClassVar[EventType] = EventType.TOOL_CALL_ARGS_DELTA


@dataclass(frozen=True)
class ToolCallEnd:
    call_id: str
    type: ClassVar[EventType] = EventType.TOOL_CALL_END


@dataclass(frozen=True)
class UsageReport:
    usage: TokenUsage = field(default_factory=TokenUsage)
    type: ClassVar[EventType] = EventType.USAGE


@dataclass(frozen=True)
class StreamEnd:
    finish_reason: FinishReason
    type: ClassVar[EventType] = EventType.STREAM_END


@dataclass(frozen=True)
class StreamError:
    error: str
    type: ClassVar[EventType] = EventType.STREAM_ERROR


NormalizedEvent = Union[
    StreamStart,
    TextDelta,
    ThinkingStart,
    ThinkingDelta,
    ThinkingEnd,
    ToolCallStart,
    ToolCallArgsDelta,
    ToolCallEnd,
    UsageReport,
    StreamEnd,
    StreamError,
]

TERMINAL_EVENT_TYPES = frozenset({EventType.STREAM_END, EventType.STREAM_ERROR})


def is_terminal(event: NormalizedEvent) -> bool:
    """Whether the event closes its stream."""
    return event.type in TERMINAL_EVENT_TYPES


class EventStream:
    """
    A lazily-produced, single-use sequence of normalized events.

    Wraps the async generator an adapter builds around its HTTP response.
    Closing the stream closes the generator, which releases the underlying
    connection.

    Usage:
        ```python
        stream = await adapter.send(messages, tools, options)
        async with stream:
            async for event in stream:
                ...
        ```
    """

    def __init__(self, events: AsyncIterator[NormalizedEvent]):
        self._events = events
        self._closed = False

    @classmethod
    def from_events(cls, events: Iterable[NormalizedEvent]) -> "EventStream":
        """Build a stream over an already-materialized event list."""
        items = list(events)

        async def _gen() -> AsyncIterator[NormalizedEvent]:
            for item in items:
                yield item

        return cls(_gen())

    def __aiter__(self) -> "EventStream":
        return self

    async def __anext__(self) -> NormalizedEvent:
        if self._closed:
            raise StopAsyncIteration
        return await self._events.__anext__()

    async def next_event(self) -> Optional[NormalizedEvent]:
        """Return the next event, or None once the stream is exhausted."""
        try:
            return await self.__anext__()
        except StopAsyncIteration:
            return None

    async def aclose(self) -> None:
        if self._closed:
            return
        self._closed = True
        aclose = getattr(self._events, "aclose", None)
        if aclose is not None:
            await aclose()

    async def __aenter__(self) -> "EventStream":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.aclose()
