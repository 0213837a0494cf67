"""Tests for the normalized event model and EventStream."""

import pytest

from llmloop.events import (
    EventStream,
    EventType,
    FinishReason,
    StreamEnd,
    StreamError,
    StreamStart,
    TextDelta,
    is_terminal,
)
from llmloop.models import ModelReference


class TestEvents:
    def test_event_types(self):
        assert TextDelta("x").type == EventType.TEXT_DELTA
        assert StreamEnd(FinishReason.STOP).type == EventType.STREAM_END

    def test_terminal_events(self):
        assert is_terminal(StreamEnd(FinishReason.STOP))
        assert is_terminal(StreamError("boom"))
        assert not is_terminal(TextDelta("x"))
        assert not is_terminal(StreamStart("r", ModelReference("m")))


class TestEventStream:
    @pytest.mark.asyncio
    async def test_iterates_events(self):
        events = [TextDelta("a"), TextDelta("b"), StreamEnd(FinishReason.STOP)]
        stream = EventStream.from_events(events)
        assert [e async for e in stream] == events

    @pytest.mark.asyncio
    async def test_next_event_returns_none_when_exhausted(self):
        stream = EventStream.from_events([TextDelta("a")])
        assert await stream.next_event() == TextDelta("a")
        assert await stream.next_event() is None

    @pytest.mark.asyncio
    async def test_aclose_closes_generator(self):
        closed = []

        async def gen():
            try:
                yield TextDelta("a")
                yield TextDelta("b")
            finally:
                closed.append(True)

        stream = EventStream(gen())
        async with stream:
            assert await stream.next_event() == TextDelta("a")
        assert closed == [True]
        assert await stream.next_event() is None

    @pytest.mark.asyncio
    async def test_aclose_is_idempotent(self):
        stream = EventStream.from_events([])
        await stream.aclose()
        await stream.aclose()
