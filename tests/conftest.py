"""Shared fixtures: a scripted in-memory provider and event-script helpers."""

from typing import Any, Optional, Union

import pytest

from llmloop.adapters.base import ProviderAdapter
from llmloop.events import (
    EventStream,
    FinishReason,
    NormalizedEvent,
    StreamEnd,
    StreamStart,
    TextDelta,
    ToolCallArgsDelta,
    ToolCallEnd,
    ToolCallStart,
    UsageReport,
)
from llmloop.models import Message, ModelReference, RequestOptions, TokenUsage, ToolDefinition

Script = Union[list, BaseException]


def text_turn(text: str, usage: Optional[TokenUsage] = None) -> list[NormalizedEvent]:
    events: list[NormalizedEvent] = [
        StreamStart("req-1", ModelReference("test-model")),
        TextDelta(text),
    ]
    if usage is not None:
        events.append(UsageReport(usage))
    events.append(StreamEnd(FinishReason.STOP))
    return events


def tool_turn(*calls: tuple[str, str, list[str]], text: str = "") -> list[NormalizedEvent]:
    """Events for a turn requesting ``(call_id, name, [arg fragments])`` calls."""
    events: list[NormalizedEvent] = [StreamStart("req-t", ModelReference("test-model"))]
    if text:
        events.append(TextDelta(text))
    for call_id, name, fragments in calls:
        events.append(ToolCallStart(call_id, name))
        for fragment in fragments:
            events.append(ToolCallArgsDelta(call_id, fragment))
        events.append(ToolCallEnd(call_id))
    events.append(StreamEnd(FinishReason.TOOL_CALLS))
    return events


class ScriptedProvider(ProviderAdapter):
    """Replays one script per ``send``: a list of events or an exception to raise."""

    provider = "scripted"

    def __init__(self, scripts: list[Script], name: str = "scripted"):
        super().__init__(model="test-model", base_url="http://scripted.invalid", name=name)
        self.scripts = list(scripts)
        self.requests: list[dict[str, Any]] = []

    async def send(
        self,
        messages: list[Message],
        tools: list[ToolDefinition],
        options: RequestOptions,
    ) -> EventStream:
        self.requests.append(
            {"messages": list(messages), "tools": list(tools), "options": options}
        )
        if not self.scripts:
            raise AssertionError("scripted provider ran out of scripts")
        script = self.scripts.pop(0)
        if isinstance(script, BaseException):
            raise script
        return EventStream.from_events(script)

    @property
    def call_count(self) -> int:
        return len(self.requests)


class FakeClock:
    """Manually advanced monotonic clock."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture(autouse=True)
def _clean_llmloop_env(monkeypatch):
    for var in (
        "LLMLOOP_PROVIDER",
        "LLMLOOP_MODEL",
        "LLMLOOP_BASE_URL",
        "LLMLOOP_API_KEY",
        "LLMLOOP_ENDPOINT_TYPE",
        "LLMLOOP_PROFILE",
        "LLMLOOP_TOOL_MODE",
        "LLMLOOP_MAX_TURNS",
        "LLMLOOP_LOG_LEVEL",
    ):
        monkeypatch.delenv(var, raising=False)
