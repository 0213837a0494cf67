"""
llmloop - Reduces one normalized event stream into a structured turn.

The accumulator is a pure reducer with no I/O. Tool-call argument fragments
are buffered per call id and concatenated verbatim when the call ends; the
JSON is parsed later by the validator, so malformed arguments never fail
here.
"""

import logging
from dataclasses import dataclass, field
from typing import Iterable, Optional

from .events import (
    FinishReason,
    NormalizedEvent,
    StreamEnd,
    StreamError,
    StreamStart,
    TextDelta,
    ThinkingDelta,
    ThinkingEnd,
    ToolCallArgsDelta,
    ToolCallEnd,
    ToolCallStart,
    UsageReport,
)
from .models import AssistantToolCall, ModelReference, TokenUsage

logger = logging.getLogger("llmloop.accumulator")


@dataclass(frozen=True)
class AccumulatedToolCall:
    """A tool call whose arguments have been fully received."""

    call_id: str
    function_name: str
    arguments_json: str

    def to_assistant_call(self) -> AssistantToolCall:
        return AssistantToolCall(
            call_id=self.call_id,
            function_name=self.function_name,
            arguments_json=self.arguments_json,
        )


@dataclass(frozen=True)
class AccumulatedTurn:
    """Everything one provider round-trip produced.

    ``error`` is set when the stream failed or ended without a terminal
    event; the other fields then hold whatever arrived before the failure.
    """

    text: str = ""
    thinking: str = ""
    thinking_signature: Optional[str] = None
    tool_calls: tuple[AccumulatedToolCall, ...] = ()
    finish_reason: FinishReason = FinishReason.OTHER
    usage: Optional[TokenUsage] = None
    request_id: Optional[str] = None
    model: Optional[ModelReference] = None
    error: Optional[str] = None

    @property
    def is_complete(self) -> bool:
        return self.error is None


@dataclass
class _OpenCall:
    function_name: str
    fragments: list[str] = field(default_factory=list)


class StreamAccumulator:
    """Feed events with ``push``; call ``finish`` once to build the turn."""

    def __init__(self) -> None:
        self._text: list[str] = []
        self._thinking: list[str] = []
        self._thinking_signature: Optional[str] = None
        self._open: dict[str, _OpenCall] = {}
        self._start_order: list[str] = []
        self._completed: list[AccumulatedToolCall] = []
        self._usage: Optional[TokenUsage] = None
        self._finish_reason: Optional[FinishReason] = None
        self._error: Optional[str] = None
        self._request_id: Optional[str] = None
        self._model: Optional[ModelReference] = None
        self._terminated = False

    @property
    def text(self) -> str:
        """Answer text received so far."""
        return "".join(self._text)

    @property
    def terminated(self) -> bool:
        return self._terminated

    def push(self, event: NormalizedEvent) -> None:
        if self._terminated:
            logger.debug("Ignoring %s after stream termination", event.type.value)
            return

        if isinstance(event, StreamStart):
            self._request_id = event.request_id
            self._model = event.model
        elif isinstance(event, TextDelta):
            self._text.append(event.text)
        elif isinstance(event, ThinkingDelta):
            self._thinking.append(event.text)
        elif isinstance(event, ThinkingEnd):
            if event.signature is not None:
                self._thinking_signature = event.signature
        elif isinstance(event, ToolCallStart):
            if event.call_id in self._open:
                logger.debug("Duplicate start for tool call %s", event.call_id)
                return
            self._open[event.call_id] = _OpenCall(function_name=event.function_name)
            self._start_order.append(event.call_id)
        elif isinstance(event, ToolCallArgsDelta):
            call = self._open.get(event.call_id)
            if call is None:
                logger.debug("Arguments for unknown tool call %s dropped", event.call_id)
                return
            call.fragments.append(event.fragment)
        elif isinstance(event, ToolCallEnd):
            call = self._open.pop(event.call_id, None)
            if call is not None:
                self._completed.append(self._complete(event.call_id, call))
        elif isinstance(event, UsageReport):
            if self._usage is None:
                self._usage = TokenUsage()
            self._usage.add(event.usage)
        elif isinstance(event, StreamEnd):
            self._finish_reason = event.finish_reason
            self._terminated = True
        elif isinstance(event, StreamError):
            self._error = event.error
            self._terminated = True

    def extend(self, events: Iterable[NormalizedEvent]) -> "StreamAccumulator":
        for event in events:
            self.push(event)
        return self

    def _complete(self, call_id: str, call: _OpenCall) -> AccumulatedToolCall:
        return AccumulatedToolCall(
            call_id=call_id,
            function_name=call.function_name,
            arguments_json="".join(call.fragments),
        )

    def finish(self, error: Optional[str] = None) -> AccumulatedTurn:
        """Build the turn.

        Args:
            error: Marks the turn incomplete, e.g. when the consumer stopped
                reading before a terminal event.
        """
        error = error or self._error
        if error is None and not self._terminated:
            error = "stream ended without a terminal event"

        tool_calls = list(self._completed)
        if error is None:
            # Calls still open at a clean end are closed in start order.
            for call_id in self._start_order:
                call = self._open.pop(call_id, None)
                if call is not None:
                    tool_calls.append(self._complete(call_id, call))

        return AccumulatedTurn(
            text="".join(self._text),
            thinking="".join(self._thinking),
            thinking_signature=self._thinking_signature,
            tool_calls=tuple(tool_calls),
            finish_reason=self._finish_reason or FinishReason.OTHER,
            usage=self._usage,
            request_id=self._request_id,
            model=self._model,
            error=error,
        )


def accumulate(events: Iterable[NormalizedEvent]) -> AccumulatedTurn:
    """Reduce a complete event sequence into a turn."""
    return StreamAccumulator().extend(events).finish()
