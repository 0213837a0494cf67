"""Anthropic Messages API adapter.

Translates conversations into the Messages API request shape (top-level
``system``, ``tool_use`` / ``tool_result`` content blocks, ``input_schema``
tools) and the block-structured SSE stream back into normalized events.

Example:
    from llmloop.adapters import AnthropicAdapter

    adapter = AnthropicAdapter(model="claude-sonnet-4-5", api_key=api_key)
    stream = await adapter.send(messages, tools, RequestOptions())
"""

import json
import logging
from typing import Any, AsyncIterator, Optional

import httpx

from llmloop.adapters.base import ProviderAdapter
from llmloop.adapters.profiles import normalize_finish_reason
from llmloop.events import (
    EventStream,
    FinishReason,
    NormalizedEvent,
    StreamEnd,
    StreamError,
    StreamStart,
    TextDelta,
    ThinkingDelta,
    ThinkingEnd,
    ThinkingStart,
    ToolCallArgsDelta,
    ToolCallEnd,
    ToolCallStart,
    UsageReport,
)
from llmloop.models import (
    Message,
    ModelReference,
    ReasoningLevel,
    RequestOptions,
    Role,
    TokenUsage,
    ToolDefinition,
)
from llmloop.observability import redact
from llmloop.streaming import aiter_sse

logger = logging.getLogger("llmloop.adapters.anthropic")

DEFAULT_ANTHROPIC_URL = "https://api.anthropic.com"
ANTHROPIC_VERSION = "2023-06-01"
MESSAGES_API_PATH = "/v1/messages"

THINKING_BUDGETS = {
    ReasoningLevel.LOW: 1024,
    ReasoningLevel.MEDIUM: 4096,
    ReasoningLevel.HIGH: 16384,
}


def tools_to_anthropic_format(tools: list[ToolDefinition]) -> list[dict[str, Any]]:
    """Convert tool definitions to Anthropic tool format."""
    return [
        {
            "name": t.name,
            "description": t.description,
            "input_schema": t.json_schema or {"type": "object", "properties": {}},
        }
        for t in tools
    ]


def convert_messages(
    messages: list[Message],
) -> tuple[Optional[str], list[dict[str, Any]]]:
    """Split out the system prompt and build Messages API turns.

    Consecutive messages that map to the same role are merged into one turn,
    so the tool results of a multi-call turn land in a single user message.
    """
    system_parts: list[str] = []
    result: list[dict[str, Any]] = []

    def append(role: str, blocks: list[dict[str, Any]]) -> None:
        if not blocks:
            return
        if result and result[-1]["role"] == role:
            result[-1]["content"].extend(blocks)
        else:
            result.append({"role": role, "content": blocks})

    for m in messages:
        if m.role == Role.SYSTEM:
            if m.content:
                system_parts.append(m.content)
        elif m.role == Role.USER:
            append("user", [{"type": "text", "text": m.content}])
        elif m.role == Role.ASSISTANT:
            blocks: list[dict[str, Any]] = []
            if m.thinking and m.thinking_signature:
                # Signed thinking must precede tool_use when it is replayed.
                blocks.append(
                    {
                        "type": "thinking",
                        "thinking": m.thinking,
                        "signature": m.thinking_signature,
                    }
                )
            if m.content:
                blocks.append({"type": "text", "text": m.content})
            for tc in m.tool_calls:
                try:
                    tool_input = json.loads(tc.arguments_json) if tc.arguments_json else {}
                except ValueError:
                    tool_input = {}
                blocks.append(
                    {
                        "type": "tool_use",
                        "id": tc.call_id,
                        "name": tc.function_name,
                        "input": tool_input,
                    }
                )
            append("assistant", blocks)
        elif m.role == Role.TOOL:
            block: dict[str, Any] = {
                "type": "tool_result",
                "tool_use_id": m.tool_call_id,
                "content": m.content,
            }
            if m.is_error:
                block["is_error"] = True
            append("user", [block])

    system = "\n\n".join(system_parts) if system_parts else None
    return system, result


class AnthropicStreamParser:
    """Translates Messages API stream events into normalized events."""

    def __init__(self, model: str, request_id: str):
        self.model = model
        self.request_id = request_id
        self.done = False
        self._started = False
        self._blocks: dict[int, tuple[str, str]] = {}
        self._stop_reason: Optional[str] = None
        self._input_tokens = 0
        self._output_tokens = 0
        self._has_usage = False

    def _start(self, message: Optional[dict[str, Any]] = None) -> list[NormalizedEvent]:
        if self._started:
            return []
        self._started = True
        message = message or {}
        self.request_id = message.get("id") or self.request_id
        return [
            StreamStart(
                request_id=self.request_id,
                model=ModelReference(message.get("model") or self.model),
            )
        ]

    def feed(self, event_type: str, data: dict[str, Any]) -> list[NormalizedEvent]:
        if event_type == "message_start":
            message = data.get("message") or {}
            self._read_usage(message.get("usage"))
            return self._start(message)

        events = self._start()

        if event_type == "content_block_start":
            index = data.get("index", 0)
            block = data.get("content_block") or {}
            kind = block.get("type", "")
            if kind == "tool_use":
                call_id = block.get("id", "")
                self._blocks[index] = ("tool_use", call_id)
                events.append(ToolCallStart(call_id=call_id, function_name=block.get("name", "")))
            elif kind == "thinking":
                self._blocks[index] = ("thinking", block.get("signature") or "")
                events.append(ThinkingStart())
                if block.get("thinking"):
                    events.append(ThinkingDelta(text=block["thinking"]))
            elif kind == "text":
                self._blocks[index] = ("text", "")
                if block.get("text"):
                    events.append(TextDelta(text=block["text"]))

        elif event_type == "content_block_delta":
            index = data.get("index", 0)
            delta = data.get("delta") or {}
            delta_type = delta.get("type")
            if delta_type == "text_delta":
                events.append(TextDelta(text=delta.get("text", "")))
            elif delta_type == "thinking_delta":
                events.append(ThinkingDelta(text=delta.get("thinking", "")))
            elif delta_type == "signature_delta":
                kind, _ = self._blocks.get(index, ("", ""))
                if kind == "thinking":
                    self._blocks[index] = ("thinking", delta.get("signature", ""))
            elif delta_type == "input_json_delta":
                kind, call_id = self._blocks.get(index, ("", ""))
                if kind == "tool_use" and delta.get("partial_json"):
                    events.append(
                        ToolCallArgsDelta(call_id=call_id, fragment=delta["partial_json"])
                    )

        elif event_type == "content_block_stop":
            kind, value = self._blocks.pop(data.get("index", 0), ("", ""))
            if kind == "tool_use":
                events.append(ToolCallEnd(call_id=value))
            elif kind == "thinking":
                events.append(ThinkingEnd(signature=value or None))

        elif event_type == "message_delta":
            delta = data.get("delta") or {}
            if delta.get("stop_reason"):
                self._stop_reason = delta["stop_reason"]
            self._read_usage(data.get("usage"))

        elif event_type == "message_stop":
            events.extend(self._finish_events())

        elif event_type == "error":
            error = data.get("error") or {}
            message = error.get("message") if isinstance(error, dict) else str(error)
            events.append(StreamError(error=redact(message or "stream error")))
            self.done = True

        return events

    def _read_usage(self, usage: Optional[dict[str, Any]]) -> None:
        if not usage:
            return
        self._has_usage = True
        if usage.get("input_tokens") is not None:
            self._input_tokens = usage["input_tokens"]
        if usage.get("output_tokens") is not None:
            self._output_tokens = usage["output_tokens"]

    def _finish_events(self) -> list[NormalizedEvent]:
        events: list[NormalizedEvent] = []
        for kind, value in self._blocks.values():
            if kind == "tool_use":
                events.append(ToolCallEnd(call_id=value))
            elif kind == "thinking":
                events.append(ThinkingEnd(signature=value or None))
        self._blocks.clear()
        if self._has_usage:
            events.append(
                UsageReport(
                    usage=TokenUsage(
                        prompt_tokens=self._input_tokens,
                        completion_tokens=self._output_tokens,
                    )
                )
            )
        reason = (
            normalize_finish_reason(self._stop_reason)
            if self._stop_reason
            else FinishReason.STOP
        )
        events.append(StreamEnd(finish_reason=reason))
        self.done = True
        return events

    def finish(self) -> list[NormalizedEvent]:
        if self.done:
            return []
        events = self._start()
        if self._stop_reason:
            events.extend(self._finish_events())
        else:
            events.append(StreamError(error="stream ended before message_stop"))
            self.done = True
        return events


class AnthropicAdapter(ProviderAdapter):
    """Adapter for the Anthropic Messages API."""

    provider = "anthropic"

    def __init__(
        self,
        model: str,
        base_url: str = DEFAULT_ANTHROPIC_URL,
        api_key: Optional[str] = None,
        api_version: str = ANTHROPIC_VERSION,
        **kwargs: Any,
    ):
        super().__init__(model=model, base_url=base_url, api_key=api_key, **kwargs)
        self.api_version = api_version

    def _headers(self) -> dict[str, str]:
        headers = {
            "anthropic-version": self.api_version,
            "Accept": "text/event-stream",
        }
        if self._api_key:
            headers["x-api-key"] = self._api_key
        return headers

    def build_request(
        self,
        messages: list[Message],
        tools: list[ToolDefinition],
        options: RequestOptions,
    ) -> dict[str, Any]:
        system, turns = convert_messages(messages)
        body: dict[str, Any] = {
            "model": self.model,
            "messages": turns,
            "max_tokens": options.max_tokens,
            "stream": True,
            "temperature": options.temperature,
            "top_p": options.top_p,
        }
        if system:
            body["system"] = system
        if tools:
            body["tools"] = tools_to_anthropic_format(tools)
        if options.stop_sequences:
            body["stop_sequences"] = list(options.stop_sequences)

        budget = THINKING_BUDGETS.get(options.reasoning_level)
        if budget:
            body["thinking"] = {"type": "enabled", "budget_tokens": budget}
            # Extended thinking needs room beyond the budget and fixed sampling.
            body["max_tokens"] = options.max_tokens + budget
            body.pop("temperature", None)
            body.pop("top_p", None)
        return body

    async def send(
        self,
        messages: list[Message],
        tools: list[ToolDefinition],
        options: RequestOptions,
    ) -> EventStream:
        self._check_conversation(messages)
        body = self.build_request(messages, tools, options)
        url = f"{self.base_url}{MESSAGES_API_PATH}"
        logger.debug("POST %s model=%s tools=%d", url, self.model, len(tools))
        response = await self._open(url, self._headers(), body)
        return self._guarded(response, self._events(response))

    async def _events(self, response: httpx.Response) -> AsyncIterator[NormalizedEvent]:
        request_id = response.headers.get("request-id") or self._generate_id()
        parser = AnthropicStreamParser(self.model, request_id)
        async for sse in aiter_sse(response.aiter_lines()):
            if not sse.data.strip():
                continue
            data = sse.json()
            for event in parser.feed(data.get("type") or sse.event, data):
                yield event
            if parser.done:
                return
        for event in parser.finish():
            yield event
