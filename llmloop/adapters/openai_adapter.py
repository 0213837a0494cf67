"""OpenAI-shaped provider adapter.

One adapter serves OpenAI itself and every vendor that speaks the Chat
Completions wire format (z.ai, DeepSeek, MiniMax, Ollama, llama.cpp, vLLM,
...). Vendor differences live in a ``CompatibilityProfile``; the adapter
consults it when building requests and when interpreting responses.

Supports both the Chat Completions API (``api_mode="chat"``, the default)
and the Responses API (``api_mode="responses"``).

Example:
    from llmloop.adapters import OpenAIAdapter
    from llmloop.models import Message, RequestOptions

    adapter = OpenAIAdapter(
        model="deepseek-chat",
        base_url="https://api.deepseek.com",
        api_key=api_key,
        profile="deepseek",
    )
    stream = await adapter.send([Message.user("Hello")], [], RequestOptions())
    async with stream:
        async for event in stream:
            print(event)
"""

import json
import logging
from typing import Any, AsyncIterator, Optional, Union

import httpx

from llmloop.adapters.base import ProviderAdapter, extract_error_message
from llmloop.adapters.profiles import (
    CompatibilityProfile,
    ReasoningMode,
    ToolCallFormat,
    apply_profile_to_request,
    normalize_finish_reason,
    resolve_profile,
)
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
from llmloop.exceptions import ConfigError
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

logger = logging.getLogger("llmloop.adapters.openai")

DEFAULT_OPENAI_URL = "https://api.openai.com"
RESPONSES_API_PATH = "/v1/responses"
API_MODES = ("chat", "responses")


def tools_to_openai_format(tools: list[ToolDefinition]) -> list[dict[str, Any]]:
    """Convert tool definitions to OpenAI function-calling format."""
    return [
        {
            "type": "function",
            "function": {
                "name": t.name,
                "description": t.description,
                "parameters": t.json_schema,
            },
        }
        for t in tools
    ]


def messages_to_openai(messages: list[Message]) -> list[dict[str, Any]]:
    """Serialize a conversation into Chat Completions messages."""
    result: list[dict[str, Any]] = []
    for m in messages:
        if m.role == Role.TOOL:
            result.append(
                {"role": "tool", "tool_call_id": m.tool_call_id, "content": m.content}
            )
        elif m.role == Role.ASSISTANT and m.tool_calls:
            result.append(
                {
                    "role": "assistant",
                    "content": m.content or None,
                    "tool_calls": [
                        {
                            "id": tc.call_id,
                            "type": "function",
                            "function": {
                                "name": tc.function_name,
                                "arguments": tc.arguments_json or "{}",
                            },
                        }
                        for tc in m.tool_calls
                    ],
                }
            )
        else:
            result.append({"role": m.role.value, "content": m.content})
    return result


def messages_to_responses_input(messages: list[Message]) -> list[dict[str, Any]]:
    """Serialize a conversation into Responses API input items."""
    items: list[dict[str, Any]] = []
    for m in messages:
        if m.role == Role.SYSTEM:
            items.append({"role": "developer", "content": m.content})
        elif m.role == Role.TOOL:
            items.append(
                {
                    "type": "function_call_output",
                    "call_id": m.tool_call_id,
                    "output": m.content,
                }
            )
        else:
            if m.content or not m.tool_calls:
                items.append({"role": m.role.value, "content": m.content})
            for tc in m.tool_calls:
                items.append(
                    {
                        "type": "function_call",
                        "call_id": tc.call_id,
                        "name": tc.function_name,
                        "arguments": tc.arguments_json or "{}",
                    }
                )
    return items


def usage_from_openai(data: dict[str, Any]) -> TokenUsage:
    """Read a Chat Completions or Responses usage object.

    OpenAI counts reasoning tokens inside the completion count; they are
    split out here so ``TokenUsage.total`` does not count them twice.
    """
    prompt = data.get("prompt_tokens", data.get("input_tokens", 0)) or 0
    completion = data.get("completion_tokens", data.get("output_tokens", 0)) or 0
    details = (
        data.get("completion_tokens_details") or data.get("output_tokens_details") or {}
    )
    reasoning = details.get("reasoning_tokens")
    if reasoning:
        completion = max(0, completion - reasoning)
    return TokenUsage(
        prompt_tokens=prompt,
        completion_tokens=completion,
        reasoning_tokens=reasoning or None,
    )


class ToolCallAccumulator:
    """Tracks streamed tool calls by their ``index``.

    Emits ToolCallStart the first time an index appears, then one
    ToolCallArgsDelta per argument fragment. ``finish_all`` closes every
    open call in index order.
    """

    def __init__(self) -> None:
        self._calls: dict[int, str] = {}
        self._open: set[int] = set()

    @property
    def seen_any(self) -> bool:
        return bool(self._calls)

    @property
    def has_open(self) -> bool:
        return bool(self._open)

    def _index_for(self, tc: dict[str, Any]) -> int:
        index = tc.get("index")
        if isinstance(index, int):
            return index
        call_id = tc.get("id")
        for known_index, known_id in self._calls.items():
            if call_id and known_id == call_id:
                return known_index
        if call_id or not self._calls:
            return len(self._calls)
        return max(self._calls)

    def push(self, tc: dict[str, Any]) -> list[NormalizedEvent]:
        events: list[NormalizedEvent] = []
        index = self._index_for(tc)
        function = tc.get("function") or {}

        if index not in self._calls:
            call_id = tc.get("id") or f"call_{index}"
            self._calls[index] = call_id
            self._open.add(index)
            events.append(
                ToolCallStart(call_id=call_id, function_name=function.get("name") or "")
            )

        arguments = function.get("arguments")
        if isinstance(arguments, (dict, list)):
            arguments = json.dumps(arguments)
        if arguments:
            events.append(ToolCallArgsDelta(call_id=self._calls[index], fragment=arguments))
        return events

    def finish_all(self) -> list[NormalizedEvent]:
        events: list[NormalizedEvent] = [
            ToolCallEnd(call_id=self._calls[index]) for index in sorted(self._open)
        ]
        self._open.clear()
        return events


class ChatStreamParser:
    """Translates Chat Completions chunks into normalized events.

    Pure state machine: feed decoded chunk dicts, then call ``finish`` at
    end of body (or ``[DONE]``). Non-streamed responses are fed as a single
    chunk whose choices carry ``message`` instead of ``delta``.
    """

    def __init__(self, profile: CompatibilityProfile, model: str, request_id: str):
        self.profile = profile
        self.model = model
        self.request_id = request_id
        self.failed = False
        self._started = False
        self._thinking = False
        self._finish_reason: Optional[str] = None
        self._tool_calls = ToolCallAccumulator()

    def _start(self, chunk: dict[str, Any]) -> list[NormalizedEvent]:
        if self._started:
            return []
        self._started = True
        self.request_id = chunk.get("id") or self.request_id
        return [
            StreamStart(
                request_id=self.request_id,
                model=ModelReference(chunk.get("model") or self.model),
            )
        ]

    def _end_thinking(self) -> list[NormalizedEvent]:
        if not self._thinking:
            return []
        self._thinking = False
        return [ThinkingEnd()]

    def feed(self, chunk: dict[str, Any]) -> list[NormalizedEvent]:
        events = self._start(chunk)

        if chunk.get("error"):
            self.failed = True
            events.extend(self._end_thinking())
            events.append(
                StreamError(error=redact(extract_error_message(json.dumps(chunk))))
            )
            return events

        for choice in chunk.get("choices") or []:
            delta = choice.get("delta") or choice.get("message") or {}

            reasoning = delta.get("reasoning_content")
            if reasoning:
                if not self._thinking:
                    self._thinking = True
                    events.append(ThinkingStart())
                events.append(ThinkingDelta(text=reasoning))

            content = delta.get("content")
            if content:
                events.extend(self._end_thinking())
                events.append(TextDelta(text=content))

            for tc in delta.get("tool_calls") or []:
                events.extend(self._end_thinking())
                events.extend(self._tool_calls.push(tc))

            if choice.get("finish_reason"):
                self._finish_reason = choice["finish_reason"]
                events.extend(self._end_thinking())
                events.extend(self._tool_calls.finish_all())

        usage = chunk.get("usage")
        if usage:
            events.append(UsageReport(usage=usage_from_openai(usage)))

        return events

    def finish(self) -> list[NormalizedEvent]:
        if self.failed:
            return []
        events = self._start({})
        events.extend(self._end_thinking())

        if self._finish_reason is None:
            events.append(StreamError(error="stream ended before a finish reason"))
            return events

        events.extend(self._tool_calls.finish_all())
        reason = normalize_finish_reason(self._finish_reason, self.profile)
        # Some local servers report "stop" for a turn that requested tools.
        if reason == FinishReason.STOP and self._tool_calls.seen_any:
            reason = FinishReason.TOOL_CALLS
        events.append(StreamEnd(finish_reason=reason))
        return events


class ResponsesStreamParser:
    """Translates Responses API stream events into normalized events."""

    def __init__(self, model: str, request_id: str):
        self.model = model
        self.request_id = request_id
        self.done = False
        self._started = False
        self._thinking = False
        self._call_ids: dict[str, str] = {}
        self._args_streamed: set[str] = set()
        self._open_calls: list[str] = []

    def _start(self, response: Optional[dict[str, Any]] = None) -> list[NormalizedEvent]:
        if self._started:
            return []
        self._started = True
        response = response or {}
        self.request_id = response.get("id") or self.request_id
        return [
            StreamStart(
                request_id=self.request_id,
                model=ModelReference(response.get("model") or self.model),
            )
        ]

    def _end_thinking(self) -> list[NormalizedEvent]:
        if not self._thinking:
            return []
        self._thinking = False
        return [ThinkingEnd()]

    def feed(self, event_type: str, data: dict[str, Any]) -> list[NormalizedEvent]:
        if event_type == "response.created":
            return self._start(data.get("response"))

        events = self._start()

        if event_type == "response.output_text.delta":
            events.extend(self._end_thinking())
            events.append(TextDelta(text=data.get("delta", "")))

        elif event_type == "response.reasoning_summary_text.delta":
            if not self._thinking:
                self._thinking = True
                events.append(ThinkingStart())
            events.append(ThinkingDelta(text=data.get("delta", "")))

        elif event_type == "response.output_item.added":
            item = data.get("item") or {}
            if item.get("type") == "function_call":
                events.extend(self._end_thinking())
                call_id = item.get("call_id") or item.get("id") or ""
                self._call_ids[item.get("id") or call_id] = call_id
                self._open_calls.append(call_id)
                events.append(
                    ToolCallStart(call_id=call_id, function_name=item.get("name", ""))
                )

        elif event_type == "response.function_call_arguments.delta":
            call_id = self._call_ids.get(data.get("item_id", ""))
            if call_id and data.get("delta"):
                self._args_streamed.add(call_id)
                events.append(ToolCallArgsDelta(call_id=call_id, fragment=data["delta"]))

        elif event_type == "response.output_item.done":
            item = data.get("item") or {}
            call_id = self._call_ids.get(item.get("id") or item.get("call_id") or "")
            if item.get("type") == "function_call" and call_id in self._open_calls:
                if call_id not in self._args_streamed and item.get("arguments"):
                    events.append(
                        ToolCallArgsDelta(call_id=call_id, fragment=item["arguments"])
                    )
                self._open_calls.remove(call_id)
                events.append(ToolCallEnd(call_id=call_id))

        elif event_type in ("response.completed", "response.incomplete"):
            response = data.get("response") or {}
            events.extend(self._end_thinking())
            events.extend(ToolCallEnd(call_id=c) for c in self._open_calls)
            self._open_calls = []
            if response.get("usage"):
                events.append(UsageReport(usage=usage_from_openai(response["usage"])))
            events.append(StreamEnd(finish_reason=self._finish_reason(event_type, response)))
            self.done = True

        elif event_type in ("response.failed", "error"):
            response = data.get("response") or {}
            error = response.get("error") or data.get("error") or data
            message = error.get("message") if isinstance(error, dict) else str(error)
            events.extend(self._end_thinking())
            events.append(StreamError(error=redact(message or "response failed")))
            self.done = True

        return events

    def _finish_reason(self, event_type: str, response: dict[str, Any]) -> FinishReason:
        if event_type == "response.incomplete":
            details = response.get("incomplete_details") or {}
            if details.get("reason") == "max_output_tokens":
                return FinishReason.LENGTH
            if details.get("reason") == "content_filter":
                return FinishReason.CONTENT_FILTER
            return FinishReason.OTHER
        if self._call_ids:
            return FinishReason.TOOL_CALLS
        return FinishReason.STOP

    def finish(self) -> list[NormalizedEvent]:
        if self.done:
            return []
        events = self._start()
        events.append(StreamError(error="stream ended before response.completed"))
        return events


class OpenAIAdapter(ProviderAdapter):
    """Generic adapter for OpenAI-compatible endpoints."""

    provider = "openai"

    def __init__(
        self,
        model: str,
        base_url: str = DEFAULT_OPENAI_URL,
        api_key: Optional[str] = None,
        profile: Union[CompatibilityProfile, str, None] = None,
        api_mode: str = "chat",
        **kwargs: Any,
    ):
        """Initialize the adapter.

        Args:
            model: Model identifier.
            base_url: Endpoint root, e.g. ``http://localhost:11434``.
            api_key: Resolved bearer credential, optional for local servers.
            profile: Compatibility profile or vendor name. Unknown names fall
                back to the strict OpenAI profile.
            api_mode: ``"chat"`` for Chat Completions or ``"responses"``.
            **kwargs: Passed to ProviderAdapter (name, config, client, timeout).
        """
        if api_mode not in API_MODES:
            raise ConfigError(f"unknown api_mode '{api_mode}', expected one of {API_MODES}")
        super().__init__(model=model, base_url=base_url, api_key=api_key, **kwargs)
        if isinstance(profile, CompatibilityProfile):
            self.profile = profile
        else:
            self.profile = resolve_profile(profile or self._name)
        self.api_mode = api_mode

    def _headers(self, stream: bool) -> dict[str, str]:
        headers = {"Accept": "text/event-stream" if stream else "application/json"}
        if self._api_key:
            headers["Authorization"] = f"Bearer {self._api_key}"
        return headers

    def _should_stream(self, tools: list[ToolDefinition], options: RequestOptions) -> bool:
        if not options.stream or not self.profile.supports_streaming:
            return False
        if tools and self.profile.tool_call_format == ToolCallFormat.NO_STREAMING:
            return False
        return True

    def build_request(
        self,
        messages: list[Message],
        tools: list[ToolDefinition],
        options: RequestOptions,
    ) -> dict[str, Any]:
        """Build the Chat Completions body with the profile applied."""
        stream = self._should_stream(tools, options)
        body: dict[str, Any] = {
            "model": self.model,
            "messages": messages_to_openai(messages),
            "stream": stream,
            "max_tokens": options.max_tokens,
            "temperature": options.temperature,
            "top_p": options.top_p,
        }
        if stream and self.profile.supports_stream_usage:
            body["stream_options"] = {"include_usage": True}
        if options.stop_sequences:
            body["stop"] = list(options.stop_sequences)

        if tools:
            if self.profile.tool_call_format == ToolCallFormat.UNSUPPORTED:
                logger.warning(
                    "Profile '%s' does not support tools; %d tool(s) omitted",
                    self.profile.name,
                    len(tools),
                )
            else:
                body["tools"] = tools_to_openai_format(tools)

        if (
            options.reasoning_level != ReasoningLevel.OFF
            and self.profile.reasoning_mode == ReasoningMode.OPENAI_O1_STYLE
        ):
            body["reasoning_effort"] = options.reasoning_level.value
            body.pop("temperature", None)
            body.pop("top_p", None)

        return apply_profile_to_request(body, self.profile)

    def build_responses_request(
        self,
        messages: list[Message],
        tools: list[ToolDefinition],
        options: RequestOptions,
    ) -> dict[str, Any]:
        """Build a Responses API body."""
        body: dict[str, Any] = {
            "model": self.model,
            "input": messages_to_responses_input(messages),
            "stream": options.stream,
            "max_output_tokens": options.max_tokens,
            "temperature": options.temperature,
            "top_p": options.top_p,
        }
        if tools:
            body["tools"] = [
                {
                    "type": "function",
                    "name": t.name,
                    "description": t.description,
                    "parameters": t.json_schema,
                }
                for t in tools
            ]
        if options.reasoning_level != ReasoningLevel.OFF:
            body["reasoning"] = {"effort": options.reasoning_level.value}
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

        if self.api_mode == "responses":
            body = self.build_responses_request(messages, tools, options)
            url = f"{self.base_url}{RESPONSES_API_PATH}"
        else:
            body = self.build_request(messages, tools, options)
            url = f"{self.base_url}{self.profile.api_path}"

        stream = bool(body.get("stream"))
        logger.debug(
            "POST %s model=%s stream=%s tools=%d", url, self.model, stream, len(tools)
        )
        response = await self._open(url, self._headers(stream), body)

        if self.api_mode == "responses":
            events = (
                self._responses_events(response)
                if stream
                else self._responses_body_events(response)
            )
        else:
            events = self._chat_events(response) if stream else self._chat_body_events(response)
        return self._guarded(response, events)

    async def _chat_events(self, response: httpx.Response) -> AsyncIterator[NormalizedEvent]:
        parser = ChatStreamParser(self.profile, self.model, self._request_id(response))
        async for sse in aiter_sse(response.aiter_lines()):
            if sse.is_done:
                break
            if not sse.data.strip():
                continue
            for event in parser.feed(sse.json()):
                yield event
            if parser.failed:
                return
        for event in parser.finish():
            yield event

    async def _chat_body_events(
        self, response: httpx.Response
    ) -> AsyncIterator[NormalizedEvent]:
        parser = ChatStreamParser(self.profile, self.model, self._request_id(response))
        data = json.loads(await response.aread())
        for event in parser.feed(data):
            yield event
        for event in parser.finish():
            yield event

    async def _responses_events(
        self, response: httpx.Response
    ) -> AsyncIterator[NormalizedEvent]:
        parser = ResponsesStreamParser(self.model, self._request_id(response))
        async for sse in aiter_sse(response.aiter_lines()):
            if sse.is_done or not sse.data.strip():
                continue
            data = sse.json()
            for event in parser.feed(data.get("type") or sse.event, data):
                yield event
            if parser.done:
                return
        for event in parser.finish():
            yield event

    async def _responses_body_events(
        self, response: httpx.Response
    ) -> AsyncIterator[NormalizedEvent]:
        parser = ResponsesStreamParser(self.model, self._request_id(response))
        data = json.loads(await response.aread())
        for event in parser.feed("response.created", {"response": data}):
            yield event
        for item in data.get("output") or []:
            if item.get("type") == "message":
                for part in item.get("content") or []:
                    if part.get("type") == "output_text":
                        for event in parser.feed(
                            "response.output_text.delta", {"delta": part.get("text", "")}
                        ):
                            yield event
            elif item.get("type") == "function_call":
                for event in parser.feed("response.output_item.added", {"item": item}):
                    yield event
                for event in parser.feed("response.output_item.done", {"item": item}):
                    yield event
        status = "response.incomplete" if data.get("status") == "incomplete" else "response.completed"
        for event in parser.feed(status, {"response": data}):
            yield event

    def _request_id(self, response: httpx.Response) -> str:
        return response.headers.get("x-request-id") or self._generate_id()
