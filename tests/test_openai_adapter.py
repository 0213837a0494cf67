"""
Tests for the OpenAI-shaped adapter.

Covers:
  - Chat Completions streaming: text, tool calls, usage, thinking
  - Request building per compatibility profile
  - HTTP and transport error mapping
  - Stream failures delivered in-band
  - Non-streamed tool responses and the Responses API
"""

import json

import httpx
import pytest

from llmloop.accumulator import accumulate
from llmloop.adapters.base import AdapterConfig
from llmloop.adapters.openai_adapter import (
    ChatStreamParser,
    OpenAIAdapter,
    messages_to_openai,
    messages_to_responses_input,
    usage_from_openai,
)
from llmloop.adapters.profiles import OPENAI
from llmloop.events import FinishReason, StreamEnd, StreamError, StreamStart, TextDelta
from llmloop.exceptions import (
    AuthError,
    ConfigError,
    ProviderError,
    RateLimitError,
    RequestError,
    RequestTimeoutError,
)
from llmloop.models import (
    AssistantToolCall,
    Message,
    ReasoningLevel,
    RequestOptions,
    ToolDefinition,
)

READ_TOOL = ToolDefinition(
    "read",
    "Read a file",
    {"type": "object", "properties": {"path": {"type": "string"}}, "required": ["path"]},
)


def sse_body(*chunks, done=True) -> bytes:
    body = "".join(f"data: {json.dumps(c)}\n\n" for c in chunks)
    if done:
        body += "data: [DONE]\n\n"
    return body.encode()


def chunk(delta=None, finish_reason=None, **extra):
    data = {
        "id": "chatcmpl-1",
        "model": "gpt-4o",
        "choices": [{"index": 0, "delta": delta or {}, "finish_reason": finish_reason}],
    }
    data.update(extra)
    return data


def make_adapter(handler, **kwargs) -> OpenAIAdapter:
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    kwargs.setdefault("api_key", "sk-test-key-123456")
    return OpenAIAdapter("gpt-4o", base_url="https://api.example.com", client=client, **kwargs)


async def collect(adapter, messages=None, tools=None, options=None):
    stream = await adapter.send(
        messages or [Message.user("Hi")], tools or [], options or RequestOptions()
    )
    async with stream:
        return [event async for event in stream]


# ---------------------------------------------------------------------------
# Streaming
# ---------------------------------------------------------------------------


class TestChatStreaming:
    @pytest.mark.asyncio
    async def test_text_stream(self):
        body = sse_body(
            chunk({"role": "assistant", "content": "Hel"}),
            chunk({"content": "lo"}),
            chunk({}, finish_reason="stop"),
            {"id": "chatcmpl-1", "choices": [], "usage": {"prompt_tokens": 5, "completion_tokens": 2}},
        )
        adapter = make_adapter(lambda request: httpx.Response(200, content=body))
        events = await collect(adapter)

        assert isinstance(events[0], StreamStart)
        assert events[0].request_id == "chatcmpl-1"
        assert events[-1] == StreamEnd(FinishReason.STOP)
        turn = accumulate(events)
        assert turn.text == "Hello"
        assert turn.usage.prompt_tokens == 5
        assert turn.usage.completion_tokens == 2

    @pytest.mark.asyncio
    async def test_tool_call_arguments_split_across_chunks(self):
        body = sse_body(
            chunk(
                {
                    "tool_calls": [
                        {
                            "index": 0,
                            "id": "call_1",
                            "type": "function",
                            "function": {"name": "read", "arguments": '{"pa'},
                        }
                    ]
                }
            ),
            chunk({"tool_calls": [{"index": 0, "function": {"arguments": 'th":"a.txt"}'}}]}),
            chunk({}, finish_reason="tool_calls"),
        )
        adapter = make_adapter(lambda request: httpx.Response(200, content=body))
        turn = accumulate(await collect(adapter, tools=[READ_TOOL]))

        assert turn.finish_reason == FinishReason.TOOL_CALLS
        assert len(turn.tool_calls) == 1
        call = turn.tool_calls[0]
        assert call.call_id == "call_1"
        assert call.function_name == "read"
        assert json.loads(call.arguments_json) == {"path": "a.txt"}

    @pytest.mark.asyncio
    async def test_parallel_tool_calls_keep_order(self):
        body = sse_body(
            chunk(
                {
                    "tool_calls": [
                        {"index": 0, "id": "a", "function": {"name": "read", "arguments": "{}"}},
                        {"index": 1, "id": "b", "function": {"name": "list", "arguments": "{}"}},
                    ]
                }
            ),
            chunk({}, finish_reason="tool_calls"),
        )
        adapter = make_adapter(lambda request: httpx.Response(200, content=body))
        turn = accumulate(await collect(adapter))
        assert [c.call_id for c in turn.tool_calls] == ["a", "b"]

    @pytest.mark.asyncio
    async def test_stop_with_tool_calls_normalized(self):
        body = sse_body(
            chunk({"tool_calls": [{"index": 0, "id": "c", "function": {"name": "read", "arguments": "{}"}}]}),
            chunk({}, finish_reason="stop"),
        )
        adapter = make_adapter(lambda request: httpx.Response(200, content=body))
        turn = accumulate(await collect(adapter))
        assert turn.finish_reason == FinishReason.TOOL_CALLS

    @pytest.mark.asyncio
    async def test_reasoning_content_becomes_thinking(self):
        body = sse_body(
            chunk({"reasoning_content": "let me think"}),
            chunk({"content": "42"}),
            chunk({}, finish_reason="stop"),
        )
        adapter = make_adapter(lambda request: httpx.Response(200, content=body), profile="deepseek")
        turn = accumulate(await collect(adapter))
        assert turn.thinking == "let me think"
        assert turn.text == "42"

    @pytest.mark.asyncio
    async def test_truncated_stream_ends_with_error(self):
        body = sse_body(chunk({"content": "partial"}), done=False)
        adapter = make_adapter(lambda request: httpx.Response(200, content=body))
        events = await collect(adapter)
        assert isinstance(events[-1], StreamError)
        turn = accumulate(events)
        assert turn.text == "partial"
        assert not turn.is_complete

    @pytest.mark.asyncio
    async def test_malformed_chunk_ends_with_error(self):
        body = b'data: {"id": "x", "choices": [{"delta": {"content": "ok"}}]}\n\ndata: {broken\n\n'
        adapter = make_adapter(lambda request: httpx.Response(200, content=body))
        events = await collect(adapter)
        assert TextDelta("ok") in events
        assert isinstance(events[-1], StreamError)
        assert "malformed" in events[-1].error

    @pytest.mark.asyncio
    async def test_error_chunk_in_stream(self):
        body = sse_body({"error": {"message": "model overloaded"}}, done=False)
        adapter = make_adapter(lambda request: httpx.Response(200, content=body))
        events = await collect(adapter)
        assert isinstance(events[0], StreamStart)
        assert events[-1] == StreamError("model overloaded")
        assert sum(isinstance(e, StreamError) for e in events) == 1

    @pytest.mark.asyncio
    async def test_on_token_hook(self):
        tokens = []
        body = sse_body(chunk({"content": "a"}), chunk({"content": "b"}), chunk({}, finish_reason="stop"))
        adapter = make_adapter(
            lambda request: httpx.Response(200, content=body),
            config=AdapterConfig(on_token=lambda token, request_id: tokens.append(token)),
        )
        await collect(adapter)
        assert tokens == ["a", "b"]

    @pytest.mark.asyncio
    async def test_failing_hook_does_not_break_stream(self):
        def explode(token, request_id):
            raise RuntimeError("hook bug")

        body = sse_body(chunk({"content": "a"}), chunk({}, finish_reason="stop"))
        adapter = make_adapter(
            lambda request: httpx.Response(200, content=body),
            config=AdapterConfig(on_token=explode),
        )
        events = await collect(adapter)
        assert events[-1] == StreamEnd(FinishReason.STOP)


# ---------------------------------------------------------------------------
# Request building
# ---------------------------------------------------------------------------


class TestBuildRequest:
    def test_openai_body(self):
        adapter = OpenAIAdapter("gpt-4o", api_key="k")
        body = adapter.build_request(
            [Message.system("sys"), Message.user("hi")],
            [READ_TOOL],
            RequestOptions(stop_sequences=("END",)),
        )
        assert body["stream"] is True
        assert body["stream_options"] == {"include_usage": True}
        assert body["stop"] == ["END"]
        assert body["tools"][0]["function"]["name"] == "read"
        assert body["messages"][0] == {"role": "system", "content": "sys"}

    def test_o1_style_reasoning(self):
        adapter = OpenAIAdapter("o3-mini", profile=OPENAI)
        body = adapter.build_request(
            [Message.user("hi")], [], RequestOptions(reasoning_level=ReasoningLevel.HIGH)
        )
        assert body["reasoning_effort"] == "high"
        assert "temperature" not in body
        assert "top_p" not in body

    def test_zai_profile(self):
        adapter = OpenAIAdapter("glm-4", profile="zai")
        body = adapter.build_request([Message.user("hi")], [], RequestOptions(max_tokens=99))
        assert body["max_completion_tokens"] == 99
        assert "max_tokens" not in body
        assert "stream_options" not in body

    def test_no_streaming_tools_profile(self):
        adapter = OpenAIAdapter("m", profile="minimax")
        body = adapter.build_request([Message.user("hi")], [READ_TOOL], RequestOptions())
        assert body["stream"] is False
        body = adapter.build_request([Message.user("hi")], [], RequestOptions())
        assert body["stream"] is True

    def test_unknown_api_mode(self):
        with pytest.raises(ConfigError):
            OpenAIAdapter("gpt-4o", api_mode="legacy")

    def test_profile_from_adapter_name(self):
        adapter = OpenAIAdapter("llama3", base_url="http://localhost:11434", name="ollama")
        assert adapter.profile.name == "ollama"

    def test_messages_to_openai_tool_round_trip(self):
        messages = [
            Message.assistant("", [AssistantToolCall("c1", "read", "")]),
            Message.tool_result("c1", "contents"),
        ]
        wire = messages_to_openai(messages)
        assert wire[0]["content"] is None
        assert wire[0]["tool_calls"][0]["function"]["arguments"] == "{}"
        assert wire[1] == {"role": "tool", "tool_call_id": "c1", "content": "contents"}

    def test_messages_to_responses_input(self):
        items = messages_to_responses_input(
            [
                Message.system("rules"),
                Message.assistant("", [AssistantToolCall("c1", "read", '{"path": "x"}')]),
                Message.tool_result("c1", "data"),
            ]
        )
        assert items[0] == {"role": "developer", "content": "rules"}
        assert items[1]["type"] == "function_call"
        assert items[2] == {"type": "function_call_output", "call_id": "c1", "output": "data"}

    def test_usage_reasoning_split_out(self):
        usage = usage_from_openai(
            {
                "prompt_tokens": 10,
                "completion_tokens": 50,
                "completion_tokens_details": {"reasoning_tokens": 30},
            }
        )
        assert usage.completion_tokens == 20
        assert usage.reasoning_tokens == 30
        assert usage.total == 60

    @pytest.mark.asyncio
    async def test_sends_auth_header_and_path(self):
        seen = {}

        def handler(request):
            seen["url"] = str(request.url)
            seen["auth"] = request.headers.get("authorization")
            seen["body"] = json.loads(request.content)
            return httpx.Response(200, content=sse_body(chunk({}, finish_reason="stop")))

        await collect(make_adapter(handler))
        assert seen["url"] == "https://api.example.com/v1/chat/completions"
        assert seen["auth"] == "Bearer sk-test-key-123456"
        assert seen["body"]["model"] == "gpt-4o"

    @pytest.mark.asyncio
    async def test_empty_conversation_rejected(self):
        adapter = make_adapter(lambda request: httpx.Response(200))
        with pytest.raises(RequestError):
            await adapter.send([], [], RequestOptions())


# ---------------------------------------------------------------------------
# Error mapping
# ---------------------------------------------------------------------------


class TestErrorMapping:
    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "status,error_cls",
        [
            (400, RequestError),
            (401, AuthError),
            (403, AuthError),
            (404, RequestError),
            (408, RequestTimeoutError),
            (429, RateLimitError),
            (500, ProviderError),
            (503, ProviderError),
        ],
    )
    async def test_status_codes(self, status, error_cls):
        adapter = make_adapter(
            lambda request: httpx.Response(status, json={"error": {"message": "nope"}})
        )
        with pytest.raises(error_cls) as exc_info:
            await adapter.send([Message.user("hi")], [], RequestOptions())
        assert exc_info.value.status_code == status
        assert "nope" in exc_info.value.message

    @pytest.mark.asyncio
    async def test_retry_after_header(self):
        adapter = make_adapter(
            lambda request: httpx.Response(429, headers={"retry-after": "3"}, text="slow down")
        )
        with pytest.raises(RateLimitError) as exc_info:
            await adapter.send([Message.user("hi")], [], RequestOptions())
        assert exc_info.value.retry_after == 3.0

    @pytest.mark.asyncio
    async def test_error_body_secrets_redacted(self):
        adapter = make_adapter(
            lambda request: httpx.Response(
                401, json={"error": {"message": "Invalid key sk-abcdefghijklmnop"}}
            )
        )
        with pytest.raises(AuthError) as exc_info:
            await adapter.send([Message.user("hi")], [], RequestOptions())
        assert "sk-abcdefghijklmnop" not in exc_info.value.message

    @pytest.mark.asyncio
    async def test_connect_error(self):
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        with pytest.raises(ProviderError):
            await make_adapter(handler).send([Message.user("hi")], [], RequestOptions())

    @pytest.mark.asyncio
    async def test_timeout(self):
        def handler(request):
            raise httpx.ReadTimeout("too slow", request=request)

        with pytest.raises(RequestTimeoutError):
            await make_adapter(handler).send([Message.user("hi")], [], RequestOptions())

    @pytest.mark.asyncio
    async def test_on_error_hook(self):
        seen = []
        adapter = make_adapter(
            lambda request: httpx.Response(500, text="boom"),
            config=AdapterConfig(on_error=lambda error, ctx: seen.append((error, ctx))),
        )
        with pytest.raises(ProviderError):
            await adapter.send([Message.user("hi")], [], RequestOptions())
        assert isinstance(seen[0][0], ProviderError)
        assert seen[0][1]["model"] == "gpt-4o"


# ---------------------------------------------------------------------------
# Non-streamed responses
# ---------------------------------------------------------------------------


class TestNonStreamed:
    @pytest.mark.asyncio
    async def test_minimax_tool_response(self):
        payload = {
            "id": "resp-1",
            "model": "abab",
            "choices": [
                {
                    "index": 0,
                    "message": {
                        "role": "assistant",
                        "content": None,
                        "tool_calls": [
                            {
                                "id": "call_9",
                                "type": "function",
                                "function": {"name": "read", "arguments": '{"path": "b"}'},
                            }
                        ],
                    },
                    "finish_reason": "tool_calls",
                }
            ],
            "usage": {"prompt_tokens": 3, "completion_tokens": 4},
        }
        adapter = make_adapter(lambda request: httpx.Response(200, json=payload), profile="minimax")
        turn = accumulate(await collect(adapter, tools=[READ_TOOL]))
        assert turn.finish_reason == FinishReason.TOOL_CALLS
        assert turn.tool_calls[0].call_id == "call_9"
        assert json.loads(turn.tool_calls[0].arguments_json) == {"path": "b"}
        assert turn.usage.completion_tokens == 4


class TestChatStreamParser:
    def test_finish_without_chunks(self):
        parser = ChatStreamParser(OPENAI, "gpt-4o", "req")
        events = parser.finish()
        assert isinstance(events[0], StreamStart)
        assert isinstance(events[-1], StreamError)


# ---------------------------------------------------------------------------
# Responses API
# ---------------------------------------------------------------------------


def responses_sse(*events) -> bytes:
    return "".join(
        f"event: {e['type']}\ndata: {json.dumps(e)}\n\n" for e in events
    ).encode()


class TestResponsesApi:
    @pytest.mark.asyncio
    async def test_text_and_tool_call(self):
        body = responses_sse(
            {"type": "response.created", "response": {"id": "resp_1", "model": "gpt-4.1"}},
            {"type": "response.output_text.delta", "delta": "Checking"},
            {
                "type": "response.output_item.added",
                "item": {"type": "function_call", "id": "fc_1", "call_id": "call_1", "name": "read"},
            },
            {"type": "response.function_call_arguments.delta", "item_id": "fc_1", "delta": '{"path":'},
            {"type": "response.function_call_arguments.delta", "item_id": "fc_1", "delta": '"a"}'},
            {
                "type": "response.output_item.done",
                "item": {"type": "function_call", "id": "fc_1", "call_id": "call_1", "arguments": '{"path":"a"}'},
            },
            {
                "type": "response.completed",
                "response": {"usage": {"input_tokens": 7, "output_tokens": 3}},
            },
        )
        seen = {}

        def handler(request):
            seen["url"] = str(request.url)
            return httpx.Response(200, content=body)

        adapter = make_adapter(handler, api_mode="responses")
        turn = accumulate(await collect(adapter, tools=[READ_TOOL]))

        assert seen["url"].endswith("/v1/responses")
        assert turn.request_id == "resp_1"
        assert turn.text == "Checking"
        assert turn.finish_reason == FinishReason.TOOL_CALLS
        assert turn.tool_calls[0].call_id == "call_1"
        assert turn.tool_calls[0].arguments_json == '{"path":"a"}'
        assert turn.usage.prompt_tokens == 7

    @pytest.mark.asyncio
    async def test_incomplete_max_tokens(self):
        body = responses_sse(
            {"type": "response.output_text.delta", "delta": "cut"},
            {
                "type": "response.incomplete",
                "response": {"incomplete_details": {"reason": "max_output_tokens"}},
            },
        )
        adapter = make_adapter(lambda request: httpx.Response(200, content=body), api_mode="responses")
        turn = accumulate(await collect(adapter))
        assert turn.finish_reason == FinishReason.LENGTH

    @pytest.mark.asyncio
    async def test_failed_response(self):
        body = responses_sse(
            {"type": "response.failed", "response": {"error": {"message": "server exploded"}}},
        )
        adapter = make_adapter(lambda request: httpx.Response(200, content=body), api_mode="responses")
        events = await collect(adapter)
        assert events[-1] == StreamError("server exploded")
