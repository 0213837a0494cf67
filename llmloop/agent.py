"""
llmloop - The agent loop: send, accumulate, execute tools, repeat.

Each turn sends the whole conversation through the resilience layer,
reduces the resulting event stream into an ``AccumulatedTurn`` and either
runs the requested tools and loops, or stops. A run always ends with an
``AgentLoopResult`` carrying a ``StopReason``; provider failures, timeouts
and cancellation are reported there instead of being raised.

Usage:
    ```python
    from llmloop import AgentConfig, AgentLoop, OpenAIAdapter, ToolRegistry

    loop = AgentLoop(
        OpenAIAdapter("gpt-4o", api_key="..."),
        registry,
        AgentConfig(max_turns=10, system_prompt="You are a careful assistant."),
    )
    result = await loop.run("Summarise README.md")
    print(result.stop_reason, result.final_text)
    ```
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Callable, Optional, Union

from .accumulator import AccumulatedTurn, StreamAccumulator
from .adapters.base import ProviderAdapter
from .cancellation import CancellationToken
from .events import EventStream, FinishReason
from .exceptions import LLMLoopError, RunCancelledError
from .executor import ExecutedToolCall, ToolExecutor
from .models import (
    CostEstimate,
    Message,
    RequestOptions,
    Role,
    TokenPricing,
    TokenUsage,
)
from .observability import LifecycleKind, Observer
from .resilience import CircuitBreakerRegistry, ResilientProvider, RetryPolicy
from .tools import DEFAULT_MAX_BYTES, ToolRegistry, sanitize_tool_output

logger = logging.getLogger("llmloop.agent")

TOOL_TEMPERATURE = 0.2


@dataclass(frozen=True)
class AgentConfig:
    """Limits and prompt for one agent run.

    Exceeding ``max_turns`` or ``max_tool_calls_per_turn`` ends the run with
    the matching ``StopReason``; it is not an error.
    """

    max_turns: int = 25
    max_tool_calls_per_turn: int = 10
    request_timeout: float = 120.0
    tool_timeout: float = 30.0
    system_prompt: Optional[str] = None
    max_tool_output_bytes: int = DEFAULT_MAX_BYTES


class StopReason(str, Enum):
    """Why a run ended."""

    COMPLETE = "complete"
    MAX_TURNS = "max_turns"
    MAX_TOOL_CALLS = "max_tool_calls"
    CANCELLED = "cancelled"
    ERROR = "error"


@dataclass
class TurnResult:
    """One provider round-trip and the tools it triggered."""

    text: str = ""
    thinking: str = ""
    tool_calls: list[ExecutedToolCall] = field(default_factory=list)
    finish_reason: FinishReason = FinishReason.OTHER
    usage: TokenUsage = field(default_factory=TokenUsage)
    request_id: Optional[str] = None
    duration_ms: int = 0
    error: Optional[str] = None

    @classmethod
    def from_turn(cls, turn: AccumulatedTurn, duration_ms: int = 0) -> "TurnResult":
        return cls(
            text=turn.text,
            thinking=turn.thinking,
            finish_reason=turn.finish_reason,
            usage=turn.usage or TokenUsage(),
            request_id=turn.request_id,
            duration_ms=duration_ms,
            error=turn.error,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "text": self.text,
            "thinking": self.thinking,
            "tool_calls": [tc.to_dict() for tc in self.tool_calls],
            "finish_reason": self.finish_reason.value,
            "usage": self.usage.to_dict(),
            "request_id": self.request_id,
            "duration_ms": self.duration_ms,
            "error": self.error,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "TurnResult":
        return cls(
            text=data.get("text", ""),
            thinking=data.get("thinking", ""),
            tool_calls=[ExecutedToolCall.from_dict(tc) for tc in data.get("tool_calls", [])],
            finish_reason=FinishReason(data.get("finish_reason", "other")),
            usage=TokenUsage.from_dict(data.get("usage") or {}),
            request_id=data.get("request_id"),
            duration_ms=data.get("duration_ms", 0),
            error=data.get("error"),
        )


@dataclass
class AgentLoopResult:
    """Outcome of a run, or a snapshot of one in progress.

    ``stop_reason`` is ``None`` only in checkpoints taken before the run
    ended. ``messages`` is the full conversation, ready to be persisted and
    resumed with :meth:`AgentLoop.run_continuation`.
    """

    turns: list[TurnResult] = field(default_factory=list)
    final_text: str = ""
    total_usage: TokenUsage = field(default_factory=TokenUsage)
    stop_reason: Optional[StopReason] = None
    error: Optional[str] = None
    messages: list[Message] = field(default_factory=list)
    cost: Optional[CostEstimate] = None

    @property
    def is_finished(self) -> bool:
        return self.stop_reason is not None

    @property
    def tool_call_count(self) -> int:
        return sum(len(t.tool_calls) for t in self.turns)

    def to_dict(self) -> dict[str, Any]:
        return {
            "turns": [t.to_dict() for t in self.turns],
            "final_text": self.final_text,
            "total_usage": self.total_usage.to_dict(),
            "stop_reason": self.stop_reason.value if self.stop_reason else None,
            "error": self.error,
            "messages": [m.to_dict() for m in self.messages],
            "cost_usd": self.cost.usd if self.cost else None,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "AgentLoopResult":
        stop_reason = data.get("stop_reason")
        return cls(
            turns=[TurnResult.from_dict(t) for t in data.get("turns", [])],
            final_text=data.get("final_text", ""),
            total_usage=TokenUsage.from_dict(data.get("total_usage") or {}),
            stop_reason=StopReason(stop_reason) if stop_reason else None,
            error=data.get("error"),
            messages=[Message.from_dict(m) for m in data.get("messages", [])],
        )


def drop_unanswered_tool_calls(messages: list[Message]) -> list[Message]:
    """Remove assistant tool calls that never received a tool result.

    A run cancelled mid-batch leaves calls without results, which providers
    reject on the next request. An assistant message left with no calls and
    no text is dropped.
    """
    answered = {m.tool_call_id for m in messages if m.role == Role.TOOL}
    cleaned: list[Message] = []
    for message in messages:
        if message.role == Role.ASSISTANT and message.tool_calls:
            kept = tuple(c for c in message.tool_calls if c.call_id in answered)
            if len(kept) < len(message.tool_calls):
                if not kept and not message.content:
                    continue
                message = replace(message, tool_calls=kept)
        cleaned.append(message)
    return cleaned


def build_messages_from_result(
    previous: AgentLoopResult, user_message: str
) -> list[Message]:
    """Conversation for continuing ``previous`` with a new user message."""
    return drop_unanswered_tool_calls(previous.messages) + [Message.user(user_message)]


class _RunState:
    """Mutable bookkeeping for one run."""

    def __init__(self, messages: list[Message]):
        self.messages = messages
        self.turns: list[TurnResult] = []
        self.usage = TokenUsage()

    @property
    def last_text(self) -> str:
        return self.turns[-1].text if self.turns else ""


class AgentLoop:
    """Drives one conversation against a provider with a tool registry.

    ``provider`` may be a bare adapter, which is wrapped in a
    :class:`ResilientProvider` using ``breakers`` and ``retry_policy``, or an
    already configured ResilientProvider. Pass the same ``breakers`` to
    every loop that should share circuit state.
    """

    def __init__(
        self,
        provider: Union[ProviderAdapter, ResilientProvider],
        registry: Optional[ToolRegistry] = None,
        config: Optional[AgentConfig] = None,
        options: Optional[RequestOptions] = None,
        breakers: Optional[CircuitBreakerRegistry] = None,
        retry_policy: Optional[RetryPolicy] = None,
        observer: Optional[Observer] = None,
        pricing: Optional[TokenPricing] = None,
        on_checkpoint: Optional[Callable[[AgentLoopResult], Any]] = None,
    ):
        self.config = config or AgentConfig()
        self.registry = registry or ToolRegistry()
        self.observer = observer or Observer()
        self.pricing = pricing
        self.on_checkpoint = on_checkpoint

        if isinstance(provider, ResilientProvider):
            self.provider = provider
        else:
            self.provider = ResilientProvider(
                provider,
                breakers=breakers,
                retry_policy=retry_policy,
                request_timeout=self.config.request_timeout,
                observer=self.observer,
            )

        self.executor = ToolExecutor(
            self.registry,
            tool_timeout=self.config.tool_timeout,
            max_output_bytes=self.config.max_tool_output_bytes,
            observer=self.observer,
        )
        self._options = options
        self._cancel: Optional[CancellationToken] = None

    def cancel(self, reason: str = "cancelled by caller") -> None:
        """Cancel the run in progress, if any. Idempotent."""
        if self._cancel is not None:
            self._cancel.cancel(reason)

    async def run(
        self, user_message: str, cancel: Optional[CancellationToken] = None
    ) -> AgentLoopResult:
        """Start a new conversation from one user message."""
        return await self.run_with_messages([Message.user(user_message)], cancel)

    async def run_continuation(
        self,
        previous: AgentLoopResult,
        user_message: str,
        cancel: Optional[CancellationToken] = None,
    ) -> AgentLoopResult:
        """Resume the conversation of a previous run with a new user message."""
        return await self.run_with_messages(
            build_messages_from_result(previous, user_message), cancel
        )

    async def run_with_messages(
        self,
        messages: list[Message],
        cancel: Optional[CancellationToken] = None,
    ) -> AgentLoopResult:
        """Run the loop over an existing conversation.

        The system prompt from the config is prepended when the conversation
        does not already start with a system message.
        """
        cancel = cancel or CancellationToken()
        self._cancel = cancel

        conversation = list(messages)
        if self.config.system_prompt and (
            not conversation or conversation[0].role != Role.SYSTEM
        ):
            conversation.insert(0, Message.system(self.config.system_prompt))

        state = _RunState(conversation)
        try:
            stop_reason, error = await self._loop(state, cancel)
        except RunCancelledError as e:
            stop_reason, error = StopReason.CANCELLED, e.message
        except LLMLoopError as e:
            logger.warning("Run stopped: %s", e)
            stop_reason, error = StopReason.ERROR, str(e)

        result = self._snapshot(state, stop_reason, error)
        if result.cost is not None:
            self.observer.metrics.record_cost(result.cost.usd)
        self.observer.emit(
            LifecycleKind.RUN_END,
            stop_reason=stop_reason.value,
            turns=len(state.turns),
            total_tokens=state.usage.total,
        )
        logger.info(
            "Run finished: %s after %d turn(s), %d tokens",
            stop_reason.value,
            len(state.turns),
            state.usage.total,
        )
        self._checkpoint(result)
        return result

    async def _loop(
        self, state: _RunState, cancel: CancellationToken
    ) -> tuple[StopReason, Optional[str]]:
        tools = self.registry.schemas_for_api()
        options = self._options or (
            RequestOptions(temperature=TOOL_TEMPERATURE) if tools else RequestOptions()
        )

        while True:
            if len(state.turns) >= self.config.max_turns:
                return StopReason.MAX_TURNS, None
            cancel.raise_if_cancelled()

            turn_number = len(state.turns) + 1
            self.observer.emit(LifecycleKind.TURN_START, turn=turn_number)
            t0 = time.monotonic()

            stream = await self.provider.send(state.messages, tools, options, cancel)
            turn = await self._consume(stream, cancel)

            result = TurnResult.from_turn(turn)
            state.turns.append(result)
            state.usage.add(result.usage)
            self.observer.metrics.record_token_usage(result.usage)

            if not turn.is_complete:
                self._end_turn(result, turn_number, t0)
                return StopReason.ERROR, turn.error

            if turn.finish_reason != FinishReason.TOOL_CALLS or not turn.tool_calls:
                state.messages.append(
                    Message.assistant(
                        turn.text,
                        thinking=turn.thinking,
                        thinking_signature=turn.thinking_signature,
                    )
                )
                self._end_turn(result, turn_number, t0)
                return StopReason.COMPLETE, None

            limit = self.config.max_tool_calls_per_turn
            batch = turn.tool_calls[:limit]
            state.messages.append(
                Message.assistant(
                    turn.text,
                    tool_calls=[c.to_assistant_call() for c in batch],
                    thinking=turn.thinking,
                    thinking_signature=turn.thinking_signature,
                )
            )
            try:
                for call in batch:
                    executed = await self.executor.execute(call, cancel)
                    result.tool_calls.append(executed)
                    content, omitted = sanitize_tool_output(
                        executed.result.as_message_content(),
                        self.config.max_tool_output_bytes,
                    )
                    if omitted:
                        logger.debug(
                            "Omitted %d binary blob(s) from '%s' output",
                            omitted,
                            call.function_name,
                        )
                    state.messages.append(
                        Message.tool_result(
                            call.call_id, content, is_error=not executed.result.success
                        )
                    )
            finally:
                self._end_turn(result, turn_number, t0)

            if len(turn.tool_calls) > limit:
                logger.warning(
                    "Model requested %d tool calls, limit is %d",
                    len(turn.tool_calls),
                    limit,
                )
                return StopReason.MAX_TOOL_CALLS, None

            self._checkpoint(self._snapshot(state, None, None))

    async def _consume(
        self, stream: EventStream, cancel: CancellationToken
    ) -> AccumulatedTurn:
        """Read ``stream`` to its terminal event within the request timeout."""
        accumulator = StreamAccumulator()
        timeout = self.config.request_timeout
        deadline = time.monotonic() + timeout
        try:
            while not accumulator.terminated:
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    return accumulator.finish(error=f"stream timed out after {timeout:g}s")
                try:
                    event = await cancel.race(stream.next_event(), timeout=remaining)
                except asyncio.TimeoutError:
                    return accumulator.finish(error=f"stream timed out after {timeout:g}s")
                if event is None:
                    break
                accumulator.push(event)
        finally:
            await stream.aclose()
        return accumulator.finish()

    def _end_turn(self, result: TurnResult, turn_number: int, t0: float) -> None:
        result.duration_ms = int((time.monotonic() - t0) * 1000)
        self.observer.metrics.record_turn_latency_ms(turn_number, result.duration_ms)
        self.observer.emit(
            LifecycleKind.TURN_END,
            turn=turn_number,
            finish_reason=result.finish_reason.value,
            tool_calls=len(result.tool_calls),
            duration_ms=result.duration_ms,
        )

    def _snapshot(
        self,
        state: _RunState,
        stop_reason: Optional[StopReason],
        error: Optional[str],
    ) -> AgentLoopResult:
        usage = TokenUsage.from_dict(state.usage.to_dict())
        return AgentLoopResult(
            turns=list(state.turns),
            final_text=state.last_text,
            total_usage=usage,
            stop_reason=stop_reason,
            error=error,
            messages=list(state.messages),
            cost=CostEstimate.calculate(usage, self.pricing) if self.pricing else None,
        )

    def _checkpoint(self, result: AgentLoopResult) -> None:
        if self.on_checkpoint is None:
            return
        try:
            self.on_checkpoint(result)
        except Exception:
            logger.exception("Checkpoint callback failed")
