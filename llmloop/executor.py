"""
llmloop - Bounded, cancellable execution of model-requested tool calls.

``ToolExecutor.execute`` never raises for tool-level problems. Unknown
tools, mode violations, invalid arguments, timeouts and handler exceptions
all come back as a failed ``ToolResult`` so the model can see what went
wrong and recover. The only exception that escapes is
``RunCancelledError``, raised when the run's token fires mid-call.
"""

import asyncio
import functools
import inspect
import json
import logging
import time
from dataclasses import dataclass
from typing import Any, Optional

from .accumulator import AccumulatedToolCall
from .cancellation import CancellationToken
from .exceptions import RunCancelledError, ToolError
from .observability import LifecycleKind, Observer, redact
from .tools import DEFAULT_MAX_BYTES, ToolDef, ToolFailureKind, ToolRegistry, ToolResult
from .validation import validate_tool_args

logger = logging.getLogger("llmloop.executor")

DEFAULT_TOOL_TIMEOUT = 30.0


@dataclass(frozen=True)
class ExecutedToolCall:
    """A tool call together with its outcome and wall-clock duration."""

    call_id: str
    function_name: str
    arguments: Any
    result: ToolResult
    duration_ms: int

    def to_dict(self) -> dict[str, Any]:
        return {
            "call_id": self.call_id,
            "function_name": self.function_name,
            "arguments": self.arguments,
            "result": self.result.to_dict(),
            "duration_ms": self.duration_ms,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ExecutedToolCall":
        return cls(
            call_id=data["call_id"],
            function_name=data["function_name"],
            arguments=data.get("arguments"),
            result=ToolResult.from_dict(data.get("result") or {}),
            duration_ms=data.get("duration_ms", 0),
        )


class ToolExecutor:
    """Looks up, validates and runs tool calls one at a time.

    Async handlers run as tasks; plain functions run in a worker thread so
    a slow handler cannot block the event loop. Either way the call races
    the tool timeout and the cancellation token. A timed-out worker thread
    cannot be interrupted and finishes in the background.
    """

    def __init__(
        self,
        registry: ToolRegistry,
        tool_timeout: float = DEFAULT_TOOL_TIMEOUT,
        max_output_bytes: int = DEFAULT_MAX_BYTES,
        observer: Optional[Observer] = None,
    ):
        self.registry = registry
        self.tool_timeout = tool_timeout
        self.max_output_bytes = max_output_bytes
        self.observer = observer or Observer()

    async def execute(
        self,
        call: AccumulatedToolCall,
        cancel: Optional[CancellationToken] = None,
    ) -> ExecutedToolCall:
        """Execute one tool call.

        Raises:
            RunCancelledError: If ``cancel`` fires before or during the call.
        """
        cancel = cancel or CancellationToken()
        cancel.raise_if_cancelled()

        t0 = time.monotonic()
        self.observer.emit(
            LifecycleKind.TOOL_START, call_id=call.call_id, tool=call.function_name
        )
        arguments: Any = None
        result: Optional[ToolResult] = None
        try:
            tool = self._lookup(call.function_name)
            arguments = validate_tool_args(
                call.function_name, call.arguments_json, tool.parameters
            )
            result = await self._run(tool, arguments, cancel)
        except _LookupFailure as e:
            result = ToolResult.failure(e.kind, e.message)
        except ToolError as e:
            result = ToolResult.failure(ToolFailureKind.INVALID_ARGUMENTS, e.message)
        finally:
            # result stays None when the run was cancelled mid-call
            duration_ms = int((time.monotonic() - t0) * 1000)
            self._record_end(call, result, duration_ms)

        return ExecutedToolCall(
            call_id=call.call_id,
            function_name=call.function_name,
            arguments=arguments,
            result=result,
            duration_ms=duration_ms,
        )

    async def execute_all(
        self,
        calls: list[AccumulatedToolCall],
        cancel: Optional[CancellationToken] = None,
    ) -> list[ExecutedToolCall]:
        """Execute calls sequentially, in order."""
        return [await self.execute(call, cancel) for call in calls]

    def _record_end(
        self, call: AccumulatedToolCall, result: Optional[ToolResult], duration_ms: int
    ) -> None:
        success = result is not None and result.success
        if result is None:
            logger.info("Tool '%s' cancelled after %dms", call.function_name, duration_ms)
        elif not success:
            logger.info("Tool '%s' failed: %s", call.function_name, result.error)
        self.observer.metrics.record_tool_latency_ms(call.function_name, duration_ms)
        self.observer.metrics.count_tool_result(call.function_name, success)
        self.observer.emit(
            LifecycleKind.TOOL_END,
            call_id=call.call_id,
            tool=call.function_name,
            success=success,
            cancelled=result is None,
            duration_ms=duration_ms,
        )

    def _lookup(self, name: str) -> ToolDef:
        tool = self.registry.get(name)
        if tool is not None:
            return tool
        if self.registry.is_blocked_by_mode(name):
            raise _LookupFailure(
                ToolFailureKind.BLOCKED_BY_MODE,
                f"tool '{name}' is blocked by the current mode "
                f"({self.registry.mode.value} mode does not allow mutating tools)",
            )
        raise _LookupFailure(ToolFailureKind.NOT_FOUND, f"tool '{name}' not found in registry")

    async def _run(
        self, tool: ToolDef, arguments: Any, cancel: CancellationToken
    ) -> ToolResult:
        handler = tool.handler
        kwargs = self._handler_kwargs(
            tool, arguments if isinstance(arguments, dict) else {"input": arguments}
        )

        try:
            if inspect.iscoroutinefunction(handler):
                invocation = handler(**kwargs)
            else:
                invocation = asyncio.to_thread(functools.partial(handler, **kwargs))
            raw = await cancel.race(invocation, timeout=self.tool_timeout)
        except RunCancelledError:
            raise
        except asyncio.TimeoutError:
            return ToolResult.failure(
                ToolFailureKind.TIMEOUT,
                f"tool '{tool.name}' timed out after {self.tool_timeout:g}s",
            )
        except ToolError as e:
            return ToolResult.failure(ToolFailureKind.EXECUTION_ERROR, e.message)
        except Exception as e:
            logger.exception("Tool '%s' raised", tool.name)
            return ToolResult.failure(
                ToolFailureKind.EXECUTION_ERROR,
                f"tool '{tool.name}' failed: {redact(str(e)) or type(e).__name__}",
            )

        return self._to_result(raw)

    def _handler_kwargs(self, tool: ToolDef, kwargs: dict[str, Any]) -> dict[str, Any]:
        """Drop arguments the handler cannot take, unless it accepts ``**kwargs``."""
        try:
            params = inspect.signature(tool.handler).parameters
        except (TypeError, ValueError):
            return kwargs
        if any(p.kind is inspect.Parameter.VAR_KEYWORD for p in params.values()):
            return kwargs

        named = {
            name
            for name, p in params.items()
            if p.kind in (inspect.Parameter.POSITIONAL_OR_KEYWORD, inspect.Parameter.KEYWORD_ONLY)
        }
        accepted = {k: v for k, v in kwargs.items() if k in named}
        if len(accepted) < len(kwargs):
            logger.debug(
                "Tool '%s' ignoring unexpected argument(s): %s",
                tool.name,
                ", ".join(sorted(set(kwargs) - named)),
            )
        return accepted

    def _to_result(self, raw: Any) -> ToolResult:
        if isinstance(raw, ToolResult):
            return raw
        if isinstance(raw, str):
            return ToolResult.ok(raw, self.max_output_bytes)
        return ToolResult.ok(json.dumps(raw, default=str), self.max_output_bytes)


class _LookupFailure(Exception):
    def __init__(self, kind: ToolFailureKind, message: str):
        super().__init__(message)
        self.kind = kind
        self.message = message
