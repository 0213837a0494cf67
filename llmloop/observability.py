"""
llmloop - Lifecycle events, metrics hooks and secret redaction.

The runtime reports what it does through two injectable interfaces:

* ``Recorder`` receives structured ``LifecycleEvent`` records (request,
  turn and tool boundaries, retries, circuit-breaker transitions).
* ``MetricsCollector`` receives latencies and counters.

Both default to no-ops. Every string attribute passes through ``redact``
before a recorder sees it, and ``RedactingFilter`` applies the same masking
to log records emitted under the ``llmloop`` logger.
"""

import logging
import re
import threading
import time
from collections import defaultdict
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional

from .models import TokenUsage

logger = logging.getLogger("llmloop.observability")

REDACTED = "***REDACTED***"

_API_KEY_RE = re.compile(r"\b(sk-(?:ant-)?)[A-Za-z0-9_\-]{8,}")
_BEARER_RE = re.compile(r"\b(Bearer)\s+[A-Za-z0-9._~+/\-]+=*", re.IGNORECASE)
_JSON_SECRET_RE = re.compile(
    r'("(?:api[_-]?key|x-api-key|authorization|token|secret|password)"\s*:\s*)"[^"]*"',
    re.IGNORECASE,
)
_ASSIGNMENT_RE = re.compile(
    r"\b(api[_-]?key|token|secret|password)(\s*[=:]\s*)(?!\*)[^\s,;\"']+",
    re.IGNORECASE,
)
_LONG_TOKEN_RE = re.compile(r"[A-Za-z0-9+/]{40,}={0,2}")
_SENSITIVE_KEY_RE = re.compile(
    r"(secret|password|token|api.?key|auth|credential|bearer)", re.IGNORECASE
)


def redact(text: str) -> str:
    """Mask credential-shaped substrings in free text."""
    if not text:
        return text
    cleaned = _API_KEY_RE.sub(lambda m: f"{m.group(1)}{REDACTED}", text)
    cleaned = _BEARER_RE.sub(lambda m: f"{m.group(1)} {REDACTED}", cleaned)
    cleaned = _JSON_SECRET_RE.sub(lambda m: f'{m.group(1)}"{REDACTED}"', cleaned)
    cleaned = _ASSIGNMENT_RE.sub(lambda m: f"{m.group(1)}{m.group(2)}{REDACTED}", cleaned)
    cleaned = _LONG_TOKEN_RE.sub(REDACTED, cleaned)
    return cleaned


def redact_mapping(data: Any, depth: int = 0) -> Any:
    """Recursively redact a JSON-like structure.

    Values under keys that look like secrets are replaced outright; other
    strings go through ``redact``.
    """
    if depth > 10:
        return "[TRUNCATED]"

    if isinstance(data, dict):
        sanitized = {}
        for k, v in data.items():
            if _SENSITIVE_KEY_RE.search(str(k)) and isinstance(v, str):
                sanitized[k] = REDACTED
            else:
                sanitized[k] = redact_mapping(v, depth + 1)
        return sanitized

    if isinstance(data, (list, tuple)):
        return [redact_mapping(item, depth + 1) for item in data[:100]]

    if isinstance(data, str):
        return redact(data)

    return data


class RedactingFilter(logging.Filter):
    """Logging filter that masks secrets in the rendered message."""

    def filter(self, record: logging.LogRecord) -> bool:
        try:
            message = record.getMessage()
        except (TypeError, ValueError):
            return True
        record.msg = redact(message)
        record.args = None
        return True


def configure_logging(level: str = "INFO") -> logging.Logger:
    """Configure the ``llmloop`` logger with a redacting stderr handler.

    Records from child loggers skip the parent's logger-level filters, so
    the redacting filter goes on every handler, including ones attached
    before this call.
    """
    root = logging.getLogger("llmloop")
    root.setLevel(level.upper())
    if not root.handlers:
        handler = logging.StreamHandler()
        handler.setFormatter(
            logging.Formatter("%(asctime)s %(levelname)s %(name)s: %(message)s")
        )
        root.addHandler(handler)
    for handler in root.handlers:
        if not any(isinstance(f, RedactingFilter) for f in handler.filters):
            handler.addFilter(RedactingFilter())
    return root


# ---------------------------------------------------------------------------
# Lifecycle events
# ---------------------------------------------------------------------------


class LifecycleKind(str, Enum):
    """Kinds of lifecycle events reported to a Recorder."""

    REQUEST_START = "request.start"
    REQUEST_END = "request.end"
    TURN_START = "turn.start"
    TURN_END = "turn.end"
    TOOL_START = "tool.start"
    TOOL_END = "tool.end"
    RETRY_ATTEMPT = "retry.attempt"
    CIRCUIT_TRANSITION = "circuit.transition"
    RUN_END = "run.end"


@dataclass(frozen=True)
class LifecycleEvent:
    """One structured lifecycle record."""

    kind: LifecycleKind
    attributes: dict[str, Any] = field(default_factory=dict)
    timestamp: float = field(default_factory=time.time)


class Recorder:
    """Receives lifecycle events. The base implementation discards them."""

    def record(self, event: LifecycleEvent) -> None:
        pass


class LoggingRecorder(Recorder):
    """Writes lifecycle events to the ``llmloop.lifecycle`` logger."""

    def __init__(self, level: int = logging.DEBUG):
        self._logger = logging.getLogger("llmloop.lifecycle")
        self._level = level

    def record(self, event: LifecycleEvent) -> None:
        self._logger.log(self._level, "%s %s", event.kind.value, event.attributes)


class MetricsCollector:
    """Metrics hook interface. The base implementation is a no-op."""

    def record_request_latency_ms(self, provider: str, latency_ms: float) -> None:
        pass

    def record_turn_latency_ms(self, turn: int, latency_ms: float) -> None:
        pass

    def record_tool_latency_ms(self, tool_name: str, latency_ms: float) -> None:
        pass

    def count_event(self, name: str) -> None:
        pass

    def count_retry(self, provider: str) -> None:
        pass

    def count_circuit_breaker_open(self, provider: str) -> None:
        pass

    def count_tool_result(self, tool_name: str, success: bool) -> None:
        pass

    def record_token_usage(self, usage: TokenUsage) -> None:
        pass

    def record_cost(self, usd: float) -> None:
        pass


NoopMetrics = MetricsCollector


class InMemoryMetrics(MetricsCollector):
    """Thread-safe in-process metrics, useful for tests and diagnostics."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self.counters: dict[str, int] = defaultdict(int)
        self.latencies: dict[str, list[float]] = defaultdict(list)
        self.usage = TokenUsage()
        self.cost_usd = 0.0

    def _incr(self, key: str) -> None:
        with self._lock:
            self.counters[key] += 1

    def _observe(self, key: str, value: float) -> None:
        with self._lock:
            self.latencies[key].append(value)

    def record_request_latency_ms(self, provider: str, latency_ms: float) -> None:
        self._observe(f"request.{provider}", latency_ms)

    def record_turn_latency_ms(self, turn: int, latency_ms: float) -> None:
        self._observe("turn", latency_ms)

    def record_tool_latency_ms(self, tool_name: str, latency_ms: float) -> None:
        self._observe(f"tool.{tool_name}", latency_ms)

    def count_event(self, name: str) -> None:
        self._incr(f"event.{name}")

    def count_retry(self, provider: str) -> None:
        self._incr(f"retry.{provider}")

    def count_circuit_breaker_open(self, provider: str) -> None:
        self._incr(f"circuit_open.{provider}")

    def count_tool_result(self, tool_name: str, success: bool) -> None:
        self._incr(f"tool.{tool_name}.{'success' if success else 'failure'}")

    def record_token_usage(self, usage: TokenUsage) -> None:
        with self._lock:
            self.usage.add(usage)

    def record_cost(self, usd: float) -> None:
        with self._lock:
            self.cost_usd += usd


class Observer:
    """Bundles a recorder and a metrics collector behind one handle."""

    def __init__(
        self,
        recorder: Optional[Recorder] = None,
        metrics: Optional[MetricsCollector] = None,
    ):
        self.recorder = recorder or Recorder()
        self.metrics = metrics or MetricsCollector()

    def emit(self, kind: LifecycleKind, **attributes: Any) -> None:
        """Redact and forward a lifecycle event. Recorder failures are logged."""
        event = LifecycleEvent(kind=kind, attributes=redact_mapping(attributes))
        try:
            self.recorder.record(event)
        except Exception:
            logger.warning("Recorder failed on %s event", kind.value, exc_info=True)
