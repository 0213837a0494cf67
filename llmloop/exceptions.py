"""
llmloop - Error taxonomy for provider, tool and loop failures.

Every error carries a stable machine-readable ``code`` and a ``retryable``
flag. The resilience layer retries only errors whose ``retryable`` flag is
set and which were raised before a stream produced its first event.
"""

from typing import Any, Optional


class LLMLoopError(Exception):
    """Base exception for all llmloop errors."""

    code = "LLMLOOP_ERROR"
    retryable = False

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        response: Optional[dict[str, Any]] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.status_code = status_code
        self.response = response

    def __str__(self) -> str:
        return f"[{self.code}] {self.message}"


class ConfigError(LLMLoopError):
    """Raised for an invalid provider, model or runtime configuration."""

    code = "CONFIG_INVALID"


class AuthError(LLMLoopError):
    """Raised when a provider rejects the supplied credentials."""

    code = "AUTH_FAILED"


class RequestError(LLMLoopError):
    """Raised when a provider rejects a request as malformed or invalid."""

    code = "REQUEST_FAILED"


class RateLimitError(LLMLoopError):
    """Raised when a provider throttles the caller."""

    code = "RATE_LIMITED"
    retryable = True

    def __init__(
        self, message: str, retry_after: Optional[float] = None, **kwargs: Any
    ) -> None:
        super().__init__(message, **kwargs)
        self.retry_after = retry_after


class ProviderError(LLMLoopError):
    """Raised for vendor-side failures (5xx, overload, dropped connections)."""

    code = "PROVIDER_ERROR"
    retryable = True


class ToolError(LLMLoopError):
    """Raised when tool arguments fail validation or a tool cannot run."""

    code = "TOOL_FAILED"

    def __init__(self, message: str, tool_name: str = "", **kwargs: Any) -> None:
        super().__init__(message, **kwargs)
        self.tool_name = tool_name


class RequestTimeoutError(LLMLoopError):
    """Raised when a provider call does not answer within its deadline."""

    code = "TIMEOUT"
    retryable = True


class RunCancelledError(LLMLoopError):
    """Raised inside a run when its cancellation token fires."""

    code = "CANCELLED"

    def __init__(self, message: str = "run cancelled", **kwargs: Any) -> None:
        super().__init__(message, **kwargs)


class CircuitOpenError(LLMLoopError):
    """Raised without a network attempt while a provider's breaker is open."""

    code = "CIRCUIT_OPEN"

    def __init__(
        self, provider: str, retry_in: Optional[float] = None, **kwargs: Any
    ) -> None:
        message = f"provider '{provider}' unavailable: circuit breaker is open"
        super().__init__(message, **kwargs)
        self.provider = provider
        self.retry_in = retry_in
