"""
llmloop - Provider-agnostic runtime for tool-calling LLM agents.

Normalizes vendor streaming protocols into one event model, drives a
turn-based agent loop that interleaves generation with tool execution, and
wraps every provider call with retries, circuit breaking, timeouts and
cancellation.
"""

from .accumulator import (
    AccumulatedToolCall,
    AccumulatedTurn,
    StreamAccumulator,
    accumulate,
)
from .adapters import (
    AdapterConfig,
    AnthropicAdapter,
    CompatibilityProfile,
    FallbackProvider,
    LocalProbeService,
    OpenAIAdapter,
    ProbeConfig,
    ProviderAdapter,
    list_profiles,
    register_profile,
    resolve_profile,
)
from .agent import (
    AgentConfig,
    AgentLoop,
    AgentLoopResult,
    StopReason,
    TurnResult,
    build_messages_from_result,
    drop_unanswered_tool_calls,
)
from .cancellation import CancellationToken
from .config import ProviderConfig, RuntimeConfig, create_adapter
from .events import (
    EventStream,
    EventType,
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
from .exceptions import (
    AuthError,
    CircuitOpenError,
    ConfigError,
    LLMLoopError,
    ProviderError,
    RateLimitError,
    RequestError,
    RequestTimeoutError,
    RunCancelledError,
    ToolError,
)
from .executor import ExecutedToolCall, ToolExecutor
from .models import (
    AssistantToolCall,
    CostEstimate,
    EndpointType,
    Message,
    ModelReference,
    ReasoningLevel,
    RequestOptions,
    Role,
    TokenPricing,
    TokenUsage,
    ToolDefinition,
)
from .observability import (
    InMemoryMetrics,
    LifecycleEvent,
    LifecycleKind,
    LoggingRecorder,
    MetricsCollector,
    Observer,
    Recorder,
    configure_logging,
    redact,
)
from .resilience import (
    CircuitBreaker,
    CircuitBreakerRegistry,
    CircuitState,
    ResilientProvider,
    RetryPolicy,
)
from .tools import (
    ToolDef,
    ToolFailureKind,
    ToolMode,
    ToolRegistry,
    ToolResult,
    define_tool,
)
from .validation import validate_tool_args

__version__ = "0.1.0"

__all__ = [
    # Accumulation
    "AccumulatedToolCall",
    "AccumulatedTurn",
    "StreamAccumulator",
    "accumulate",
    # Adapters
    "AdapterConfig",
    "AnthropicAdapter",
    "CompatibilityProfile",
    "FallbackProvider",
    "LocalProbeService",
    "OpenAIAdapter",
    "ProbeConfig",
    "ProviderAdapter",
    "list_profiles",
    "register_profile",
    "resolve_profile",
    # Agent loop
    "AgentConfig",
    "AgentLoop",
    "AgentLoopResult",
    "StopReason",
    "TurnResult",
    "build_messages_from_result",
    "drop_unanswered_tool_calls",
    "CancellationToken",
    # Config
    "ProviderConfig",
    "RuntimeConfig",
    "create_adapter",
    # Events
    "EventStream",
    "EventType",
    "FinishReason",
    "NormalizedEvent",
    "StreamEnd",
    "StreamError",
    "StreamStart",
    "TextDelta",
    "ThinkingDelta",
    "ThinkingEnd",
    "ThinkingStart",
    "ToolCallArgsDelta",
    "ToolCallEnd",
    "ToolCallStart",
    "UsageReport",
    # Exceptions
    "AuthError",
    "CircuitOpenError",
    "ConfigError",
    "LLMLoopError",
    "ProviderError",
    "RateLimitError",
    "RequestError",
    "RequestTimeoutError",
    "RunCancelledError",
    "ToolError",
    # Tools
    "ExecutedToolCall",
    "ToolDef",
    "ToolExecutor",
    "ToolFailureKind",
    "ToolMode",
    "ToolRegistry",
    "ToolResult",
    "define_tool",
    "validate_tool_args",
    # Models
    "AssistantToolCall",
    "CostEstimate",
    "EndpointType",
    "Message",
    "ModelReference",
    "ReasoningLevel",
    "RequestOptions",
    "Role",
    "TokenPricing",
    "TokenUsage",
    "ToolDefinition",
    # Observability
    "InMemoryMetrics",
    "LifecycleEvent",
    "LifecycleKind",
    "LoggingRecorder",
    "MetricsCollector",
    "Observer",
    "Recorder",
    "configure_logging",
    "redact",
    # Resilience
    "CircuitBreaker",
    "CircuitBreakerRegistry",
    "CircuitState",
    "ResilientProvider",
    "RetryPolicy",
]
