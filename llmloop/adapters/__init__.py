"""Provider adapters for LLM backends.

Each adapter translates a conversation, tool catalog and request options
into one vendor request and translates the vendor's streamed response into
the normalized event model (``llmloop.events``).

Supported backends:
- OpenAI and OpenAI-compatible vendors via compatibility profiles
  (z.ai, DeepSeek, MiniMax, Ollama, llama.cpp, vLLM, or any registered profile)
- Anthropic Messages API
- Local endpoint probing (liveness and model discovery)
- Primary/fallback composition

Streaming hooks:
All adapters support hooks via AdapterConfig:
- on_stream_start(request_id, model, provider): Called when a stream begins
- on_token(token, request_id): Called for each text delta
- on_stream_end(request_id, finish_reason): Called when a stream completes
- on_stream_error(error, request_id): Called when a stream fails

Example usage:

    from llmloop.adapters import AdapterConfig, OpenAIAdapter

    adapter = OpenAIAdapter(
        model="llama3.1:8b",
        base_url="http://localhost:11434",
        profile="ollama",
        config=AdapterConfig(on_token=lambda t, rid: print(t, end="")),
    )
"""

from llmloop.adapters.anthropic_adapter import AnthropicAdapter
from llmloop.adapters.base import AdapterConfig, ProviderAdapter
from llmloop.adapters.fallback import FallbackProvider
from llmloop.adapters.local_probe import (
    LocalModel,
    LocalProbeService,
    ProbeConfig,
    ProbeState,
    ProbeStatus,
)
from llmloop.adapters.openai_adapter import OpenAIAdapter
from llmloop.adapters.profiles import (
    CompatibilityProfile,
    MaxTokensField,
    ProfileRegistry,
    ReasoningMode,
    StopSequenceField,
    ToolCallFormat,
    apply_profile_to_request,
    list_profiles,
    normalize_finish_reason,
    register_profile,
    resolve_profile,
)

__all__ = [
    "AdapterConfig",
    "AnthropicAdapter",
    "CompatibilityProfile",
    "FallbackProvider",
    "LocalModel",
    "LocalProbeService",
    "MaxTokensField",
    "OpenAIAdapter",
    "ProbeConfig",
    "ProbeState",
    "ProbeStatus",
    "ProfileRegistry",
    "ProviderAdapter",
    "ReasoningMode",
    "StopSequenceField",
    "ToolCallFormat",
    "apply_profile_to_request",
    "list_profiles",
    "normalize_finish_reason",
    "register_profile",
    "resolve_profile",
]
