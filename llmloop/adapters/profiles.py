"""Compatibility profiles for OpenAI-shaped vendors.

A profile is a pure data record of one vendor's wire-format quirks. The
generic OpenAI adapter consults the active profile when it builds a request
and when it interprets the response, so supporting a new OpenAI-compatible
vendor means registering a profile rather than writing an adapter.

Example:
    from llmloop.adapters.profiles import (
        CompatibilityProfile,
        MaxTokensField,
        register_profile,
    )

    register_profile(
        CompatibilityProfile(
            name="acme",
            max_tokens_field=MaxTokensField.MAX_COMPLETION_TOKENS,
            needs_stream_options=False,
        )
    )
"""

import threading
from dataclasses import dataclass
from enum import Enum
from typing import Any, Optional

from llmloop.events import FinishReason

DEFAULT_API_PATH = "/v1/chat/completions"


class MaxTokensField(str, Enum):
    """Which request field carries the token budget."""

    MAX_TOKENS = "max_tokens"
    MAX_COMPLETION_TOKENS = "max_completion_tokens"


class ReasoningMode(str, Enum):
    """How a vendor requests and signals reasoning output."""

    NONE = "none"
    OPENAI_O1_STYLE = "openai_o1_style"
    DEEPSEEK_THINKING = "deepseek_thinking"


class ToolCallFormat(str, Enum):
    """How tool calls arrive from the vendor."""

    STANDARD = "standard"
    NO_STREAMING = "no_streaming"
    UNSUPPORTED = "unsupported"


class StopSequenceField(str, Enum):
    """Which request field carries stop sequences."""

    STOP = "stop"
    STOP_SEQUENCES = "stop_sequences"


@dataclass(frozen=True)
class CompatibilityProfile:
    """Vendor quirk flags consumed by the OpenAI-shaped adapter.

    Attributes:
        name: Profile identifier used for lookup.
        max_tokens_field: Field name for the token budget.
        reasoning_mode: Reasoning request/response convention.
        tool_call_format: Whether tool calls stream incrementally,
            arrive only in non-streamed responses, or are unavailable.
        stop_sequence_field: Field name for stop sequences.
        supports_system_message: When False, system messages are merged
            into the first user message.
        supports_streaming: When False, requests are never streamed.
        supports_stream_usage: Whether usage arrives in the stream.
        needs_stream_options: Whether ``stream_options.include_usage``
            must be sent to receive usage.
        api_path_override: Path replacing ``/v1/chat/completions``.
    """

    name: str
    max_tokens_field: MaxTokensField = MaxTokensField.MAX_TOKENS
    reasoning_mode: ReasoningMode = ReasoningMode.NONE
    tool_call_format: ToolCallFormat = ToolCallFormat.STANDARD
    stop_sequence_field: StopSequenceField = StopSequenceField.STOP
    supports_system_message: bool = True
    supports_streaming: bool = True
    supports_stream_usage: bool = True
    needs_stream_options: bool = True
    api_path_override: Optional[str] = None

    @property
    def api_path(self) -> str:
        return self.api_path_override or DEFAULT_API_PATH


OPENAI = CompatibilityProfile(
    name="openai",
    reasoning_mode=ReasoningMode.OPENAI_O1_STYLE,
)
ZAI = CompatibilityProfile(
    name="zai",
    max_tokens_field=MaxTokensField.MAX_COMPLETION_TOKENS,
    needs_stream_options=False,
)
DEEPSEEK = CompatibilityProfile(
    name="deepseek",
    reasoning_mode=ReasoningMode.DEEPSEEK_THINKING,
    supports_stream_usage=False,
    needs_stream_options=False,
)
MINIMAX = CompatibilityProfile(
    name="minimax",
    tool_call_format=ToolCallFormat.NO_STREAMING,
    needs_stream_options=False,
)
OLLAMA = CompatibilityProfile(
    name="ollama",
    needs_stream_options=False,
)
LLAMACPP = CompatibilityProfile(
    name="llamacpp",
    tool_call_format=ToolCallFormat.NO_STREAMING,
    supports_stream_usage=False,
    needs_stream_options=False,
)
VLLM = CompatibilityProfile(
    name="vllm",
)

_ALIASES = {
    "z.ai": "zai",
    "llama.cpp": "llamacpp",
    "llama-cpp": "llamacpp",
}


class ProfileRegistry:
    """Name-keyed collection of profiles with case-insensitive lookup."""

    def __init__(self, profiles: Optional[list[CompatibilityProfile]] = None):
        self._lock = threading.Lock()
        self._profiles: dict[str, CompatibilityProfile] = {}
        for profile in profiles or []:
            self.register(profile)

    def register(self, profile: CompatibilityProfile) -> None:
        with self._lock:
            self._profiles[profile.name.lower()] = profile

    def get(self, name: str) -> Optional[CompatibilityProfile]:
        key = name.strip().lower()
        key = _ALIASES.get(key, key)
        with self._lock:
            return self._profiles.get(key)

    def resolve(self, name: Optional[str]) -> CompatibilityProfile:
        """Look up a profile, falling back to strict OpenAI for unknown names."""
        if not name:
            return OPENAI
        return self.get(name) or OPENAI

    def names(self) -> list[str]:
        with self._lock:
            return sorted(self._profiles)


_REGISTRY = ProfileRegistry([OPENAI, ZAI, DEEPSEEK, MINIMAX, OLLAMA, LLAMACPP, VLLM])


def register_profile(profile: CompatibilityProfile) -> None:
    """Register a custom profile in the default registry."""
    _REGISTRY.register(profile)


def resolve_profile(name: Optional[str]) -> CompatibilityProfile:
    """Resolve a vendor name against the default registry."""
    return _REGISTRY.resolve(name)


def list_profiles() -> list[str]:
    return _REGISTRY.names()


def apply_profile_to_request(
    body: dict[str, Any], profile: CompatibilityProfile
) -> dict[str, Any]:
    """Rewrite a Chat Completions request body for a vendor's quirks.

    Returns a new dict; the input is left untouched.
    """
    result = dict(body)

    if (
        profile.max_tokens_field == MaxTokensField.MAX_COMPLETION_TOKENS
        and "max_tokens" in result
    ):
        result["max_completion_tokens"] = result.pop("max_tokens")

    if not profile.needs_stream_options:
        result.pop("stream_options", None)

    if profile.stop_sequence_field == StopSequenceField.STOP_SEQUENCES and "stop" in result:
        result["stop_sequences"] = result.pop("stop")

    if not profile.supports_system_message and "messages" in result:
        result["messages"] = _merge_system_messages(result["messages"])

    return result


def _merge_system_messages(messages: list[dict[str, Any]]) -> list[dict[str, Any]]:
    system_parts = [
        m["content"] for m in messages if m.get("role") == "system" and m.get("content")
    ]
    rest = [m for m in messages if m.get("role") != "system"]
    if not system_parts:
        return rest

    system_text = "\n".join(system_parts)
    for i, message in enumerate(rest):
        if message.get("role") == "user":
            merged = dict(message)
            merged["content"] = f"{system_text}\n\n{message.get('content') or ''}"
            rest[i] = merged
            return rest

    return [{"role": "user", "content": system_text}] + rest


_FINISH_REASONS = {
    "stop": FinishReason.STOP,
    "end_turn": FinishReason.STOP,
    "stop_sequence": FinishReason.STOP,
    "length": FinishReason.LENGTH,
    "max_tokens": FinishReason.LENGTH,
    "tool_calls": FinishReason.TOOL_CALLS,
    "function_call": FinishReason.TOOL_CALLS,
    "tool_use": FinishReason.TOOL_CALLS,
    "content_filter": FinishReason.CONTENT_FILTER,
    "safety": FinishReason.CONTENT_FILTER,
    "cancelled": FinishReason.CANCELLED,
}


def normalize_finish_reason(
    raw: Optional[str], profile: Optional[CompatibilityProfile] = None
) -> FinishReason:
    """Map a vendor finish reason onto FinishReason."""
    if not raw:
        return FinishReason.OTHER
    value = raw.strip().lower()
    if (
        value == "thinking_done"
        and profile is not None
        and profile.reasoning_mode == ReasoningMode.DEEPSEEK_THINKING
    ):
        return FinishReason.STOP
    return _FINISH_REASONS.get(value, FinishReason.OTHER)
