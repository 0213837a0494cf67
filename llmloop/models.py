"""
llmloop - Core data models shared by adapters, tools and the agent loop.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional


class EndpointType(str, Enum):
    """Backend family a provider speaks."""

    OPENAI = "openai"
    ANTHROPIC = "anthropic"
    LOCAL = "local"
    CUSTOM = "custom"


class ReasoningLevel(str, Enum):
    """How much extended thinking to request from a model."""

    OFF = "off"
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class Role(str, Enum):
    """Author of a conversation message."""

    SYSTEM = "system"
    USER = "user"
    ASSISTANT = "assistant"
    TOOL = "tool"


@dataclass(frozen=True)
class ModelReference:
    """Identifies which backend model answered a request."""

    model_id: str
    version: Optional[str] = None

    @property
    def full_name(self) -> str:
        if self.version:
            return f"{self.model_id}@{self.version}"
        return self.model_id

    def __str__(self) -> str:
        return self.full_name


@dataclass(frozen=True)
class AssistantToolCall:
    """A tool call requested by the assistant, kept on its message."""

    call_id: str
    function_name: str
    arguments_json: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "call_id": self.call_id,
            "function_name": self.function_name,
            "arguments_json": self.arguments_json,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "AssistantToolCall":
        return cls(
            call_id=data["call_id"],
            function_name=data["function_name"],
            arguments_json=data.get("arguments_json", ""),
        )


@dataclass(frozen=True)
class Message:
    """
    One entry of a conversation.

    Tool-role messages carry the result of a tool call keyed by
    ``tool_call_id``, with ``is_error`` set when the tool failed. Assistant
    messages may carry the tool calls the model requested in that turn and
    any reasoning text the provider needs replayed, with its signature.
    """

    role: Role
    content: str = ""
    tool_call_id: Optional[str] = None
    tool_calls: tuple[AssistantToolCall, ...] = ()
    thinking: str = ""
    thinking_signature: Optional[str] = None
    is_error: bool = False

    @classmethod
    def system(cls, text: str) -> "Message":
        return cls(role=Role.SYSTEM, content=text)

    @classmethod
    def user(cls, text: str) -> "Message":
        return cls(role=Role.USER, content=text)

    @classmethod
    def assistant(
        cls,
        text: str = "",
        tool_calls: Optional[list[AssistantToolCall]] = None,
        thinking: str = "",
        thinking_signature: Optional[str] = None,
    ) -> "Message":
        return cls(
            role=Role.ASSISTANT,
            content=text,
            tool_calls=tuple(tool_calls or ()),
            thinking=thinking,
            thinking_signature=thinking_signature,
        )

    @classmethod
    def tool_result(cls, call_id: str, content: str, is_error: bool = False) -> "Message":
        return cls(role=Role.TOOL, content=content, tool_call_id=call_id, is_error=is_error)

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {"role": self.role.value, "content": self.content}
        if self.tool_call_id is not None:
            result["tool_call_id"] = self.tool_call_id
        if self.tool_calls:
            result["tool_calls"] = [tc.to_dict() for tc in self.tool_calls]
        if self.thinking:
            result["thinking"] = self.thinking
        if self.thinking_signature is not None:
            result["thinking_signature"] = self.thinking_signature
        if self.is_error:
            result["is_error"] = True
        return result

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Message":
        return cls(
            role=Role(data["role"]),
            content=data.get("content", ""),
            tool_call_id=data.get("tool_call_id"),
            tool_calls=tuple(
                AssistantToolCall.from_dict(tc) for tc in data.get("tool_calls", [])
            ),
            thinking=data.get("thinking", ""),
            thinking_signature=data.get("thinking_signature"),
            is_error=data.get("is_error", False),
        )


@dataclass(frozen=True)
class RequestOptions:
    """Generation parameters for one provider request."""

    max_tokens: int = 2048
    temperature: float = 0.7
    top_p: float = 0.9
    reasoning_level: ReasoningLevel = ReasoningLevel.OFF
    stream: bool = True
    stop_sequences: tuple[str, ...] = ()


@dataclass(frozen=True)
class ToolDefinition:
    """A tool as exported to a provider: name, description and JSON schema."""

    name: str
    description: str
    json_schema: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "description": self.description,
            "parameters": self.json_schema,
        }


@dataclass
class TokenUsage:
    """Token counts reported by a provider for one or more requests."""

    prompt_tokens: int = 0
    completion_tokens: int = 0
    reasoning_tokens: Optional[int] = None

    @property
    def total(self) -> int:
        return self.prompt_tokens + self.completion_tokens + (self.reasoning_tokens or 0)

    def add(self, other: "TokenUsage") -> None:
        """Accumulate another usage record into this one."""
        self.prompt_tokens += other.prompt_tokens
        self.completion_tokens += other.completion_tokens
        if other.reasoning_tokens is not None:
            self.reasoning_tokens = (self.reasoning_tokens or 0) + other.reasoning_tokens

    def to_dict(self) -> dict[str, Any]:
        return {
            "prompt_tokens": self.prompt_tokens,
            "completion_tokens": self.completion_tokens,
            "reasoning_tokens": self.reasoning_tokens,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "TokenUsage":
        return cls(
            prompt_tokens=data.get("prompt_tokens", 0),
            completion_tokens=data.get("completion_tokens", 0),
            reasoning_tokens=data.get("reasoning_tokens"),
        )


@dataclass(frozen=True)
class TokenPricing:
    """Price per million tokens, in USD."""

    input_per_1m: float
    output_per_1m: float


@dataclass(frozen=True)
class CostEstimate:
    """Estimated cost of a usage record under a pricing table."""

    usd: float
    pricing: TokenPricing

    @classmethod
    def calculate(cls, usage: TokenUsage, pricing: TokenPricing) -> "CostEstimate":
        # Reasoning tokens are billed as output.
        output_tokens = usage.completion_tokens + (usage.reasoning_tokens or 0)
        usd = (
            usage.prompt_tokens * pricing.input_per_1m
            + output_tokens * pricing.output_per_1m
        ) / 1_000_000
        return cls(usd=usd, pricing=pricing)
