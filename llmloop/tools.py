"""
llmloop - Tool definitions, results and the mode-gated tool registry.

Usage:
    ```python
    from llmloop import ToolRegistry, ToolMode, define_tool

    @define_tool(description="Read a UTF-8 text file.", parameters={
        "type": "object",
        "properties": {"path": {"type": "string"}},
        "required": ["path"],
    })
    async def read(path: str) -> str:
        ...

    registry = ToolRegistry(ToolMode.READ_ONLY)
    registry.register(read)
    ```
"""

import re
import threading
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Optional

from .models import ToolDefinition

DEFAULT_MAX_BYTES = 100 * 1024

MIN_HEX_BLOB_LEN = 128
MIN_BASE64_BLOB_LEN = 256

_HEX_BLOB_RE = re.compile(r"[0-9a-fA-F]+")
_BASE64_CHARS_RE = re.compile(r"[A-Za-z0-9+/=_\-]+")
_SHELL_SYNTAX_RE = re.compile(r"[$`|><;&\\]")


class ToolMode(str, Enum):
    """Permission level of a run.

    READ_ONLY exposes only tools that do not mutate anything; FULL exposes
    every registered tool.
    """

    READ_ONLY = "read_only"
    FULL = "full"


class ToolFailureKind(str, Enum):
    """Why a tool call did not produce output."""

    NOT_FOUND = "not_found"
    BLOCKED_BY_MODE = "blocked_by_mode"
    INVALID_ARGUMENTS = "invalid_arguments"
    TIMEOUT = "timeout"
    EXECUTION_ERROR = "execution_error"


@dataclass(frozen=True)
class ToolResult:
    """Outcome of one tool execution."""

    success: bool
    content: str = ""
    error: Optional[str] = None
    failure_kind: Optional[ToolFailureKind] = None
    truncated: bool = False

    @classmethod
    def ok(cls, content: str, max_bytes: int = DEFAULT_MAX_BYTES) -> "ToolResult":
        """Build a success result, bounding the content to ``max_bytes``."""
        bounded, truncated = truncate_output(content, max_bytes)
        return cls(success=True, content=bounded, truncated=truncated)

    @classmethod
    def failure(cls, kind: ToolFailureKind, error: str) -> "ToolResult":
        return cls(success=False, error=error, failure_kind=kind)

    def as_message_content(self) -> str:
        """Text shown to the model in the tool-result message."""
        if self.success:
            return self.content
        return f"Error: {self.error}"

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": self.success,
            "content": self.content,
            "error": self.error,
            "failure_kind": self.failure_kind.value if self.failure_kind else None,
            "truncated": self.truncated,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ToolResult":
        kind = data.get("failure_kind")
        return cls(
            success=data.get("success", False),
            content=data.get("content", ""),
            error=data.get("error"),
            failure_kind=ToolFailureKind(kind) if kind else None,
            truncated=data.get("truncated", False),
        )


@dataclass
class ToolDef:
    """Definition for a tool the model can call.

    The ``handler`` receives the validated arguments as keyword arguments
    and may be a plain function or a coroutine function. It returns a
    string, a ToolResult, or any JSON-serializable value.

    Example::

        ToolDef(
            name="write",
            description="Write a file.",
            parameters={
                "type": "object",
                "properties": {
                    "path": {"type": "string"},
                    "content": {"type": "string"},
                },
                "required": ["path", "content"],
            },
            handler=write_file,
            mutating=True,
        )
    """

    name: str
    description: str
    parameters: dict = field(
        default_factory=lambda: {"type": "object", "properties": {}}
    )
    handler: Optional[Callable] = None
    mutating: bool = False

    def to_definition(self) -> ToolDefinition:
        """Return the provider-facing definition."""
        return ToolDefinition(
            name=self.name,
            description=self.description,
            json_schema=self.parameters,
        )

    def allowed_in(self, mode: ToolMode) -> bool:
        return mode == ToolMode.FULL or not self.mutating


def define_tool(
    name: Optional[str] = None,
    description: str = "",
    parameters: Optional[dict] = None,
    mutating: bool = False,
) -> Callable[[Callable], ToolDef]:
    """Decorator that turns a function into a :class:`ToolDef`.

    The function's ``__name__`` is used as the tool name unless *name* is
    supplied explicitly, and its docstring is used when *description* is
    empty.
    """

    def decorator(func: Callable) -> ToolDef:
        tool_name = name or func.__name__
        return ToolDef(
            name=tool_name,
            description=description or (func.__doc__ or "").strip() or f"Tool: {tool_name}",
            parameters=parameters or {"type": "object", "properties": {}},
            handler=func,
            mutating=mutating,
        )

    return decorator


class ToolRegistry:
    """Name-keyed tool catalog filtered by the active mode."""

    def __init__(self, mode: ToolMode = ToolMode.FULL):
        self.mode = mode
        self._tools: dict[str, ToolDef] = {}
        self._lock = threading.Lock()

    def register(self, tool: ToolDef) -> None:
        """Register a tool, replacing any tool with the same name."""
        if tool.handler is None:
            raise ValueError(f"tool '{tool.name}' has no handler")
        with self._lock:
            self._tools[tool.name] = tool

    def exists(self, name: str) -> bool:
        """Whether a tool is registered, regardless of mode."""
        with self._lock:
            return name in self._tools

    def get(self, name: str) -> Optional[ToolDef]:
        """Look up a tool usable in the registry's mode."""
        with self._lock:
            tool = self._tools.get(name)
        if tool is None or not tool.allowed_in(self.mode):
            return None
        return tool

    def is_tool_allowed(self, name: str, mode: ToolMode) -> bool:
        with self._lock:
            tool = self._tools.get(name)
        return tool is not None and tool.allowed_in(mode)

    def is_blocked_by_mode(self, name: str) -> bool:
        """Registered, but not usable in the current mode."""
        with self._lock:
            tool = self._tools.get(name)
        return tool is not None and not tool.allowed_in(self.mode)

    def list_available(self) -> list[str]:
        with self._lock:
            tools = list(self._tools.values())
        return sorted(t.name for t in tools if t.allowed_in(self.mode))

    def schemas_for_api(self) -> list[ToolDefinition]:
        """Definitions of every tool usable in the current mode, sorted by name."""
        with self._lock:
            tools = list(self._tools.values())
        return [
            t.to_definition()
            for t in sorted(tools, key=lambda t: t.name)
            if t.allowed_in(self.mode)
        ]


def truncate_output(text: str, max_bytes: int = DEFAULT_MAX_BYTES) -> tuple[str, bool]:
    """Cut ``text`` to at most ``max_bytes`` UTF-8 bytes on a character boundary."""
    encoded = text.encode("utf-8")
    if len(encoded) <= max_bytes:
        return text, False
    cut = encoded[:max_bytes].decode("utf-8", errors="ignore")
    return f"{cut}\n\n[output truncated at {max_bytes} bytes]", True


def _classify_blob(token: str) -> Optional[str]:
    stripped = _SHELL_SYNTAX_RE.sub("", token)
    if len(stripped) >= MIN_HEX_BLOB_LEN and _HEX_BLOB_RE.fullmatch(stripped):
        return "hex"
    if len(stripped) >= MIN_BASE64_BLOB_LEN and _BASE64_CHARS_RE.fullmatch(stripped):
        return "base64"
    return None


def sanitize_tool_output(raw: str, max_bytes: int = DEFAULT_MAX_BYTES) -> tuple[str, int]:
    """Prepare tool output for the conversation.

    Removes NUL bytes, replaces long hex and base64 runs with a placeholder
    and bounds the result to ``max_bytes``.

    Returns:
        The sanitized text and the number of blobs omitted.
    """
    omitted = 0
    parts = re.split(r"(\s+)", raw.replace("\x00", ""))
    for i, part in enumerate(parts):
        if not part or part.isspace():
            continue
        kind = _classify_blob(part)
        if kind:
            stripped = _SHELL_SYNTAX_RE.sub("", part)
            parts[i] = f"[{kind} blob omitted: {len(stripped)} chars]"
            omitted += 1
    content, _ = truncate_output("".join(parts), max_bytes)
    return content, omitted
