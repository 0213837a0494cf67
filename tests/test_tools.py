"""Tests for tool definitions, the registry and output sanitization."""

import pytest

from llmloop.tools import (
    ToolDef,
    ToolFailureKind,
    ToolMode,
    ToolRegistry,
    ToolResult,
    define_tool,
    sanitize_tool_output,
    truncate_output,
)


def _noop(**kwargs):
    return "ok"


def make_registry(mode=ToolMode.FULL) -> ToolRegistry:
    registry = ToolRegistry(mode)
    registry.register(ToolDef(name="read", description="Read", handler=_noop))
    registry.register(ToolDef(name="write", description="Write", handler=_noop, mutating=True))
    return registry


class TestToolRegistry:
    def test_full_mode_exposes_everything(self):
        registry = make_registry()
        assert registry.list_available() == ["read", "write"]
        assert [d.name for d in registry.schemas_for_api()] == ["read", "write"]

    def test_read_only_hides_mutating_tools(self):
        registry = make_registry(ToolMode.READ_ONLY)
        assert registry.list_available() == ["read"]
        assert registry.get("write") is None
        assert registry.exists("write")
        assert registry.is_blocked_by_mode("write")
        assert not registry.is_blocked_by_mode("missing")

    def test_is_tool_allowed_per_mode(self):
        registry = make_registry(ToolMode.READ_ONLY)
        assert registry.is_tool_allowed("write", ToolMode.FULL)
        assert not registry.is_tool_allowed("write", ToolMode.READ_ONLY)
        assert not registry.is_tool_allowed("nope", ToolMode.FULL)

    def test_register_replaces_same_name(self):
        registry = make_registry()
        registry.register(ToolDef(name="read", description="Second", handler=_noop))
        assert registry.get("read").description == "Second"

    def test_register_requires_handler(self):
        with pytest.raises(ValueError, match="no handler"):
            ToolRegistry().register(ToolDef(name="x", description="x"))

    def test_definition_carries_schema(self):
        schema = {"type": "object", "properties": {"path": {"type": "string"}}}
        tool = ToolDef(name="read", description="Read", parameters=schema, handler=_noop)
        definition = tool.to_definition()
        assert definition.json_schema == schema
        assert definition.to_dict()["parameters"] == schema


class TestDefineTool:
    def test_uses_function_name_and_docstring(self):
        @define_tool()
        def list_files(path: str) -> str:
            """List a directory."""
            return path

        assert isinstance(list_files, ToolDef)
        assert list_files.name == "list_files"
        assert list_files.description == "List a directory."
        assert list_files.parameters == {"type": "object", "properties": {}}

    def test_explicit_fields(self):
        @define_tool(name="rm", description="Delete", mutating=True)
        def delete(path: str) -> str:
            return path

        assert delete.name == "rm"
        assert delete.mutating
        assert delete.handler("x") == "x"


class TestToolResult:
    def test_ok_truncates(self):
        result = ToolResult.ok("abcdef", max_bytes=3)
        assert result.truncated
        assert result.content.startswith("abc")

    def test_failure_message_content(self):
        result = ToolResult.failure(ToolFailureKind.NOT_FOUND, "tool 'x' not found in registry")
        assert not result.success
        assert result.as_message_content() == "Error: tool 'x' not found in registry"

    def test_dict_round_trip_keeps_failure_kind(self):
        result = ToolResult.failure(ToolFailureKind.TIMEOUT, "slow")
        data = result.to_dict()
        assert data["failure_kind"] == "timeout"
        assert ToolResult.from_dict(data) == result


class TestTruncateOutput:
    def test_short_text_untouched(self):
        assert truncate_output("hello", 10) == ("hello", False)

    def test_cuts_on_character_boundary(self):
        text, truncated = truncate_output("héllo", 2)
        assert truncated
        assert text.startswith("h\n\n[output truncated at 2 bytes]")


class TestSanitizeToolOutput:
    def test_strips_nul_bytes(self):
        assert sanitize_tool_output("a\x00b") == ("ab", 0)

    def test_replaces_hex_blob(self):
        blob = "ab" * 80
        content, omitted = sanitize_tool_output(f"digest: {blob} end")
        assert omitted == 1
        assert content == "digest: [hex blob omitted: 160 chars] end"

    def test_replaces_base64_blob(self):
        blob = "QUJD" * 80
        content, omitted = sanitize_tool_output(blob)
        assert omitted == 1
        assert "base64 blob omitted" in content

    def test_keeps_ordinary_text(self):
        text = "line one\n  line two with words"
        assert sanitize_tool_output(text) == (text, 0)

    def test_bounds_output(self):
        content, _ = sanitize_tool_output("word " * 100, max_bytes=20)
        assert "[output truncated at 20 bytes]" in content
