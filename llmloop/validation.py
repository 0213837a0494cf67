"""
llmloop - Validation of model-supplied tool arguments.

Arguments arrive as a JSON string assembled from streamed fragments. Before
any tool runs, the string is parsed and checked against the tool's declared
JSON schema with ``jsonschema``. Unknown properties are accepted unless the
schema itself forbids them, so additions on either side do not break older
peers.
"""

import json
from typing import Any

from jsonschema import Draft202012Validator, SchemaError
from jsonschema.exceptions import best_match

from .exceptions import ToolError


def validate_tool_args(tool_name: str, arguments_json: str, schema: dict[str, Any]) -> Any:
    """Parse and check tool arguments.

    Args:
        tool_name: Tool being called, used in error messages.
        arguments_json: Raw argument string from the model. An empty string
            is read as ``{}``.
        schema: The tool's JSON schema.

    Returns:
        The parsed arguments (a dict for object schemas).

    Raises:
        ToolError: If the JSON is malformed, the arguments do not satisfy
            the schema or the schema itself is not valid JSON Schema.
    """
    text = arguments_json.strip() if arguments_json else ""
    try:
        arguments = json.loads(text) if text else {}
    except ValueError as e:
        raise ToolError(
            f"tool '{tool_name}': invalid JSON arguments: {e}", tool_name=tool_name
        ) from e

    try:
        Draft202012Validator.check_schema(schema)
    except SchemaError as e:
        raise ToolError(
            f"tool '{tool_name}': invalid parameter schema: {e.message}", tool_name=tool_name
        ) from e

    error = best_match(Draft202012Validator(schema).iter_errors(arguments))
    if error is not None:
        location = ".".join(str(part) for part in error.absolute_path)
        field = f"field '{location}': " if location else ""
        raise ToolError(
            f"tool '{tool_name}': invalid arguments: {field}{error.message}",
            tool_name=tool_name,
        )

    return arguments
