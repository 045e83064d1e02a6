"""
Tool-call extraction and field resolution.

Providers and proxies disagree on where a call's name, arguments and id
live. resolve_tool_call() applies one fixed precedence order:

    name:      name > function.name > tool_name
    arguments: arguments > function.arguments > {}
    call id:   call_id > id > tool_call_id

Arguments given as JSON strings are decoded; anything that does not decode
to an object becomes {}.
"""

import json
from dataclasses import dataclass, field
from typing import Any

from responsekit.config.logging import get_logger

logger = get_logger(__name__)

TOOL_CALL_TYPES = frozenset({"function_call", "tool_call"})


@dataclass(frozen=True)
class ToolCallRequest:
    name: str
    call_id: str
    arguments: dict[str, Any] = field(default_factory=dict)


def extract_tool_calls(response: dict[str, Any]) -> list[dict[str, Any]]:
    """Return the tool/function call items of a response's output."""
    return [
        item
        for item in response.get("output") or []
        if isinstance(item, dict) and item.get("type") in TOOL_CALL_TYPES
    ]


def _first(*values: Any) -> Any:
    for value in values:
        if value not in (None, ""):
            return value
    return None


def _decode_arguments(raw: Any) -> dict[str, Any]:
    if isinstance(raw, dict):
        return raw
    if isinstance(raw, str) and raw.strip():
        try:
            decoded = json.loads(raw)
        except ValueError:
            logger.warning(f"Undecodable tool call arguments: {raw[:200]}")
            return {}
        return decoded if isinstance(decoded, dict) else {}
    return {}


def resolve_tool_call(item: dict[str, Any]) -> ToolCallRequest | None:
    """
    Resolve name, arguments and call id of one call item.

    Returns None (after logging a warning) when the name or call id is missing.
    """
    function = item.get("function") if isinstance(item.get("function"), dict) else {}

    name = _first(item.get("name"), function.get("name"), item.get("tool_name"))
    call_id = _first(item.get("call_id"), item.get("id"), item.get("tool_call_id"))

    if not name or not call_id:
        logger.warning(f"Skipping malformed tool call (name={name!r}, call_id={call_id!r})")
        return None

    raw_arguments = item.get("arguments")
    if raw_arguments is None:
        raw_arguments = function.get("arguments")

    return ToolCallRequest(
        name=str(name),
        call_id=str(call_id),
        arguments=_decode_arguments(raw_arguments),
    )


def to_jsonable(value: Any) -> Any:
    """Coerce a tool result into plain JSON types."""
    return json.loads(json.dumps(value, default=str))


def function_call_output(call_id: str, output: Any) -> dict[str, Any]:
    """Input item returning one call's output to the model."""
    if not isinstance(output, str):
        output = json.dumps(output, default=str, ensure_ascii=False)
    return {"type": "function_call_output", "call_id": call_id, "output": output}
