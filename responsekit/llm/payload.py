"""
Provider payload construction.

Turns a RequestConfig plus per-round state (input items, conversation id,
previous response id, vector indexes) into a response API request body.
"""

import copy
from typing import Any

from responsekit.config.logging import get_logger
from responsekit.llm.models import RequestConfig, ResponseFormat

logger = get_logger(__name__)


def validate_config(config: RequestConfig) -> str | None:
    """Return a configuration error message, or None if the config can be sent."""
    has_message = bool(config.message and config.message.strip())
    if not has_message and not config.messages:
        return "Either a message or a message list is required"
    if config.response_format == ResponseFormat.JSON_SCHEMA and not config.json_schema:
        return "JSON schema output requested but no schema configured"
    return None


def build_input(config: RequestConfig, conversation_active: bool = False) -> list[dict[str, Any]]:
    """
    Build the first-round input messages.

    A pre-built message list is used as-is. Otherwise the system instructions
    come first, except when a remote conversation already holds them, followed
    by the user message. Attachments go onto the last message if it is a user
    message.
    """
    if config.messages:
        messages = copy.deepcopy(list(config.messages))
    else:
        messages = []
        if config.instructions and not conversation_active:
            messages.append({"role": "system", "content": config.instructions})
        messages.append({"role": "user", "content": config.message})

    if config.attachments:
        _attach_to_last_user_message(messages, config)
    return messages


def _attach_to_last_user_message(messages: list[dict[str, Any]], config: RequestConfig) -> None:
    last = messages[-1] if messages else None
    if last is None or last.get("role") != "user":
        logger.warning(
            f"Request '{config.correlation_key}' has attachments but its last message "
            f"is not a user message; attachments ignored"
        )
        return

    content = last.get("content")
    if isinstance(content, str):
        content = [{"type": "input_text", "text": content}]
    elif content is None:
        content = []
    last["content"] = list(content) + [a.content_block() for a in config.attachments]


def response_format_directive(config: RequestConfig) -> dict[str, Any] | None:
    """
    The text.format directive, or None for the provider default.

    A configured schema takes precedence over any other format.
    """
    if config.json_schema:
        schema = config.json_schema
        if "schema" in schema:
            return {"type": "json_schema", "name": "response", **schema}
        return {"type": "json_schema", "name": "response", "schema": schema}
    if config.response_format == ResponseFormat.JSON_OBJECT:
        return {"type": "json_object"}
    if config.response_format == ResponseFormat.TEXT:
        return {"type": "text"}
    return None


def _tool_key(tool: dict[str, Any]) -> tuple:
    if tool.get("type") == "function":
        return ("function", tool.get("name") or (tool.get("function") or {}).get("name"))
    return (tool.get("type"),)


def merge_tools(*groups: list[dict[str, Any]] | tuple[dict[str, Any], ...]) -> list[dict[str, Any]]:
    """
    Concatenate tool lists, keeping the first tool of each kind.

    Function tools are distinct per name; every other tool type (file_search,
    web_search, ...) may appear once.
    """
    merged: list[dict[str, Any]] = []
    seen: set[tuple] = set()
    for group in groups:
        for tool in group:
            key = _tool_key(tool)
            if key in seen:
                continue
            seen.add(key)
            merged.append(copy.deepcopy(tool))
    return merged


def retrieval_tool(index_ids: list[str]) -> list[dict[str, Any]]:
    """A file_search tool over index_ids, or nothing if there are none."""
    if not index_ids:
        return []
    return [{"type": "file_search", "vector_store_ids": list(index_ids)}]


def build_payload(
    config: RequestConfig,
    input_items: list[dict[str, Any]],
    model: str,
    tools: list[dict[str, Any]] | None = None,
    conversation_id: str | None = None,
    previous_response_id: str | None = None,
) -> dict[str, Any]:
    """
    Assemble one request body.

    Args:
        config: The logical request
        input_items: Messages or function_call_output items for this round
        model: Resolved model name
        tools: Merged tool list
        conversation_id: Remote conversation to continue, if any
        previous_response_id: Response to chain from outside conversation mode
    """
    payload: dict[str, Any] = {"model": model, "input": input_items}

    if config.temperature is not None:
        payload["temperature"] = config.temperature

    text_format = response_format_directive(config)
    if text_format is not None:
        payload["text"] = {"format": text_format}

    if tools:
        payload["tools"] = tools

    if conversation_id:
        payload["conversation"] = conversation_id
    elif previous_response_id:
        payload["previous_response_id"] = previous_response_id

    return payload
