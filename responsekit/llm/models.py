"""
Data models for the request orchestration layer.

- RequestConfig: immutable description of one logical request
- RequestBuilder: staged builder producing a RequestConfig
- Attachment / upload_attachment: files referenced from the last user message
- Result: tri-state outcome of RequestOrchestrator.execute()
"""

import json
import mimetypes
from enum import Enum
from pathlib import Path
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from responsekit.api.client import ResponsesApiClient
from responsekit.config.logging import get_logger
from responsekit.llm.tool_calls import extract_tool_calls
from responsekit.store.models import Template, ToolCallRecord

logger = get_logger(__name__)

UNSUPPORTED_FORMAT_HINT = "Unsupported format. Upload PDF or image (JPG/PNG/WEBP)."


class UnsupportedAttachmentError(ValueError):
    """Raised when a file cannot be attached to a request."""

    def __init__(self, message: str, hint: str = UNSUPPORTED_FORMAT_HINT):
        super().__init__(message)
        self.hint = hint


class FailureKind(str, Enum):
    """Category of a failed Result."""

    CONFIGURATION = "configuration"
    CONVERSATION = "conversation"
    CONTEXT_EXPIRED = "context_expired"
    UNSUPPORTED_INPUT = "unsupported_input"
    TOOL_ROUND_LIMIT = "tool_round_limit"
    API = "api"
    INTERNAL = "internal"


class ResponseFormat(str, Enum):
    TEXT = "text"
    JSON_OBJECT = "json_object"
    JSON_SCHEMA = "json_schema"


class AttachmentKind(str, Enum):
    IMAGE = "image"
    FILE = "file"


class Attachment(BaseModel):
    """An uploaded file referenced from the last user message."""

    file_id: str
    kind: AttachmentKind
    file_name: str | None = None

    model_config = ConfigDict(frozen=True)

    def content_block(self) -> dict[str, Any]:
        if self.kind == AttachmentKind.IMAGE:
            return {"type": "input_image", "file_id": self.file_id}
        return {"type": "input_file", "file_id": self.file_id}


_IMAGE_TYPES = frozenset({"image/jpeg", "image/png", "image/webp"})
_FILE_TYPES = frozenset({"application/pdf"})

# Not in every interpreter's default table.
mimetypes.add_type("image/webp", ".webp")


def classify_attachment(path: Path | str) -> AttachmentKind:
    """
    Decide how a local file is attached.

    Raises:
        UnsupportedAttachmentError: If the file is neither a supported image nor a PDF
    """
    mime_type, _ = mimetypes.guess_type(str(path))
    if mime_type in _IMAGE_TYPES:
        return AttachmentKind.IMAGE
    if mime_type in _FILE_TYPES:
        return AttachmentKind.FILE
    raise UnsupportedAttachmentError(f"Unsupported attachment type for {Path(path).name}: {mime_type}")


async def upload_attachment(client: ResponsesApiClient, path: Path | str) -> Attachment:
    """
    Upload a local file for use as a request attachment.

    Raises:
        UnsupportedAttachmentError: If the file type is not supported
        ApiError: If the upload fails
    """
    path = Path(path)
    kind = classify_attachment(path)
    uploaded = await client.upload_file(path, purpose="user_data")
    logger.debug(f"Uploaded attachment {path.name} as {uploaded['id']} ({kind.value})")
    return Attachment(file_id=uploaded["id"], kind=kind, file_name=path.name)


class RequestConfig(BaseModel):
    """
    Immutable description of one logical request.

    Every round of a tool-call exchange and every retry is built from the
    same RequestConfig, so later rounds cannot observe configuration drift.

    Attributes:
        correlation_key: Caller-supplied key used for deduplication
        message: Single user message (ignored when messages is set)
        messages: Pre-built input message list
        model: Model name, or None for LLMSettings.default_model
        instructions: System instructions
        tools: Tool definitions in the response API format
        response_format: Plain text, generic JSON object or JSON schema output
        json_schema: Schema for constrained JSON output
        temperature: Sampling temperature
        conversation_user: Logical user whose remote conversation is reused
        attachments: Files appended to the last user message
        template_id: Template whose vector indexes back a file_search tool
    """

    correlation_key: str
    message: str | None = None
    messages: tuple[dict[str, Any], ...] | None = None
    model: str | None = None
    instructions: str | None = None
    tools: tuple[dict[str, Any], ...] = ()
    response_format: ResponseFormat | None = None
    json_schema: dict[str, Any] | None = None
    temperature: float | None = None
    conversation_user: str | None = None
    attachments: tuple[Attachment, ...] = ()
    template_id: int | None = None

    model_config = ConfigDict(frozen=True)

    @property
    def conversation_mode(self) -> bool:
        return self.conversation_user is not None


class RequestBuilder:
    """
    Staged builder for RequestConfig.

    Example:
        >>> config = (
        ...     RequestBuilder("job-42")
        ...     .message("Summarize the attached invoice")
        ...     .attach(invoice)
        ...     .conversation("user-7")
        ...     .build()
        ... )
    """

    def __init__(self, correlation_key: str):
        self._fields: dict[str, Any] = {"correlation_key": correlation_key}
        self._tools: list[dict[str, Any]] = []
        self._attachments: list[Attachment] = []

    def message(self, text: str) -> "RequestBuilder":
        self._fields["message"] = text
        return self

    def messages(self, messages: list[dict[str, Any]]) -> "RequestBuilder":
        self._fields["messages"] = tuple(messages)
        return self

    def model(self, name: str) -> "RequestBuilder":
        self._fields["model"] = name
        return self

    def instructions(self, text: str) -> "RequestBuilder":
        self._fields["instructions"] = text
        return self

    def tools(self, tools: dict[str, Any] | list[dict[str, Any]]) -> "RequestBuilder":
        """Add tool definitions. A single tool object is accepted as well as a list."""
        if isinstance(tools, dict):
            tools = [tools]
        self._tools.extend(tools)
        return self

    def response_format(self, response_format: ResponseFormat | str) -> "RequestBuilder":
        self._fields["response_format"] = ResponseFormat(response_format)
        return self

    def json_schema(self, schema: dict[str, Any]) -> "RequestBuilder":
        self._fields["json_schema"] = schema
        return self

    def temperature(self, value: float) -> "RequestBuilder":
        self._fields["temperature"] = value
        return self

    def conversation(self, user: str) -> "RequestBuilder":
        self._fields["conversation_user"] = user
        return self

    def attach(self, attachment: Attachment) -> "RequestBuilder":
        self._attachments.append(attachment)
        return self

    def use_template(self, template: Template) -> "RequestBuilder":
        """Copy a template's settings and bind its vector indexes."""
        if template.instructions:
            self._fields["instructions"] = template.instructions
        if template.model:
            self._fields["model"] = template.model
        if template.tools:
            self.tools(template.tools)
        if template.temperature is not None:
            self._fields["temperature"] = template.temperature
        if template.response_format:
            self._fields["response_format"] = ResponseFormat(template.response_format)
        if template.json_schema:
            self._fields["json_schema"] = template.json_schema
        self._fields["template_id"] = template.id
        return self

    def build(self) -> RequestConfig:
        return RequestConfig(
            **self._fields,
            tools=tuple(self._tools),
            attachments=tuple(self._attachments),
        )


class ResultStatus(str, Enum):
    SUCCESS = "success"
    FAILED = "failed"
    IN_PROGRESS = "in_progress"


class Result(BaseModel):
    """
    Outcome of RequestOrchestrator.execute().

    IN_PROGRESS means another live attempt owns the correlation key. It is
    not a failure: callers should skip, not retry.
    """

    status: ResultStatus
    correlation_key: str
    response: dict[str, Any] | None = None
    error: str | None = None
    kind: FailureKind | None = None
    hint: str | None = None
    audit_record_id: int | None = None
    blocking_record_id: int | None = None
    conversation_id: str | None = None
    tool_calls: list[ToolCallRecord] = Field(default_factory=list)
    rounds: int = 0

    @classmethod
    def ok(cls, correlation_key: str, response: dict[str, Any], **fields: Any) -> "Result":
        return cls(status=ResultStatus.SUCCESS, correlation_key=correlation_key, response=response, **fields)

    @classmethod
    def failure(
        cls,
        correlation_key: str,
        error: str,
        kind: FailureKind,
        **fields: Any,
    ) -> "Result":
        return cls(
            status=ResultStatus.FAILED,
            correlation_key=correlation_key,
            error=error,
            kind=kind,
            **fields,
        )

    @classmethod
    def already_in_progress(cls, correlation_key: str, **fields: Any) -> "Result":
        return cls(status=ResultStatus.IN_PROGRESS, correlation_key=correlation_key, **fields)

    @property
    def success(self) -> bool:
        return self.status == ResultStatus.SUCCESS

    @property
    def failed(self) -> bool:
        return self.status == ResultStatus.FAILED

    @property
    def in_progress(self) -> bool:
        return self.status == ResultStatus.IN_PROGRESS

    @property
    def usage(self) -> dict[str, Any] | None:
        return (self.response or {}).get("usage")

    @property
    def model(self) -> str | None:
        return (self.response or {}).get("model")

    def text(self) -> str | None:
        """Text of the first output_text block of the first message item."""
        response = self.response or {}
        for item in response.get("output") or []:
            if item.get("type") != "message":
                continue
            for block in item.get("content") or []:
                if block.get("type") == "output_text":
                    return block.get("text")
        return response.get("output_text")

    def json(self) -> Any:
        """Output text decoded as JSON, or None if it is missing or not valid JSON."""
        text = self.text()
        if text is None:
            return None
        try:
            return json.loads(text)
        except ValueError:
            logger.debug(f"Output of '{self.correlation_key}' is not valid JSON")
            return None

    def function_calls(self) -> list[dict[str, Any]]:
        """Raw tool/function call items of the final response."""
        return extract_tool_calls(self.response or {})
