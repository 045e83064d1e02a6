"""
Persisted entities shared by the guard, the orchestrator and the synchronizer.

- AuditRecord: one row per external invocation attempt
- Conversation: a remote multi-turn context bound to one user
- ToolCallRecord: one function invocation requested by the model
- Template / TemplateFile: reusable request presets and their source documents

All entities are plain pydantic models. Stores hand out copies, so mutating
a model never changes persisted state; updates go through the store.
"""

from datetime import UTC, datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field


class InvalidTransitionError(Exception):
    """Raised when an audit record status change violates its lifecycle."""


class AuditStatus(str, Enum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"


# Rejected and orphaned attempts may fail straight out of pending.
_AUDIT_TRANSITIONS: dict[AuditStatus, frozenset[AuditStatus]] = {
    AuditStatus.PENDING: frozenset({AuditStatus.IN_PROGRESS, AuditStatus.FAILED}),
    AuditStatus.IN_PROGRESS: frozenset({AuditStatus.COMPLETED, AuditStatus.FAILED}),
    AuditStatus.COMPLETED: frozenset(),
    AuditStatus.FAILED: frozenset(),
}

TERMINAL_AUDIT_STATUSES = frozenset({AuditStatus.COMPLETED, AuditStatus.FAILED})


def check_audit_transition(current: AuditStatus, target: AuditStatus) -> None:
    """Raise InvalidTransitionError unless current -> target is allowed."""
    if target not in _AUDIT_TRANSITIONS[AuditStatus(current)]:
        raise InvalidTransitionError(
            f"Audit record cannot move from '{AuditStatus(current).value}' "
            f"to '{AuditStatus(target).value}'"
        )


class ConversationStatus(str, Enum):
    ACTIVE = "active"
    CLOSED = "closed"


class ToolCallStatus(str, Enum):
    PENDING = "pending"
    SUCCESS = "success"
    FAILED = "failed"


class UploadStatus(str, Enum):
    PENDING = "pending"
    UPLOADING = "uploading"
    COMPLETED = "completed"
    FAILED = "failed"


def _now() -> datetime:
    return datetime.now(UTC)


class AuditRecord(BaseModel):
    """
    One external request attempt and its lifecycle.

    correlation_key groups duplicate deliveries of the same logical request
    and is deliberately not unique. owner_pid/owner_start_time form the
    liveness fingerprint of the worker that created the row.
    """

    id: int | None = None
    correlation_key: str
    request_payload: str
    response_payload: str | None = None
    status: AuditStatus = AuditStatus.PENDING
    owner_pid: int | None = None
    owner_start_time: int | None = None
    conversation_ref: str | None = None
    comments: str = ""
    duration_seconds: float | None = None
    created_at: datetime = Field(default_factory=_now)
    updated_at: datetime = Field(default_factory=_now)

    model_config = ConfigDict(from_attributes=True)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_AUDIT_STATUSES


class Conversation(BaseModel):
    """A remote conversation context owned by one logical user."""

    id: int | None = None
    remote_conversation_id: str
    owner_user: str
    status: ConversationStatus = ConversationStatus.ACTIVE
    created_at: datetime = Field(default_factory=_now)
    updated_at: datetime = Field(default_factory=_now)

    model_config = ConfigDict(from_attributes=True)

    @property
    def is_active(self) -> bool:
        return self.status == ConversationStatus.ACTIVE


class ToolCallRecord(BaseModel):
    """A single function invocation made on behalf of the model."""

    id: int | None = None
    audit_record_id: int
    correlation_key: str
    function_name: str
    arguments: dict[str, Any] = Field(default_factory=dict)
    output: Any = None
    status: ToolCallStatus = ToolCallStatus.PENDING
    error_message: str | None = None
    duration_seconds: float | None = None
    created_at: datetime = Field(default_factory=_now)
    updated_at: datetime = Field(default_factory=_now)

    model_config = ConfigDict(from_attributes=True)


class Template(BaseModel):
    """Reusable request preset. Its files back a remote vector index."""

    id: int | None = None
    name: str
    instructions: str | None = None
    model: str | None = None
    tools: list[dict[str, Any]] | None = None
    temperature: float | None = None
    response_format: str | None = None
    json_schema: dict[str, Any] | None = None
    created_at: datetime = Field(default_factory=_now)
    updated_at: datetime = Field(default_factory=_now)

    model_config = ConfigDict(from_attributes=True)


class TemplateFile(BaseModel):
    """One source document in a template's manifest."""

    id: int | None = None
    template_id: int
    file_url: str = Field(description="http(s) URL, Google Docs URL or local filesystem path")
    file_name: str | None = None
    file_type: str = Field(default="txt", description="Extension used for export and upload")
    content_hash: str | None = None
    remote_file_id: str | None = None
    remote_index_id: str | None = None
    upload_status: UploadStatus = UploadStatus.PENDING
    error_message: str | None = None
    created_at: datetime = Field(default_factory=_now)
    updated_at: datetime = Field(default_factory=_now)

    model_config = ConfigDict(from_attributes=True)

    @property
    def is_uploaded(self) -> bool:
        return self.upload_status == UploadStatus.COMPLETED and bool(self.remote_file_id)
