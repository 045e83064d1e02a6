"""SQLAlchemy ORM tables backing SqlRecordStore."""

from datetime import UTC, datetime

from sqlalchemy import (
    JSON,
    Column,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
)
from sqlalchemy.orm import declarative_base

Base = declarative_base()


def _now() -> datetime:
    return datetime.now(UTC)


class TimestampMixin:
    created_at = Column(DateTime(timezone=True), default=_now, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=_now, onupdate=_now, nullable=False)


class AuditRecordRow(TimestampMixin, Base):
    __tablename__ = "audit_records"

    id = Column(Integer, primary_key=True, autoincrement=True)
    correlation_key = Column(String(255), nullable=False, index=True)
    request_payload = Column(Text, nullable=False)
    response_payload = Column(Text, nullable=True)
    status = Column(String(32), nullable=False, default="pending")
    owner_pid = Column(Integer, nullable=True)
    owner_start_time = Column(Integer, nullable=True)
    conversation_ref = Column(String(255), nullable=True, index=True)
    comments = Column(Text, nullable=False, default="")
    duration_seconds = Column(Float, nullable=True)

    __table_args__ = (
        Index("ix_audit_records_owner", "owner_pid", "owner_start_time"),
    )


class ConversationRow(TimestampMixin, Base):
    __tablename__ = "conversations"

    id = Column(Integer, primary_key=True, autoincrement=True)
    remote_conversation_id = Column(String(255), nullable=False, unique=True)
    owner_user = Column(String(255), nullable=False)
    status = Column(String(32), nullable=False, default="active")

    __table_args__ = (
        Index("ix_conversations_owner_status", "owner_user", "status"),
    )


class ToolCallRow(TimestampMixin, Base):
    __tablename__ = "tool_calls"

    id = Column(Integer, primary_key=True, autoincrement=True)
    audit_record_id = Column(
        Integer, ForeignKey("audit_records.id", ondelete="CASCADE"), nullable=False
    )
    correlation_key = Column(String(255), nullable=False, index=True)
    function_name = Column(String(255), nullable=False, index=True)
    arguments = Column(JSON, nullable=False, default=dict)
    output = Column(JSON, nullable=True)
    status = Column(String(32), nullable=False, default="pending")
    error_message = Column(Text, nullable=True)
    duration_seconds = Column(Float, nullable=True)


class TemplateRow(TimestampMixin, Base):
    __tablename__ = "templates"

    id = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(String(255), nullable=False, unique=True)
    instructions = Column(Text, nullable=True)
    model = Column(String(255), nullable=True)
    tools = Column(JSON, nullable=True)
    temperature = Column(Float, nullable=True)
    response_format = Column(String(32), nullable=True)
    json_schema = Column(JSON, nullable=True)


class TemplateFileRow(TimestampMixin, Base):
    __tablename__ = "template_files"

    id = Column(Integer, primary_key=True, autoincrement=True)
    template_id = Column(
        Integer, ForeignKey("templates.id", ondelete="CASCADE"), nullable=False, index=True
    )
    file_url = Column(String(2048), nullable=False)
    file_name = Column(String(255), nullable=True)
    file_type = Column(String(16), nullable=False, default="txt")
    content_hash = Column(String(64), nullable=True, index=True)
    remote_file_id = Column(String(255), nullable=True)
    remote_index_id = Column(String(255), nullable=True)
    upload_status = Column(String(32), nullable=False, default="pending")
    error_message = Column(Text, nullable=True)
