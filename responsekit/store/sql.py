"""
SQLAlchemy-backed record store.

Works with any SQLAlchemy async driver (asyncpg, aiosqlite, ...). Each
operation runs in its own short session and commits immediately, which
matches the single-row read-modify-write model the guard relies on.

Example:
    >>> async with SqlRecordStore("sqlite+aiosqlite:///data/responsekit.db") as store:
    ...     await store.create_all()
    ...     template = await store.get_template("support-bot")
"""

from enum import Enum
from typing import Any, TypeVar

from pydantic import BaseModel
from sqlalchemy import exists, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from responsekit.config.logging import get_logger
from responsekit.store.base import RecordStore
from responsekit.store.models import (
    AuditRecord,
    AuditStatus,
    Conversation,
    ConversationStatus,
    Template,
    TemplateFile,
    ToolCallRecord,
)
from responsekit.store.tables import (
    AuditRecordRow,
    Base,
    ConversationRow,
    TemplateFileRow,
    TemplateRow,
    ToolCallRow,
)

logger = get_logger(__name__)

ModelT = TypeVar("ModelT", bound=BaseModel)

_TERMINAL = (AuditStatus.COMPLETED.value, AuditStatus.FAILED.value)


def _column_values(fields: dict[str, Any]) -> dict[str, Any]:
    """Convert enum members to their stored string values."""
    return {
        key: value.value if isinstance(value, Enum) else value
        for key, value in fields.items()
    }


def _row_values(entity: BaseModel) -> dict[str, Any]:
    data = entity.model_dump(exclude={"id"})
    return _column_values(data)


class SqlRecordStore(RecordStore):
    """RecordStore implementation on an SQLAlchemy async engine."""

    def __init__(self, database_url: str, echo: bool = False):
        self.database_url = database_url
        self._engine = create_async_engine(database_url, echo=echo, pool_pre_ping=True)
        self._sessions = async_sessionmaker(
            bind=self._engine,
            expire_on_commit=False,
            autoflush=False,
            class_=AsyncSession,
        )

    async def create_all(self) -> None:
        """Create all tables that do not exist yet."""
        async with self._engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        logger.info(f"Schema ready at {self._engine.url.render_as_string(hide_password=True)}")

    async def close(self) -> None:
        await self._engine.dispose()

    async def _insert(self, row_type: type, entity: ModelT) -> ModelT:
        async with self._sessions() as session:
            row = row_type(**_row_values(entity))
            session.add(row)
            await session.commit()
            await session.refresh(row)
            return type(entity).model_validate(row)

    async def _update(
        self,
        row_type: type,
        model_type: type[ModelT],
        entity_id: int,
        fields: dict[str, Any],
    ) -> ModelT:
        async with self._sessions() as session:
            row = await session.get(row_type, entity_id)
            if row is None:
                raise KeyError(entity_id)
            for key, value in _column_values(fields).items():
                setattr(row, key, value)
            await session.commit()
            await session.refresh(row)
            return model_type.model_validate(row)

    async def _select(self, model_type: type[ModelT], stmt) -> list[ModelT]:
        async with self._sessions() as session:
            result = await session.execute(stmt)
            return [model_type.model_validate(row) for row in result.scalars().all()]

    # --- Audit records ---------------------------------------------------

    async def create_audit_record(self, record: AuditRecord) -> AuditRecord:
        return await self._insert(AuditRecordRow, record)

    async def get_audit_record(self, record_id: int) -> AuditRecord | None:
        async with self._sessions() as session:
            row = await session.get(AuditRecordRow, record_id)
            return AuditRecord.model_validate(row) if row else None

    async def update_audit_record(self, record_id: int, **fields: Any) -> AuditRecord:
        return await self._update(AuditRecordRow, AuditRecord, record_id, fields)

    async def append_audit_comment(self, record_id: int, line: str) -> AuditRecord:
        async with self._sessions() as session:
            async with session.begin():
                row = await session.get(AuditRecordRow, record_id, with_for_update=True)
                if row is None:
                    raise KeyError(record_id)
                row.comments = (row.comments or "") + line
            await session.refresh(row)
            return AuditRecord.model_validate(row)

    async def find_open_audit_records(
        self,
        correlation_key: str,
        exclude_id: int | None = None,
    ) -> list[AuditRecord]:
        stmt = (
            select(AuditRecordRow)
            .where(
                AuditRecordRow.correlation_key == correlation_key,
                AuditRecordRow.status.not_in(_TERMINAL),
            )
            .order_by(AuditRecordRow.id)
        )
        if exclude_id is not None:
            stmt = stmt.where(AuditRecordRow.id != exclude_id)
        return await self._select(AuditRecord, stmt)

    # --- Conversations ---------------------------------------------------

    async def create_conversation(self, conversation: Conversation) -> Conversation:
        return await self._insert(ConversationRow, conversation)

    async def list_active_conversations(self, owner_user: str) -> list[Conversation]:
        stmt = (
            select(ConversationRow)
            .where(
                ConversationRow.owner_user == owner_user,
                ConversationRow.status == ConversationStatus.ACTIVE.value,
            )
            .order_by(ConversationRow.id)
        )
        return await self._select(Conversation, stmt)

    async def set_conversation_status(
        self,
        remote_conversation_id: str,
        status: ConversationStatus,
    ) -> Conversation | None:
        async with self._sessions() as session:
            result = await session.execute(
                select(ConversationRow).where(
                    ConversationRow.remote_conversation_id == remote_conversation_id
                )
            )
            row = result.scalar_one_or_none()
            if row is None:
                return None
            row.status = ConversationStatus(status).value
            await session.commit()
            await session.refresh(row)
            return Conversation.model_validate(row)

    # --- Tool calls ------------------------------------------------------

    async def create_tool_call(self, record: ToolCallRecord) -> ToolCallRecord:
        return await self._insert(ToolCallRow, record)

    async def update_tool_call(self, record_id: int, **fields: Any) -> ToolCallRecord:
        return await self._update(ToolCallRow, ToolCallRecord, record_id, fields)

    async def list_tool_calls(self, audit_record_id: int) -> list[ToolCallRecord]:
        stmt = (
            select(ToolCallRow)
            .where(ToolCallRow.audit_record_id == audit_record_id)
            .order_by(ToolCallRow.id)
        )
        return await self._select(ToolCallRecord, stmt)

    # --- Templates -------------------------------------------------------

    async def create_template(self, template: Template) -> Template:
        return await self._insert(TemplateRow, template)

    async def find_template(self, ref: int | str) -> Template | None:
        if isinstance(ref, int) or str(ref).isdigit():
            condition = TemplateRow.id == int(ref)
        else:
            condition = TemplateRow.name == ref
        templates = await self._select(Template, select(TemplateRow).where(condition))
        return templates[0] if templates else None

    async def list_templates(self, with_files_only: bool = False) -> list[Template]:
        stmt = select(TemplateRow).order_by(TemplateRow.id)
        if with_files_only:
            stmt = stmt.where(
                exists().where(TemplateFileRow.template_id == TemplateRow.id)
            )
        return await self._select(Template, stmt)

    async def create_template_file(self, template_file: TemplateFile) -> TemplateFile:
        return await self._insert(TemplateFileRow, template_file)

    async def list_template_files(self, template_id: int) -> list[TemplateFile]:
        stmt = (
            select(TemplateFileRow)
            .where(TemplateFileRow.template_id == template_id)
            .order_by(TemplateFileRow.id)
        )
        return await self._select(TemplateFile, stmt)

    async def update_template_file(self, file_id: int, **fields: Any) -> TemplateFile:
        return await self._update(TemplateFileRow, TemplateFile, file_id, fields)

    async def delete_template_file(self, file_id: int) -> None:
        async with self._sessions() as session:
            row = await session.get(TemplateFileRow, file_id)
            if row is not None:
                await session.delete(row)
                await session.commit()
