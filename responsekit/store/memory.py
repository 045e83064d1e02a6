"""In-process record store, used by tests and single-process embeddings."""

import itertools
from datetime import UTC, datetime
from typing import Any, TypeVar

from pydantic import BaseModel

from responsekit.store.base import RecordStore
from responsekit.store.models import (
    AuditRecord,
    Conversation,
    ConversationStatus,
    Template,
    TemplateFile,
    ToolCallRecord,
)

ModelT = TypeVar("ModelT", bound=BaseModel)


class InMemoryRecordStore(RecordStore):
    """
    Dictionary-backed RecordStore.

    Every read returns a deep copy so callers cannot mutate stored rows
    behind the store's back.
    """

    def __init__(self):
        self._ids = itertools.count(1)
        self.audit_records: dict[int, AuditRecord] = {}
        self.conversations: dict[int, Conversation] = {}
        self.tool_calls: dict[int, ToolCallRecord] = {}
        self.templates: dict[int, Template] = {}
        self.template_files: dict[int, TemplateFile] = {}

    def _insert(self, table: dict[int, ModelT], entity: ModelT) -> ModelT:
        stored = entity.model_copy(update={"id": next(self._ids)}, deep=True)
        table[stored.id] = stored
        return stored.model_copy(deep=True)

    def _update(self, table: dict[int, ModelT], entity_id: int, fields: dict[str, Any]) -> ModelT:
        if entity_id not in table:
            raise KeyError(entity_id)
        current = table[entity_id]
        # Round-trip through validation so enum/str coercion matches the SQL store.
        data = current.model_dump()
        data.update(fields)
        data["updated_at"] = datetime.now(UTC)
        updated = type(current).model_validate(data)
        table[entity_id] = updated
        return updated.model_copy(deep=True)

    # --- Audit records ---------------------------------------------------

    async def create_audit_record(self, record: AuditRecord) -> AuditRecord:
        return self._insert(self.audit_records, record)

    async def get_audit_record(self, record_id: int) -> AuditRecord | None:
        record = self.audit_records.get(record_id)
        return record.model_copy(deep=True) if record else None

    async def update_audit_record(self, record_id: int, **fields: Any) -> AuditRecord:
        return self._update(self.audit_records, record_id, fields)

    async def append_audit_comment(self, record_id: int, line: str) -> AuditRecord:
        if record_id not in self.audit_records:
            raise KeyError(record_id)
        comments = self.audit_records[record_id].comments + line
        return self._update(self.audit_records, record_id, {"comments": comments})

    async def find_open_audit_records(
        self,
        correlation_key: str,
        exclude_id: int | None = None,
    ) -> list[AuditRecord]:
        return [
            record.model_copy(deep=True)
            for record_id, record in sorted(self.audit_records.items())
            if record.correlation_key == correlation_key
            and record_id != exclude_id
            and not record.is_terminal
        ]

    # --- Conversations ---------------------------------------------------

    async def create_conversation(self, conversation: Conversation) -> Conversation:
        return self._insert(self.conversations, conversation)

    async def list_active_conversations(self, owner_user: str) -> list[Conversation]:
        return [
            conversation.model_copy(deep=True)
            for _, conversation in sorted(self.conversations.items())
            if conversation.owner_user == owner_user and conversation.is_active
        ]

    async def set_conversation_status(
        self,
        remote_conversation_id: str,
        status: ConversationStatus,
    ) -> Conversation | None:
        for conversation_id, conversation in self.conversations.items():
            if conversation.remote_conversation_id == remote_conversation_id:
                return self._update(self.conversations, conversation_id, {"status": status})
        return None

    # --- Tool calls ------------------------------------------------------

    async def create_tool_call(self, record: ToolCallRecord) -> ToolCallRecord:
        return self._insert(self.tool_calls, record)

    async def update_tool_call(self, record_id: int, **fields: Any) -> ToolCallRecord:
        return self._update(self.tool_calls, record_id, fields)

    async def list_tool_calls(self, audit_record_id: int) -> list[ToolCallRecord]:
        return [
            call.model_copy(deep=True)
            for _, call in sorted(self.tool_calls.items())
            if call.audit_record_id == audit_record_id
        ]

    # --- Templates -------------------------------------------------------

    async def create_template(self, template: Template) -> Template:
        return self._insert(self.templates, template)

    async def find_template(self, ref: int | str) -> Template | None:
        if isinstance(ref, int) or str(ref).isdigit():
            template = self.templates.get(int(ref))
        else:
            template = next((t for t in self.templates.values() if t.name == ref), None)
        return template.model_copy(deep=True) if template else None

    async def list_templates(self, with_files_only: bool = False) -> list[Template]:
        owners = {f.template_id for f in self.template_files.values()}
        return [
            template.model_copy(deep=True)
            for template_id, template in sorted(self.templates.items())
            if not with_files_only or template_id in owners
        ]

    async def create_template_file(self, template_file: TemplateFile) -> TemplateFile:
        return self._insert(self.template_files, template_file)

    async def list_template_files(self, template_id: int) -> list[TemplateFile]:
        return [
            template_file.model_copy(deep=True)
            for _, template_file in sorted(self.template_files.items())
            if template_file.template_id == template_id
        ]

    async def update_template_file(self, file_id: int, **fields: Any) -> TemplateFile:
        return self._update(self.template_files, file_id, fields)

    async def delete_template_file(self, file_id: int) -> None:
        self.template_files.pop(file_id, None)
