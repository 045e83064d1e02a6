"""
Abstract record store.

The guard, the orchestrator and the synchronizer only need single-row
create / update / find operations. No operation spans more than one row,
and none of them require a transaction beyond the read-modify-write of a
single row (appending a comment, for example).
"""

from abc import ABC, abstractmethod
from typing import Any

from responsekit.store.models import (
    AuditRecord,
    Conversation,
    ConversationStatus,
    Template,
    TemplateFile,
    ToolCallRecord,
)


class TemplateNotFoundError(LookupError):
    """Raised when a template cannot be resolved by id or name."""


class RecordStore(ABC):
    """
    Abstract base class for record stores.

    Implementations return detached copies of stored entities. Update
    methods take field names of the corresponding pydantic model and return
    the refreshed entity.
    """

    # --- Audit records ---------------------------------------------------

    @abstractmethod
    async def create_audit_record(self, record: AuditRecord) -> AuditRecord:
        """Persist a new audit record and return it with its id assigned."""

    @abstractmethod
    async def get_audit_record(self, record_id: int) -> AuditRecord | None:
        """Fetch an audit record by id."""

    @abstractmethod
    async def update_audit_record(self, record_id: int, **fields: Any) -> AuditRecord:
        """
        Update fields of an audit record.

        Raises:
            KeyError: If the record does not exist
        """

    @abstractmethod
    async def append_audit_comment(self, record_id: int, line: str) -> AuditRecord:
        """
        Append one line to the record's comment log.

        This is the only mutation allowed once a record is terminal.

        Raises:
            KeyError: If the record does not exist
        """

    @abstractmethod
    async def find_open_audit_records(
        self,
        correlation_key: str,
        exclude_id: int | None = None,
    ) -> list[AuditRecord]:
        """Return non-terminal records for a correlation key, oldest first."""

    # --- Conversations ---------------------------------------------------

    @abstractmethod
    async def create_conversation(self, conversation: Conversation) -> Conversation:
        """Persist a new conversation."""

    @abstractmethod
    async def list_active_conversations(self, owner_user: str) -> list[Conversation]:
        """Return the user's active conversations, oldest first."""

    @abstractmethod
    async def set_conversation_status(
        self,
        remote_conversation_id: str,
        status: ConversationStatus,
    ) -> Conversation | None:
        """Change a conversation's status. Returns None if it is unknown."""

    async def find_active_conversation(self, owner_user: str) -> Conversation | None:
        """Return the user's oldest active conversation, if any."""
        active = await self.list_active_conversations(owner_user)
        return active[0] if active else None

    # --- Tool calls ------------------------------------------------------

    @abstractmethod
    async def create_tool_call(self, record: ToolCallRecord) -> ToolCallRecord:
        """Persist a new tool call record."""

    @abstractmethod
    async def update_tool_call(self, record_id: int, **fields: Any) -> ToolCallRecord:
        """
        Update fields of a tool call record.

        Raises:
            KeyError: If the record does not exist
        """

    @abstractmethod
    async def list_tool_calls(self, audit_record_id: int) -> list[ToolCallRecord]:
        """Return tool calls made while handling one audit record."""

    # --- Templates -------------------------------------------------------

    @abstractmethod
    async def create_template(self, template: Template) -> Template:
        """Persist a new template."""

    @abstractmethod
    async def find_template(self, ref: int | str) -> Template | None:
        """Find a template by numeric id or by name."""

    @abstractmethod
    async def list_templates(self, with_files_only: bool = False) -> list[Template]:
        """Return templates, optionally only those that own at least one file."""

    @abstractmethod
    async def create_template_file(self, template_file: TemplateFile) -> TemplateFile:
        """Persist a new template file."""

    @abstractmethod
    async def list_template_files(self, template_id: int) -> list[TemplateFile]:
        """Return a template's files ordered by id."""

    @abstractmethod
    async def update_template_file(self, file_id: int, **fields: Any) -> TemplateFile:
        """
        Update fields of a template file.

        Raises:
            KeyError: If the file does not exist
        """

    @abstractmethod
    async def delete_template_file(self, file_id: int) -> None:
        """Remove a file from its template's manifest."""

    async def get_template(self, ref: int | str) -> Template:
        """
        Resolve a template by id or name.

        Raises:
            TemplateNotFoundError: If no template matches
        """
        template = await self.find_template(ref)
        if template is None:
            raise TemplateNotFoundError(f"Template not found: {ref}")
        return template

    async def list_index_ids(self, template_id: int) -> list[str]:
        """Return the distinct remote index ids bound to a template's files."""
        ids: list[str] = []
        for template_file in await self.list_template_files(template_id):
            if template_file.remote_index_id and template_file.remote_index_id not in ids:
                ids.append(template_file.remote_index_id)
        return ids

    async def close(self) -> None:
        """Release any held resources."""

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()
        return False
