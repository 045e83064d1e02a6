"""
Persistence for audit records, conversations, tool calls and templates.

- InMemoryRecordStore: process-local, for tests and embedding
- SqlRecordStore: SQLAlchemy async ORM on any async driver
"""

from responsekit.store.base import RecordStore, TemplateNotFoundError
from responsekit.store.memory import InMemoryRecordStore
from responsekit.store.sql import SqlRecordStore

__all__ = [
    "RecordStore",
    "TemplateNotFoundError",
    "InMemoryRecordStore",
    "SqlRecordStore",
]
