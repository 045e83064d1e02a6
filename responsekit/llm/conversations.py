"""
Per-user remote conversation bookkeeping.

At most one active conversation per user is intended. Lookups and creation
are serialized per user inside this process; across processes two workers
can still both create one, so after creating, the manager re-reads the
active set and converges on the oldest, closing its own duplicate.
"""

import asyncio
from contextlib import asynccontextmanager
from typing import AsyncIterator

from responsekit.api.client import ResponsesApiClient
from responsekit.config.logging import get_logger
from responsekit.store.base import RecordStore
from responsekit.store.models import Conversation, ConversationStatus

logger = get_logger(__name__)


class ConversationManager:
    """
    Looks up, creates and closes remote conversations for logical users.

    Args:
        store: Record store holding Conversation rows
        client: API client used to create remote conversations
    """

    def __init__(self, store: RecordStore, client: ResponsesApiClient):
        self._store = store
        self._client = client
        # user -> (lock, number of callers holding or waiting for it)
        self._locks: dict[str, tuple[asyncio.Lock, int]] = {}

    @asynccontextmanager
    async def _user_lock(self, user: str) -> AsyncIterator[None]:
        lock, users = self._locks.get(user) or (asyncio.Lock(), 0)
        self._locks[user] = (lock, users + 1)
        try:
            async with lock:
                yield
        finally:
            lock, users = self._locks[user]
            if users == 1:
                del self._locks[user]
            else:
                self._locks[user] = (lock, users - 1)

    async def get_or_create(self, user: str, instructions: str | None = None) -> str:
        """
        Return the user's active remote conversation id, creating one if needed.

        Raises:
            ApiError: If the remote conversation cannot be created
        """
        async with self._user_lock(user):
            existing = await self._store.find_active_conversation(user)
            if existing is not None:
                logger.debug(f"Reusing conversation {existing.remote_conversation_id} for '{user}'")
                return existing.remote_conversation_id

            remote_id = await self._client.create_conversation(instructions)
            await self._store.create_conversation(
                Conversation(remote_conversation_id=remote_id, owner_user=user)
            )
            logger.info(f"Created conversation {remote_id} for '{user}'")

            active = await self._store.list_active_conversations(user)
            winner = active[0].remote_conversation_id if active else remote_id
            if winner != remote_id:
                await self._store.set_conversation_status(remote_id, ConversationStatus.CLOSED)
                logger.warning(
                    f"Concurrent conversation created for '{user}'; "
                    f"closed {remote_id} in favour of {winner}"
                )
            return winner

    async def close(self, remote_conversation_id: str) -> None:
        """Mark a conversation closed so the next call starts a fresh one."""
        updated = await self._store.set_conversation_status(
            remote_conversation_id, ConversationStatus.CLOSED
        )
        if updated is None:
            logger.warning(f"Cannot close unknown conversation {remote_conversation_id}")
        else:
            logger.info(f"Closed conversation {remote_conversation_id} for '{updated.owner_user}'")
