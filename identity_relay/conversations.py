"""Caller conversation ids mapped to upstream thread ids."""

from __future__ import annotations

import logging
import uuid
from typing import Optional

from .store import SQLiteStore

LOG = logging.getLogger("identity-relay.conversations")

CONVERSATION_PREFIX = "conv_"


def new_conversation_id() -> str:
    return f"{CONVERSATION_PREFIX}{uuid.uuid4()}"


class ConversationMap:
    """Remembers which upstream thread continues which caller conversation.

    The first thread id reported for a conversation wins; later ids for the
    same conversation are ignored.
    """

    def __init__(self, store: SQLiteStore) -> None:
        self.store = store

    async def resolve(self, owner_id: str, conversation_id: str) -> Optional[str]:
        """Return the bound thread id, creating an unbound mapping if absent."""
        mapping, created = await self.store.call(
            self.store.conversations.get_or_create, owner_id, conversation_id
        )
        if created:
            LOG.debug("New conversation %s for %s", conversation_id, owner_id)
        return mapping.upstream_thread_id

    async def bind(self, owner_id: str, conversation_id: str, thread_id: str) -> bool:
        bound = await self.store.call(
            self.store.conversations.bind_thread, owner_id, conversation_id, thread_id
        )
        if bound:
            LOG.debug("Conversation %s bound to thread %s", conversation_id, thread_id)
        else:
            LOG.debug("Conversation %s already bound, ignoring thread %s", conversation_id, thread_id)
        return bound

    async def bulk_clear(self, owner_id: Optional[str] = None) -> int:
        n = await self.store.call(self.store.conversations.delete_all, owner_id)
        LOG.info("Cleared %d conversations (owner=%s)", n, owner_id or "*")
        return n

    async def count(self, owner_id: Optional[str] = None) -> int:
        return await self.store.call(self.store.conversations.count, owner_id)
