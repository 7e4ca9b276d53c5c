"""Chat sessions: one current session per repository and client, append-only messages."""

from __future__ import annotations

import asyncio
import uuid
from datetime import datetime
from typing import Callable

from .errors import InvalidInputError
from .schema import ChatMessage, ChatSession, MessageRole, utcnow
from .store import DocumentStore


class SessionStore:
    def __init__(self, store: DocumentStore, clock: Callable[[], datetime] = utcnow):
        self.store = store
        self.clock = clock

    async def get_or_create_session(self, repo_id: str, client_id: str = "default") -> ChatSession:
        """Idempotent: returns the existing current session when there is one."""
        await asyncio.to_thread(self.store.require_repository, repo_id)
        return await asyncio.to_thread(
            self.store.get_or_create_session, repo_id, client_id, uuid.uuid4().hex, self.clock()
        )

    async def start_new_session(self, repo_id: str, client_id: str = "default") -> ChatSession:
        """Open a fresh current session; the previous one is kept, not merged."""
        await asyncio.to_thread(self.store.require_repository, repo_id)
        return await asyncio.to_thread(
            self.store.start_new_session, repo_id, client_id, uuid.uuid4().hex, self.clock()
        )

    async def append_message(self, session_id: str, role: MessageRole, content: str) -> ChatMessage:
        if not content.strip():
            raise InvalidInputError("Message content is empty")
        message = ChatMessage(id=uuid.uuid4().hex, role=role, content=content, timestamp=self.clock())
        await asyncio.to_thread(self.store.append_message, session_id, message)
        return message

    async def load_messages(self, session_id: str, limit: int | None = None) -> list[ChatMessage]:
        """All messages in order. `limit` trims to the latest N at read time only."""
        return await asyncio.to_thread(self.store.load_messages, session_id, limit)
