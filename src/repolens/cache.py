"""TTL cache for generated descriptions, backed by the document store."""

from __future__ import annotations

import asyncio
import hashlib
from contextlib import asynccontextmanager
from datetime import datetime, timedelta
from typing import AsyncIterator, Callable

from . import config
from .schema import CachedDescription, FileRecord, Subsystem, encode_path_key, utcnow
from .store import DocumentStore


def subsystem_key(repo_id: str, subsystem: Subsystem) -> str:
    """Content identity of a subsystem: its name and exact file set."""
    digest = hashlib.sha256()
    digest.update(subsystem.name.encode("utf-8"))
    for path in sorted(subsystem.files):
        digest.update(b"\0" + path.encode("utf-8"))
    return f"{repo_id}:subsystem:{digest.hexdigest()[:24]}"


def file_key(repo_id: str, record: FileRecord) -> str:
    """Blob sha when known, so an unchanged file keeps its explanation."""
    identity = record.sha or encode_path_key(record.path)
    return f"{repo_id}:file:{identity}"


def architecture_key(repo_id: str, tree_sha: str, subsystems: list[Subsystem]) -> str:
    digest = hashlib.sha256(tree_sha.encode("utf-8"))
    for subsystem in subsystems:
        digest.update(b"\0" + subsystem.name.encode("utf-8"))
        digest.update(str(len(subsystem.files)).encode("ascii"))
    return f"{repo_id}:architecture:{digest.hexdigest()[:24]}"


class DescriptionCache:
    """Time-to-live cache for generated text.

    `get_fresh` never returns an expired entry; `get_any` does, for use as a
    fallback when regeneration fails. Per-key locks let concurrent requests
    for the same key share one generation call.
    """

    def __init__(
        self,
        store: DocumentStore,
        ttl_hours: float = config.DESCRIPTION_TTL_HOURS,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.store = store
        self.ttl = timedelta(hours=ttl_hours)
        self.clock = clock
        self._locks: dict[str, asyncio.Lock] = {}
        # Holders plus waiters per key; the lock is dropped when this reaches zero
        self._users: dict[str, int] = {}

    @asynccontextmanager
    async def lock(self, key: str) -> AsyncIterator[None]:
        if key not in self._locks:
            self._locks[key] = asyncio.Lock()
        lock = self._locks[key]
        self._users[key] = self._users.get(key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._users[key] -= 1
            if not self._users[key]:
                del self._users[key]
                del self._locks[key]

    async def get_fresh(self, key: str) -> CachedDescription | None:
        entry = await asyncio.to_thread(self.store.get_cached, key)
        if entry is None or entry.is_expired(self.clock()):
            return None
        return entry

    async def get_any(self, key: str) -> CachedDescription | None:
        return await asyncio.to_thread(self.store.get_cached, key)

    async def put(self, key: str, content: str) -> CachedDescription:
        now = self.clock()
        entry = CachedDescription(key=key, content=content, generated_at=now, expires_at=now + self.ttl)
        await asyncio.to_thread(self.store.put_cached, entry)
        return entry

    async def invalidate(self, key: str) -> None:
        await asyncio.to_thread(self.store.delete_cached, key)
