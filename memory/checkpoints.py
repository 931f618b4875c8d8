"""Per-thread checkpoint store.

Checkpoints are append-only: every `put` creates a new record whose parent is
the thread's previous latest checkpoint. Ids are uuid6 strings, ordered by
time, and forced to increase strictly within a thread so "latest" is simply the
maximum id. Snapshots are serialized with the checkpoint serde before they
reach a backend; backends only move bytes.
"""

from __future__ import annotations

import asyncio
import logging
from collections import defaultdict
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Literal, Protocol

from langgraph.checkpoint.base.id import uuid6
from langgraph.checkpoint.serde.base import SerializerProtocol
from langgraph.checkpoint.serde.jsonplus import JsonPlusSerializer

from core.errors import CheckpointConflictError
from core.state import state_to_snapshot

logger = logging.getLogger(__name__)

CheckpointSource = Literal["input", "loop", "update"]

@dataclass(frozen=True)
class CheckpointMetadata:
    source: CheckpointSource
    step: int
    writes: dict[str, Any] | None = None

    def as_dict(self) -> dict[str, Any]:
        return {"source": self.source, "step": self.step, "writes": self.writes}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> CheckpointMetadata:
        return cls(source=data["source"], step=int(data["step"]), writes=data.get("writes"))

@dataclass(frozen=True)
class Checkpoint:
    thread_id: str
    checkpoint_id: str
    parent_checkpoint_id: str | None
    state: dict[str, Any]
    metadata: CheckpointMetadata

    def as_record(self) -> dict[str, Any]:
        """Exposed persistence shape of one checkpoint."""
        return {
            "threadId": self.thread_id,
            "checkpointId": self.checkpoint_id,
            "parentCheckpointId": self.parent_checkpoint_id,
            "checkpoint": self.state,
            "metadata": self.metadata.as_dict(),
        }

@dataclass(frozen=True)
class StoredCheckpoint:
    """A checkpoint as a backend keeps it."""

    thread_id: str
    checkpoint_id: str
    parent_checkpoint_id: str | None
    checkpoint_type: str
    checkpoint: bytes
    metadata_type: str
    metadata: bytes

class CheckpointBackend(Protocol):
    async def insert(self, record: StoredCheckpoint) -> None: ...

    async def latest(self, thread_id: str) -> StoredCheckpoint | None: ...

    async def fetch(self, thread_id: str, checkpoint_id: str) -> StoredCheckpoint | None: ...

    def scan(
        self, thread_id: str, *, before: str | None = None, limit: int | None = None
    ) -> AsyncIterator[StoredCheckpoint]: ...

@dataclass
class InMemoryCheckpointBackend:
    """Serialized records per thread, kept sorted by id. For tests and single-process runs."""

    _threads: dict[str, dict[str, StoredCheckpoint]] = field(default_factory=lambda: defaultdict(dict))

    async def insert(self, record: StoredCheckpoint) -> None:
        thread = self._threads[record.thread_id]
        if record.checkpoint_id in thread:
            raise CheckpointConflictError(
                f"Checkpoint {record.checkpoint_id} already exists for thread {record.thread_id}"
            )
        thread[record.checkpoint_id] = record

    async def latest(self, thread_id: str) -> StoredCheckpoint | None:
        thread = self._threads.get(thread_id)
        if not thread:
            return None
        return thread[max(thread)]

    async def fetch(self, thread_id: str, checkpoint_id: str) -> StoredCheckpoint | None:
        return (self._threads.get(thread_id) or {}).get(checkpoint_id)

    async def scan(
        self, thread_id: str, *, before: str | None = None, limit: int | None = None
    ) -> AsyncIterator[StoredCheckpoint]:
        thread = self._threads.get(thread_id) or {}
        ids = sorted((cid for cid in thread if before is None or cid < before), reverse=True)
        if limit is not None:
            ids = ids[:limit]
        for cid in ids:
            yield thread[cid]

def _next_id(previous: str | None) -> str:
    checkpoint_id = str(uuid6())
    # uuid6 can repeat its timestamp within one clock tick; never go backwards.
    while previous is not None and checkpoint_id <= previous:
        checkpoint_id = str(uuid6())
    return checkpoint_id

class CheckpointStore:
    """Thread-scoped, append-only checkpoint history over a pluggable backend."""

    def __init__(
        self,
        backend: CheckpointBackend | None = None,
        *,
        serde: SerializerProtocol | None = None,
    ) -> None:
        self.backend: CheckpointBackend = backend or InMemoryCheckpointBackend()
        self.serde = serde or JsonPlusSerializer()
        # thread id -> (lock, holders and waiters); dropped when the count reaches zero
        self._locks: dict[str, tuple[asyncio.Lock, int]] = {}

    @asynccontextmanager
    async def _thread_lock(self, thread_id: str) -> AsyncIterator[None]:
        lock, users = self._locks.get(thread_id) or (asyncio.Lock(), 0)
        self._locks[thread_id] = (lock, users + 1)
        try:
            async with lock:
                yield
        finally:
            lock, users = self._locks[thread_id]
            if users == 1:
                del self._locks[thread_id]
            else:
                self._locks[thread_id] = (lock, users - 1)

    async def put(
        self,
        thread_id: str,
        state: dict[str, Any],
        metadata: CheckpointMetadata,
    ) -> str:
        async with self._thread_lock(thread_id):
            parent = await self.backend.latest(thread_id)
            parent_id = parent.checkpoint_id if parent else None
            checkpoint_id = _next_id(parent_id)
            checkpoint_type, checkpoint_bytes = self.serde.dumps_typed(state_to_snapshot(state))
            metadata_type, metadata_bytes = self.serde.dumps_typed(metadata.as_dict())
            await self.backend.insert(
                StoredCheckpoint(
                    thread_id=thread_id,
                    checkpoint_id=checkpoint_id,
                    parent_checkpoint_id=parent_id,
                    checkpoint_type=checkpoint_type,
                    checkpoint=checkpoint_bytes,
                    metadata_type=metadata_type,
                    metadata=metadata_bytes,
                )
            )
        logger.debug(
            "Checkpoint %s for thread %s (%s, step %s)", checkpoint_id, thread_id, metadata.source, metadata.step
        )
        return checkpoint_id

    async def get(self, thread_id: str, checkpoint_id: str | None = None) -> Checkpoint | None:
        """Latest checkpoint of the thread, or the one with `checkpoint_id`. None when absent."""
        if checkpoint_id is None:
            record = await self.backend.latest(thread_id)
        else:
            record = await self.backend.fetch(thread_id, checkpoint_id)
        return self._load(record) if record else None

    async def list(
        self,
        thread_id: str,
        limit: int | None = None,
        before: str | None = None,
    ) -> AsyncIterator[Checkpoint]:
        """Checkpoints of the thread, newest first, optionally only ids below `before`."""
        if limit is not None and limit <= 0:
            return
        async for record in self.backend.scan(thread_id, before=before, limit=limit):
            yield self._load(record)

    def _load(self, record: StoredCheckpoint) -> Checkpoint:
        state = self.serde.loads_typed((record.checkpoint_type, record.checkpoint))
        metadata = self.serde.loads_typed((record.metadata_type, record.metadata))
        return Checkpoint(
            thread_id=record.thread_id,
            checkpoint_id=record.checkpoint_id,
            parent_checkpoint_id=record.parent_checkpoint_id,
            state=state,
            metadata=CheckpointMetadata.from_dict(metadata),
        )
