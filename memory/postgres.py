"""Postgres checkpoint backend over a psycopg async connection pool."""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator

from psycopg.errors import UniqueViolation
from psycopg.rows import dict_row
from psycopg_pool import AsyncConnectionPool

from core.errors import CheckpointConflictError
from memory.checkpoints import StoredCheckpoint

logger = logging.getLogger(__name__)

SETUP_SQL = """
CREATE TABLE IF NOT EXISTS task_checkpoints (
    thread_id TEXT NOT NULL,
    checkpoint_id TEXT NOT NULL,
    parent_checkpoint_id TEXT,
    checkpoint_type TEXT NOT NULL,
    checkpoint BYTEA NOT NULL,
    metadata_type TEXT NOT NULL,
    metadata BYTEA NOT NULL,
    created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
    PRIMARY KEY (thread_id, checkpoint_id)
)
"""

COLUMNS = (
    "thread_id, checkpoint_id, parent_checkpoint_id, "
    "checkpoint_type, checkpoint, metadata_type, metadata"
)


def _record(row: dict) -> StoredCheckpoint:
    return StoredCheckpoint(
        thread_id=row["thread_id"],
        checkpoint_id=row["checkpoint_id"],
        parent_checkpoint_id=row["parent_checkpoint_id"],
        checkpoint_type=row["checkpoint_type"],
        checkpoint=bytes(row["checkpoint"]),
        metadata_type=row["metadata_type"],
        metadata=bytes(row["metadata"]),
    )


class PostgresCheckpointBackend:
    """Checkpoint rows keyed by (thread_id, checkpoint_id). Call `setup()` once before use."""

    def __init__(self, pool: AsyncConnectionPool) -> None:
        self.pool = pool

    async def setup(self) -> None:
        async with self.pool.connection() as conn:
            await conn.execute(SETUP_SQL)

    async def insert(self, record: StoredCheckpoint) -> None:
        try:
            async with self.pool.connection() as conn:
                await conn.execute(
                    f"INSERT INTO task_checkpoints ({COLUMNS}) VALUES (%s, %s, %s, %s, %s, %s, %s)",
                    (
                        record.thread_id,
                        record.checkpoint_id,
                        record.parent_checkpoint_id,
                        record.checkpoint_type,
                        record.checkpoint,
                        record.metadata_type,
                        record.metadata,
                    ),
                )
        except UniqueViolation as e:
            raise CheckpointConflictError(
                f"Checkpoint {record.checkpoint_id} already exists for thread {record.thread_id}"
            ) from e

    async def latest(self, thread_id: str) -> StoredCheckpoint | None:
        async with self.pool.connection() as conn:
            cur = await conn.execute(
                f"SELECT {COLUMNS} FROM task_checkpoints WHERE thread_id = %s "
                "ORDER BY checkpoint_id DESC LIMIT 1",
                (thread_id,),
            )
            row = await cur.fetchone()
        return _record(row) if row else None

    async def fetch(self, thread_id: str, checkpoint_id: str) -> StoredCheckpoint | None:
        async with self.pool.connection() as conn:
            cur = await conn.execute(
                f"SELECT {COLUMNS} FROM task_checkpoints WHERE thread_id = %s AND checkpoint_id = %s",
                (thread_id, checkpoint_id),
            )
            row = await cur.fetchone()
        return _record(row) if row else None

    async def scan(
        self, thread_id: str, *, before: str | None = None, limit: int | None = None
    ) -> AsyncIterator[StoredCheckpoint]:
        query = f"SELECT {COLUMNS} FROM task_checkpoints WHERE thread_id = %s"
        params: list = [thread_id]
        if before is not None:
            query += " AND checkpoint_id < %s"
            params.append(before)
        query += " ORDER BY checkpoint_id DESC"
        if limit is not None:
            query += " LIMIT %s"
            params.append(limit)
        async with self.pool.connection() as conn:
            cur = await conn.execute(query, params)
            rows = await cur.fetchall()
        for row in rows:
            yield _record(row)


@asynccontextmanager
async def postgres_backend(database_url: str):
    """Pool + backend for the app lifespan (avoids 'connection is closed')."""
    if not database_url:
        raise ValueError("DATABASE_URL is required for Postgres checkpoints")
    pool = AsyncConnectionPool(
        conninfo=database_url,
        min_size=1,
        max_size=4,
        max_idle=300,
        open=False,
        kwargs={
            "autocommit": True,
            "prepare_threshold": 0,
            "row_factory": dict_row,
        },
    )
    async with pool:
        backend = PostgresCheckpointBackend(pool)
        await backend.setup()
        logger.info("Postgres checkpoint backend ready")
        yield backend
