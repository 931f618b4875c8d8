"""Runs tasks through the compiled graph and checkpoints every transition."""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, field
from typing import Any

from config import settings
from core.errors import ThreadBusyError
from core.state import (
    SendEvent,
    Step,
    TaskContext,
    TaskState,
    TASK_STATE_KEYS,
    build_initial_state,
    make_config,
    state_from_snapshot,
    state_to_snapshot,
)
from core.tool_bridge import ToolCallback
from memory.checkpoints import CheckpointMetadata, CheckpointStore

logger = logging.getLogger(__name__)


@dataclass
class TaskOutcome:
    thread_id: str
    run_id: str
    result: str
    direct: bool
    steps: list[Step] = field(default_factory=list)
    evidence: dict[str, str] = field(default_factory=dict)
    checkpoint_id: str | None = None


class Orchestrator:
    """
    One task per thread at a time. Each run starts from the thread's latest
    checkpoint, keeps only its conversation history and resets everything else.
    """

    def __init__(
        self,
        runnable: Any,
        store: CheckpointStore,
        *,
        recursion_limit: int | None = None,
    ) -> None:
        self.runnable = runnable
        self.store = store
        self.recursion_limit = recursion_limit or settings.recursion_limit
        self._busy: set[str] = set()

    def is_busy(self, thread_id: str) -> bool:
        return thread_id in self._busy

    def claim(self, thread_id: str) -> None:
        """Mark the thread busy before its run is scheduled. Raises ThreadBusyError if it already is."""
        if thread_id in self._busy:
            raise ThreadBusyError(thread_id)
        self._busy.add(thread_id)

    def release(self, thread_id: str) -> None:
        self._busy.discard(thread_id)

    async def load_state(self, thread_id: str) -> TaskState | None:
        latest = await self.store.get(thread_id)
        return state_from_snapshot(latest.state) if latest else None

    async def run(
        self,
        task: str,
        thread_id: str,
        *,
        tools: ToolCallback | None = None,
        send_event: SendEvent | None = None,
        run_id: str | None = None,
        claimed: bool = False,
    ) -> TaskOutcome:
        """Run one task on the thread. `claimed` means the caller already holds the thread through `claim`."""
        if not claimed:
            self.claim(thread_id)
        try:
            return await self._run(task, thread_id, tools, send_event, run_id or str(uuid.uuid4()))
        finally:
            self.release(thread_id)

    async def _run(
        self,
        task: str,
        thread_id: str,
        tools: ToolCallback | None,
        send_event: SendEvent | None,
        run_id: str,
    ) -> TaskOutcome:
        previous = await self.load_state(thread_id)
        history = (previous or {}).get("history") or []
        state = build_initial_state(task, run_id=run_id, thread_id=thread_id, history=history)
        ctx = TaskContext(thread_id=thread_id, run_id=run_id, tools=tools, send_event=send_event)
        config = make_config(ctx, recursion_limit=self.recursion_limit)

        logger.info("Run %s on thread %s: %r (%s prior turns)", run_id, thread_id, task, len(history))
        checkpoint_id = await self.store.put(
            thread_id, state, CheckpointMetadata(source="input", step=-1, writes=None)
        )

        step = 0
        writes: dict[str, Any] = {}
        async for mode, chunk in self.runnable.astream(
            state, config, stream_mode=["updates", "values"]
        ):
            if mode == "updates":
                for node, update in (chunk or {}).items():
                    writes[node] = state_to_snapshot(update or {})
                continue
            if not writes:
                # The initial values event repeats the input already checkpointed.
                state = chunk
                continue
            state = chunk
            checkpoint_id = await self.store.put(
                thread_id, state, CheckpointMetadata(source="loop", step=step, writes=writes)
            )
            writes = {}
            step += 1

        steps = list(state.get("steps") or [])
        return TaskOutcome(
            thread_id=thread_id,
            run_id=run_id,
            result=state.get("result") or "",
            direct=not steps,
            steps=steps,
            evidence=dict(state.get("evidence") or {}),
            checkpoint_id=checkpoint_id,
        )

    async def update_state(self, thread_id: str, values: dict[str, Any]) -> str:
        """Write a manual correction on top of the latest checkpoint."""
        unknown = set(values) - TASK_STATE_KEYS
        if unknown:
            raise ValueError(f"Unknown state keys: {', '.join(sorted(unknown))}")
        if self.is_busy(thread_id):
            raise ThreadBusyError(thread_id)

        latest = await self.store.get(thread_id)
        base: dict[str, Any] = state_from_snapshot(latest.state) if latest else {}
        step = latest.metadata.step + 1 if latest else 0
        merged = {**base, **state_from_snapshot(state_to_snapshot(values))}
        checkpoint_id = await self.store.put(
            thread_id,
            merged,
            CheckpointMetadata(source="update", step=step, writes={"update": state_to_snapshot(values)}),
        )
        logger.info("Manual update %s on thread %s: %s", checkpoint_id, thread_id, sorted(values))
        return checkpoint_id
