"""Task sessions: event queue and tool broker per running task, expired after a TTL."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any
from uuid import uuid4

from core.errors import OrchestrationError
from core.orchestrator import Orchestrator
from core.tool_bridge import CompositeToolCallback, LocalToolExecutor, ToolResponseBroker
from tools import LOCAL_TOOLS

logger = logging.getLogger(__name__)


@dataclass
class TaskSession:
    task_id: str
    thread_id: str
    queue: asyncio.Queue = field(default_factory=asyncio.Queue)
    broker: ToolResponseBroker | None = None
    status: str = "running"
    result: dict[str, Any] | None = None
    runner: asyncio.Task | None = None

    async def send_event(self, event_type: str, data: dict) -> None:
        await self.queue.put({"type": event_type, "data": data})


class SessionRegistry:
    """App-owned map of task sessions. Finished sessions are dropped after `ttl_seconds`."""

    def __init__(self, ttl_seconds: float, *, tool_timeout: float | None = None) -> None:
        self.ttl_seconds = ttl_seconds
        self.tool_timeout = tool_timeout
        self._sessions: dict[str, TaskSession] = {}

    def __len__(self) -> int:
        return len(self._sessions)

    def create(self, thread_id: str) -> TaskSession:
        session = TaskSession(task_id=str(uuid4()), thread_id=thread_id)
        session.broker = ToolResponseBroker(session.send_event, timeout=self.tool_timeout)
        self._sessions[session.task_id] = session
        return session

    def get(self, task_id: str) -> TaskSession | None:
        return self._sessions.get(task_id)

    def expire(self, task_id: str) -> None:
        asyncio.get_running_loop().call_later(self.ttl_seconds, self._sessions.pop, task_id, None)

    def start(
        self, session: TaskSession, orchestrator: Orchestrator, task: str, *, claimed: bool = False
    ) -> asyncio.Task:
        session.runner = asyncio.create_task(self._run(session, orchestrator, task, claimed))
        return session.runner

    async def _run(self, session: TaskSession, orchestrator: Orchestrator, task: str, claimed: bool) -> None:
        tools = CompositeToolCallback(LocalToolExecutor(LOCAL_TOOLS), session.broker)
        try:
            outcome = await orchestrator.run(
                task,
                session.thread_id,
                tools=tools,
                send_event=session.send_event,
                run_id=session.task_id,
                claimed=claimed,
            )
            session.status = "completed"
            session.result = {"result": outcome.result, "checkpointId": outcome.checkpoint_id}
            await session.send_event("done", {"status": "complete", **session.result})
        except OrchestrationError as e:
            logger.exception("Task %s failed on thread %s", session.task_id, session.thread_id)
            session.status = "failed"
            await session.send_event("error", {"error": e.message, "type": type(e).__name__})
        except Exception as e:
            logger.exception("Task %s failed on thread %s: %s", session.task_id, session.thread_id, e)
            session.status = "failed"
            await session.send_event("error", {"error": str(e), "type": "agent_error"})
        finally:
            await session.queue.put(None)
            self.expire(session.task_id)

    async def close(self) -> None:
        runners = []
        for session in self._sessions.values():
            if session.broker is not None:
                session.broker.cancel()
            if session.runner is not None and not session.runner.done():
                session.runner.cancel()
                runners.append(session.runner)
        if runners:
            await asyncio.gather(*runners, return_exceptions=True)
        self._sessions.clear()
