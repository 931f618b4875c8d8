"""Task API: WebSocket channel, REST + SSE streaming and thread history."""

from __future__ import annotations

import asyncio
import json
import logging
from uuid import uuid4

from fastapi import APIRouter, HTTPException, Query, Request, WebSocket, WebSocketDisconnect
from sse_starlette.sse import EventSourceResponse
from starlette.websockets import WebSocketState

from api.schemas import (
    CheckpointCreated,
    CheckpointList,
    CheckpointMetadataOut,
    CheckpointOut,
    StateUpdate,
    TaskCreated,
    TaskRequest,
    ToolResponseAck,
    ToolResponseIn,
)
from api.sessions import SessionRegistry
from config import settings
from core.errors import OrchestrationError, ThreadBusyError, ToolResponseError
from core.orchestrator import Orchestrator
from core.tool_bridge import CompositeToolCallback, LocalToolExecutor, ToolResponseBroker
from memory.checkpoints import Checkpoint
from tools import LOCAL_TOOLS

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api")


def _orchestrator(app) -> Orchestrator:
    return app.state.orchestrator


def _sessions(app) -> SessionRegistry:
    return app.state.sessions


def _checkpoint_out(checkpoint: Checkpoint) -> CheckpointOut:
    return CheckpointOut(
        thread_id=checkpoint.thread_id,
        checkpoint_id=checkpoint.checkpoint_id,
        parent_checkpoint_id=checkpoint.parent_checkpoint_id,
        state=checkpoint.state,
        metadata=CheckpointMetadataOut(**checkpoint.metadata.as_dict()),
    )


@router.post("/tasks", response_model=TaskCreated)
async def start_task(body: TaskRequest, request: Request) -> TaskCreated:
    """Start a task. Progress and client tool requests stream from /tasks/{task_id}/stream."""
    orchestrator = _orchestrator(request.app)
    thread_id = body.thread_id or str(uuid4())
    try:
        orchestrator.claim(thread_id)
    except ThreadBusyError as e:
        raise HTTPException(status_code=409, detail=e.message) from e

    sessions = _sessions(request.app)
    session = sessions.create(thread_id)
    sessions.start(session, orchestrator, body.task, claimed=True)
    return TaskCreated(task_id=session.task_id, thread_id=thread_id, status="started")


@router.get("/tasks/{task_id}/stream")
async def stream_task(task_id: str, request: Request) -> EventSourceResponse:
    session = _sessions(request.app).get(task_id)
    if session is None:
        raise HTTPException(status_code=404, detail="Task not found")

    async def event_generator():
        try:
            while True:
                if await request.is_disconnected():
                    break
                try:
                    event = await asyncio.wait_for(session.queue.get(), timeout=60.0)
                except asyncio.TimeoutError:
                    yield {"event": "ping", "data": "{}"}
                    continue
                if event is None:
                    break
                event_type = event.get("type", "unknown")
                payload = {"taskId": task_id, "threadId": session.thread_id, **event.get("data", {})}
                yield {"event": event_type, "data": json.dumps(payload, default=str)}
                if event_type in ("done", "error"):
                    break
        except asyncio.CancelledError:
            logger.info("SSE stream cancelled for task %s", task_id)

    return EventSourceResponse(event_generator())


@router.post("/tasks/{task_id}/tool-response", response_model=ToolResponseAck)
async def tool_response(task_id: str, body: ToolResponseIn, request: Request) -> ToolResponseAck:
    session = _sessions(request.app).get(task_id)
    if session is None or session.broker is None:
        raise HTTPException(status_code=404, detail="Task not found")
    try:
        complete = session.broker.deliver(body.response)
    except ToolResponseError as e:
        raise HTTPException(status_code=409, detail=e.message) from e
    return ToolResponseAck(complete=complete, waiting_for=sorted(session.broker.waiting_for))


@router.get("/threads/{thread_id}/state", response_model=CheckpointOut)
async def thread_state(thread_id: str, request: Request) -> CheckpointOut:
    checkpoint = await _orchestrator(request.app).store.get(thread_id)
    if checkpoint is None:
        raise HTTPException(status_code=404, detail="Thread not found")
    return _checkpoint_out(checkpoint)


@router.post("/threads/{thread_id}/state", response_model=CheckpointCreated)
async def update_thread_state(thread_id: str, body: StateUpdate, request: Request) -> CheckpointCreated:
    try:
        checkpoint_id = await _orchestrator(request.app).update_state(thread_id, body.values)
    except ThreadBusyError as e:
        raise HTTPException(status_code=409, detail=e.message) from e
    except (ValueError, TypeError) as e:
        raise HTTPException(status_code=422, detail=str(e)) from e
    return CheckpointCreated(thread_id=thread_id, checkpoint_id=checkpoint_id)


@router.get("/threads/{thread_id}/checkpoints", response_model=CheckpointList)
async def thread_checkpoints(
    thread_id: str,
    request: Request,
    limit: int = Query(default=20, ge=1, le=200),
    before: str | None = None,
) -> CheckpointList:
    store = _orchestrator(request.app).store
    items = [_checkpoint_out(c) async for c in store.list(thread_id, limit=limit, before=before)]
    next_before = items[-1].checkpoint_id if len(items) == limit else None
    return CheckpointList(items=items, next_before=next_before)


@router.websocket("/ws")
async def task_socket(websocket: WebSocket) -> None:
    """
    Message channel. Inbound: {type: "query", task, threadId} and
    {type: "toolResponse", response}. Outbound: {type: <event>, ...data}.
    """
    await websocket.accept()
    orchestrator = _orchestrator(websocket.app)

    async def send_event(event_type: str, data: dict) -> None:
        if websocket.application_state == WebSocketState.CONNECTED:
            await websocket.send_json({"type": event_type, **data})

    broker = ToolResponseBroker(send_event, timeout=settings.tool_response_timeout)
    tools = CompositeToolCallback(LocalToolExecutor(LOCAL_TOOLS), broker)
    runner: asyncio.Task | None = None

    async def run_query(task: str, thread_id: str) -> None:
        try:
            outcome = await orchestrator.run(task, thread_id, tools=tools, send_event=send_event)
            logger.info("Thread %s finished run %s", thread_id, outcome.run_id)
        except OrchestrationError as e:
            logger.exception("Task failed on thread %s", thread_id)
            await send_event("error", {"message": e.message, "errorType": type(e).__name__})
        except Exception as e:
            logger.exception("Task failed on thread %s: %s", thread_id, e)
            await send_event("error", {"message": str(e), "errorType": "agent_error"})

    try:
        while True:
            raw = await websocket.receive_text()
            try:
                message = json.loads(raw)
            except json.JSONDecodeError:
                await send_event("error", {"message": "Messages must be JSON"})
                continue
            kind = message.get("type") if isinstance(message, dict) else None
            if kind == "query":
                if runner is not None and not runner.done():
                    await send_event("error", {"message": "A task is already running on this connection"})
                    continue
                task = (message.get("task") or "").strip()
                if not task:
                    await send_event("error", {"message": "Query needs a non-empty task"})
                    continue
                thread_id = message.get("threadId") or str(uuid4())
                runner = asyncio.create_task(run_query(task, thread_id))
            elif kind == "toolResponse":
                try:
                    broker.deliver(message.get("response"))
                except ToolResponseError as e:
                    await send_event("error", {"message": e.message})
            else:
                await send_event("error", {"message": f"Unknown message type: {kind!r}"})
    except WebSocketDisconnect:
        logger.info("WebSocket disconnected")
    finally:
        broker.cancel()
        if runner is not None and not runner.done():
            runner.cancel()
