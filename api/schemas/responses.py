"""Response schemas."""

from __future__ import annotations

from typing import Any, Literal

from pydantic import BaseModel


class TaskCreated(BaseModel):
    task_id: str
    thread_id: str
    status: str = "started"


class ToolResponseAck(BaseModel):
    complete: bool
    waiting_for: list[str] = []


class CheckpointMetadataOut(BaseModel):
    source: Literal["input", "loop", "update"]
    step: int
    writes: dict[str, Any] | None = None


class CheckpointOut(BaseModel):
    thread_id: str
    checkpoint_id: str
    parent_checkpoint_id: str | None = None
    state: dict[str, Any]
    metadata: CheckpointMetadataOut


class CheckpointList(BaseModel):
    items: list[CheckpointOut] = []
    next_before: str | None = None


class CheckpointCreated(BaseModel):
    thread_id: str
    checkpoint_id: str
