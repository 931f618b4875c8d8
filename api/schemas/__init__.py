"""API request/response schemas (Pydantic)."""

from api.schemas.requests import StateUpdate, TaskRequest, ToolResponseIn
from api.schemas.responses import (
    CheckpointCreated,
    CheckpointList,
    CheckpointMetadataOut,
    CheckpointOut,
    TaskCreated,
    ToolResponseAck,
)

__all__ = [
    "TaskRequest",
    "ToolResponseIn",
    "StateUpdate",
    "TaskCreated",
    "ToolResponseAck",
    "CheckpointMetadataOut",
    "CheckpointOut",
    "CheckpointList",
    "CheckpointCreated",
]
