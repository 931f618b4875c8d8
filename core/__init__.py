"""Core orchestration: state schema, plan grammar, routing and errors."""

from .errors import (
    EvidenceOrderError,
    NoMoreStepsError,
    NoToolCallError,
    OrchestrationError,
    RegistryError,
    ThreadBusyError,
    ToolNotRecognizedError,
)
from .state import ConversationTurn, Step, TaskContext, TaskState

__all__ = [
    "ConversationTurn",
    "EvidenceOrderError",
    "NoMoreStepsError",
    "NoToolCallError",
    "OrchestrationError",
    "RegistryError",
    "Step",
    "TaskContext",
    "TaskState",
    "ThreadBusyError",
    "ToolNotRecognizedError",
]
