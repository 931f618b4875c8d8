"""Error taxonomy for the orchestration engine.

Only structural failures are raised; recoverable ones (planning, tool
execution, sub-workflow attempts) are converted into state by the nodes.
"""

from __future__ import annotations


class OrchestrationError(RuntimeError):
    """Base error for failures that terminate a task."""

    def __init__(self, message: str | None = None) -> None:
        self.message = message or self.__class__.__name__
        super().__init__(self.message)


class RegistryError(OrchestrationError):
    pass


class ToolNotRecognizedError(OrchestrationError):
    def __init__(self, tool_name: str) -> None:
        self.tool_name = tool_name
        super().__init__(f"Tool not recognized: {tool_name!r}")


class NoToolCallError(OrchestrationError):
    pass


class NoMoreStepsError(OrchestrationError):
    pass


class EvidenceOrderError(OrchestrationError):
    def __init__(self, step_ids: list[str]) -> None:
        self.step_ids = step_ids
        super().__init__(f"Input references steps that have not run yet: {', '.join(step_ids)}")


class ThreadBusyError(OrchestrationError):
    def __init__(self, thread_id: str) -> None:
        self.thread_id = thread_id
        super().__init__(f"Thread {thread_id!r} already has a task in flight")


class ToolResponseError(OrchestrationError):
    """Raised by the tool bridge for malformed or uncorrelated responses."""


class CheckpointConflictError(OrchestrationError):
    pass
