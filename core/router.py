"""Routing: pure decision of the next node from the orchestration state."""

from __future__ import annotations

import logging
from typing import Callable

from core.errors import NoMoreStepsError, ToolNotRecognizedError
from core.registry import AgentRegistry
from core.state import Step, TaskState

logger = logging.getLogger(__name__)

SOLVE = "solve"
DIRECT = "direct"


def current_step(state: TaskState) -> Step:
    """Next step without evidence; steps run strictly in plan order."""
    steps = state.get("steps") or []
    done = len(state.get("evidence") or {})
    if done >= len(steps):
        raise NoMoreStepsError(f"All {len(steps)} steps already have evidence")
    return steps[done]


def route(state: TaskState, registry: AgentRegistry) -> str:
    steps = state.get("steps") or []
    evidence = state.get("evidence") or {}

    if steps and len(evidence) == len(steps):
        return SOLVE
    if state.get("direct_response") is not None or not steps:
        return DIRECT

    step = current_step(state)
    if step.tool_name not in registry:
        logger.error("Plan step %s uses unknown tool %r", step.step_id, step.tool_name)
        raise ToolNotRecognizedError(step.tool_name)
    return step.tool_name


def make_router(registry: AgentRegistry) -> Callable[[TaskState], str]:
    def _route(state: TaskState) -> str:
        next_node = route(state, registry)
        logger.info("Routing to %s", next_node)
        return next_node

    return _route
