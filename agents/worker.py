"""Worker nodes: run one plan step through a tool-bound model or a sub-workflow."""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Sequence

from langchain_core.language_models import BaseChatModel
from langchain_core.messages import HumanMessage, SystemMessage
from langchain_core.runnables import Runnable, RunnableConfig
from langchain_core.tools import BaseTool
from langchain_core.utils.function_calling import convert_to_openai_tool
from pydantic import BaseModel

from config import settings
from core.errors import EvidenceOrderError, NoMoreStepsError, NoToolCallError, ToolNotRecognizedError
from core.evidence import SubstitutionMode, resolve_input, serialize_result
from core.llm import make_llm
from core.router import current_step
from core.state import Step, TaskContext, TaskState, task_context
from core.tool_bridge import ToolInvocation

if TYPE_CHECKING:
    from subgraphs.base import SubWorkflow

logger = logging.getLogger(__name__)

AGENT_ERROR_MESSAGE = "Error in agent execution, please try again or contact support."

# Structural failures end the task instead of becoming evidence.
FATAL_ERRORS = (ToolNotRecognizedError, NoToolCallError, EvidenceOrderError, NoMoreStepsError)


def tool_name(tool: BaseTool | dict | type[BaseModel]) -> str:
    if isinstance(tool, BaseTool):
        return tool.name
    return convert_to_openai_tool(tool)["function"]["name"]


@dataclass
class AgentSpec:
    """A model bound to a fixed tool catalog. `force_tool` pins tool_choice to the first tool."""

    name: str
    prompt: str
    tools: Sequence[BaseTool | dict | type[BaseModel]]
    model: BaseChatModel | None = None
    force_tool: bool = True
    description: str = ""
    _bound: Runnable | None = field(default=None, init=False, repr=False)

    @property
    def tool_choice(self) -> str:
        return tool_name(self.tools[0]) if self.force_tool else "auto"

    def bound_model(self) -> Runnable:
        if self._bound is None:
            model = self.model or make_llm(settings.openai_model)
            self._bound = model.bind_tools(list(self.tools), tool_choice=self.tool_choice)
        return self._bound


def evidence_from_results(results: dict[str, Any]) -> str:
    """One result is stored as-is; several become a JSON object keyed by tool name."""
    if len(results) == 1:
        return serialize_result(next(iter(results.values())))
    return json.dumps(
        {name: serialize_result(value) for name, value in results.items()},
        ensure_ascii=False,
    )


async def _emit_step(ctx: TaskContext, step: Step, status: str, **extra: Any) -> None:
    await ctx.emit(
        "step",
        {"stepId": step.step_id, "toolName": step.tool_name, "status": status, **extra},
    )


def make_agent_node(spec: AgentSpec, *, substitution: SubstitutionMode | None = None):
    mode = substitution or settings.evidence_substitution

    async def agent_node(state: TaskState, config: RunnableConfig) -> dict:
        ctx = task_context(config)
        step = current_step(state)
        resolved = resolve_input(step.raw_input, state.get("evidence"), mode=mode)
        await _emit_step(ctx, step, "PENDING")

        try:
            response = await spec.bound_model().ainvoke(
                [SystemMessage(content=spec.prompt), HumanMessage(content=resolved)]
            )
            tool_calls = getattr(response, "tool_calls", None) or []
            if not tool_calls:
                raise NoToolCallError(f"{spec.name} answered without a tool call")
            invocations = [ToolInvocation(call["name"], call.get("args") or {}) for call in tool_calls]
            evidence = evidence_from_results(await ctx.call_tools(invocations))
            status = "COMPLETED"
        except FATAL_ERRORS:
            raise
        except Exception as e:
            logger.error("Agent %s failed on %s: %s", spec.name, step.step_id, e)
            evidence = AGENT_ERROR_MESSAGE
            status = "FAILED"

        logger.info("%s %s -> %r", spec.name, step.step_id, evidence[:200])
        await _emit_step(ctx, step, status, result=evidence)
        return {"evidence": {step.step_id: evidence}, "selected_agent": spec.name}

    agent_node.__name__ = f"{spec.name}_node"
    return agent_node


def subworkflow_node(workflow: SubWorkflow, *, substitution: SubstitutionMode | None = None):
    """Adapt a sub-workflow to the step contract: its final result is the evidence."""
    mode = substitution or settings.evidence_substitution

    async def node(state: TaskState, config: RunnableConfig) -> dict:
        ctx = task_context(config)
        step = current_step(state)
        resolved = resolve_input(step.raw_input, state.get("evidence"), mode=mode)
        await _emit_step(ctx, step, "PENDING")

        try:
            outcome = await workflow.run(resolved, config, task=state.get("task", ""))
            evidence = outcome.final_result
            status = "COMPLETED" if outcome.succeeded else "FAILED"
            logger.info(
                "%s finished with %s after %s attempts (undo=%s)",
                workflow.name,
                outcome.status,
                outcome.attempts,
                outcome.undo_invoked,
            )
        except FATAL_ERRORS:
            raise
        except Exception as e:
            logger.error("Sub-workflow %s failed on %s: %s", workflow.name, step.step_id, e)
            evidence = AGENT_ERROR_MESSAGE
            status = "FAILED"

        await _emit_step(ctx, step, status, result=evidence)
        return {"evidence": {step.step_id: evidence}, "selected_agent": workflow.name}

    node.__name__ = f"{workflow.name}_node"
    return node
