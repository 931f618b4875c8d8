"""Orchestration state schema for the graph (single source of truth)."""

from __future__ import annotations

import operator
from dataclasses import asdict, dataclass, field
from typing import TYPE_CHECKING, Annotated, Any, Awaitable, Callable, TypedDict

from langchain_core.messages import AIMessage, BaseMessage, HumanMessage
from langchain_core.runnables import RunnableConfig

if TYPE_CHECKING:
    from core.tool_bridge import ToolCallback, ToolInvocation


SendEvent = Callable[[str, dict], Awaitable[Any]]


@dataclass(frozen=True)
class Step:
    """One plan unit: `Plan: <description> <step_id> = <tool_name>[<raw_input>]`."""

    description: str
    step_id: str
    tool_name: str
    raw_input: str


@dataclass(frozen=True)
class ConversationTurn:
    """A (human, ai) exchange kept as conversational memory across tasks."""

    user: str
    assistant: str

    @property
    def entries(self) -> tuple[tuple[str, str], tuple[str, str]]:
        return (("human", self.user), ("ai", self.assistant))

    def as_messages(self) -> list[BaseMessage]:
        return [HumanMessage(content=self.user), AIMessage(content=self.assistant)]


def merge_evidence(current: dict[str, str] | None, update: dict[str, str] | None) -> dict[str, str]:
    return {**(current or {}), **(update or {})}


class TaskState(TypedDict, total=False):
    """
    State of one in-flight task. Evidence merges per step; history is
    append-only so turns from earlier tasks on the thread are never rewritten.
    """

    task: str
    run_id: str
    thread_id: str
    plan_string: str
    steps: list[Step]
    evidence: Annotated[dict[str, str], merge_evidence]
    selected_agent: str
    result: str
    direct_response: str | None
    history: Annotated[list[ConversationTurn], operator.add]


TASK_STATE_KEYS = frozenset(TaskState.__annotations__)


def build_initial_state(
    task: str,
    *,
    run_id: str,
    thread_id: str,
    history: list[ConversationTurn] | None = None,
) -> TaskState:
    """Fresh run-scoped fields; only the conversation history carries over."""
    return {
        "task": task,
        "run_id": run_id,
        "thread_id": thread_id,
        "plan_string": "",
        "steps": [],
        "evidence": {},
        "selected_agent": "",
        "result": "",
        "direct_response": None,
        "history": list(history or []),
    }


def state_to_snapshot(state: dict[str, Any]) -> dict[str, Any]:
    """Plain dict/list/str form of a state, as stored in checkpoints."""
    snapshot: dict[str, Any] = {}
    for key, value in state.items():
        if key == "steps":
            snapshot[key] = [asdict(s) if isinstance(s, Step) else dict(s) for s in value or []]
        elif key == "history":
            snapshot[key] = [
                asdict(t) if isinstance(t, ConversationTurn) else dict(t) for t in value or []
            ]
        elif key == "evidence":
            snapshot[key] = dict(value or {})
        else:
            snapshot[key] = value
    return snapshot


def state_from_snapshot(snapshot: dict[str, Any]) -> TaskState:
    state: dict[str, Any] = dict(snapshot)
    if "steps" in state:
        state["steps"] = [Step(**s) for s in state["steps"] or []]
    if "history" in state:
        state["history"] = [ConversationTurn(**t) for t in state["history"] or []]
    return state  # type: ignore[return-value]


@dataclass
class TaskContext:
    """
    Per-run collaborators handed to every node through
    config["configurable"]["task_context"]. Not part of the state, so it is
    never checkpointed.
    """

    thread_id: str = ""
    run_id: str = ""
    tools: ToolCallback | None = None
    send_event: SendEvent | None = None
    metadata: dict[str, Any] = field(default_factory=dict)

    async def emit(self, event_type: str, data: dict) -> None:
        if self.send_event is None:
            return
        await self.send_event(event_type, data)

    async def call_tools(self, invocations: list[ToolInvocation]) -> dict[str, Any]:
        if self.tools is None:
            raise RuntimeError("No tool callback configured for this task")
        return await self.tools(invocations)


def task_context(config: RunnableConfig | None) -> TaskContext:
    configurable = (config or {}).get("configurable") or {}
    ctx = configurable.get("task_context")
    if isinstance(ctx, TaskContext):
        return ctx
    return TaskContext(thread_id=configurable.get("thread_id", ""))


def make_config(ctx: TaskContext, *, recursion_limit: int | None = None) -> RunnableConfig:
    config: RunnableConfig = {
        "configurable": {"thread_id": ctx.thread_id, "task_context": ctx},
    }
    if recursion_limit:
        config["recursion_limit"] = recursion_limit
    return config
