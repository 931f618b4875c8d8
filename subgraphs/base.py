"""Bounded self-correcting sub-workflow: prepare -> generate -> evaluate -> accept | retry | explore | rollback.

Each concrete workflow supplies the artifact schema, the prompts and four
hooks (prepare, execute, undo, finalize). The engine owns the counters:

- `attempt` counts generations; it only increases and never exceeds
  `max_attempts`.
- `insufficient_count` counts exploration rounds after a `maybe` verdict;
  once it reaches `max_insufficient_info` the next `maybe` is accepted.

Generation and evaluation errors are turned into an `incorrect` verdict with a
synthetic feedback message so they feed the retry loop. When retries run out,
workflows with side effects get exactly one compensating undo call.
"""

from __future__ import annotations

import json
import logging
import operator
from dataclasses import dataclass
from typing import Annotated, Any, Literal, TypedDict

from langchain_core.language_models import BaseChatModel
from langchain_core.messages import BaseMessage, HumanMessage, SystemMessage
from langchain_core.runnables import RunnableConfig
from langgraph.graph import END, StateGraph
from pydantic import BaseModel, Field

from config import settings
from core.evidence import serialize_result
from core.llm import ainvoke_structured, make_llm
from core.state import TaskContext, make_config, task_context
from core.tool_bridge import ToolInvocation

logger = logging.getLogger(__name__)

Status = Literal["pending", "correct", "incorrect", "maybe"]

EXPLORE_TOOL = "executeQueries"


class Verdict(BaseModel):
    status: Literal["correct", "maybe", "incorrect"] = Field(
        description=(
            "'correct' if the result solves the request and looks consistent, "
            "'maybe' if more information is needed to tell, "
            "'incorrect' if it does not solve the request or looks wrong"
        )
    )
    feedback: str = Field(
        default="",
        description="For 'maybe' or 'incorrect': what is wrong or what must be explored",
    )
    queries: list[str] = Field(
        default_factory=list,
        description="For 'maybe': small exploratory SQL queries that would settle the doubt",
    )


class SubWorkflowState(TypedDict, total=False):
    task: str
    request: str
    attempt: int
    feedback: str | None
    status: Status
    context: str
    artifact: dict | None
    sample: list
    executed_attempt: int
    exploration: Annotated[list[str], operator.add]
    exploration_queries: list[str]
    insufficient_count: int
    final_result: str
    undo_invoked: bool


@dataclass(frozen=True)
class SubWorkflowResult:
    status: Status
    final_result: str
    attempts: int
    artifact: dict | None = None
    undo_invoked: bool = False

    @property
    def succeeded(self) -> bool:
        return self.status in ("correct", "maybe")


DEFAULT_EVALUATE_PROMPT = """\
You review the output of an automated data task. Given the user request, the \
artifact that was produced and a sample of the rows it returned, decide whether \
the result is correct.

Answer 'correct' if the rows solve the request and are consistent and logical.
Answer 'maybe' if you are not sure and more exploration of the data would help; \
suggest small exploratory queries.
Answer 'incorrect' if the rows do not solve the request, are empty when they \
should not be, or are inconsistent. Explain what to change in the feedback."""


def sample_rows(result: Any, limit: int) -> list:
    """Leading rows of a tool result. Non-tabular results become a single row."""
    if isinstance(result, str):
        try:
            result = json.loads(result)
        except json.JSONDecodeError:
            return [result] if result else []
    if isinstance(result, dict):
        for key in ("rows", "data", "results"):
            if isinstance(result.get(key), list):
                return result[key][:limit]
        return [result]
    if isinstance(result, list):
        return result[:limit]
    if result is None:
        return []
    return [result]


class SubWorkflow:
    """Base class; subclasses set the class attributes and override the hooks."""

    name: str = ""
    description: str = ""
    artifact_schema: type[BaseModel]
    has_side_effects: bool = False
    generate_prompt: str = ""
    evaluate_prompt: str = DEFAULT_EVALUATE_PROMPT

    def __init__(
        self,
        model: BaseChatModel | None = None,
        *,
        max_attempts: int | None = None,
        max_insufficient_info: int | None = None,
        sample_size: int | None = None,
        retries: int | None = None,
    ) -> None:
        self._model = model
        self.max_attempts = max_attempts or settings.max_attempts
        self.max_insufficient_info = max_insufficient_info or settings.max_insufficient_info
        self.sample_size = sample_size or settings.sample_rows
        self.retries = settings.structured_output_retries if retries is None else retries
        self.graph = self.build_graph().compile()

    @property
    def model(self) -> BaseChatModel:
        if self._model is None:
            self._model = make_llm(settings.openai_strong_model)
        return self._model

    # Hooks

    async def prepare(self, state: SubWorkflowState, ctx: TaskContext) -> dict:
        """Gather context. Returning a `final_result` ends the workflow early."""
        return {}

    async def execute(self, state: SubWorkflowState, ctx: TaskContext) -> Any:
        raise NotImplementedError

    async def undo(self, state: SubWorkflowState, ctx: TaskContext) -> None:
        return None

    async def finalize(self, state: SubWorkflowState, ctx: TaskContext) -> str:
        raise NotImplementedError

    def failure_result(self, state: SubWorkflowState) -> str:
        feedback = state.get("feedback") or "no feedback"
        return (
            f"{self.name} could not produce a valid result after "
            f"{state.get('attempt', 0)} attempts. Last feedback: {feedback}"
        )

    # Helpers for subclasses

    async def call_tool(self, ctx: TaskContext, name: str, arguments: dict | None = None) -> Any:
        results = await ctx.call_tools([ToolInvocation(name, arguments or {})])
        return results.get(name)

    def generate_messages(self, state: SubWorkflowState) -> list[BaseMessage]:
        parts = [f"Request:\n{state.get('request', '')}"]
        if state.get("context"):
            parts.append(f"Available data:\n{state['context']}")
        if state.get("exploration"):
            parts.append("Exploration results:\n" + "\n".join(state["exploration"]))
        if state.get("artifact") and state.get("feedback"):
            parts.append(
                "Your previous attempt:\n"
                f"{json.dumps(state['artifact'], ensure_ascii=False)}\n"
                f"was rejected with this feedback:\n{state['feedback']}\n"
                "Produce a revised version that addresses it."
            )
        return [SystemMessage(content=self.generate_prompt), HumanMessage(content="\n\n".join(parts))]

    def evaluate_messages(self, state: SubWorkflowState) -> list[BaseMessage]:
        parts = [
            f"Request:\n{state.get('request', '')}",
            f"Artifact:\n{json.dumps(state.get('artifact'), ensure_ascii=False)}",
            f"Result sample (first {self.sample_size} rows):\n"
            f"{json.dumps(state.get('sample') or [], ensure_ascii=False, default=str)}",
        ]
        if state.get("context"):
            parts.append(f"Available data:\n{state['context']}")
        if state.get("exploration"):
            parts.append("Exploration results:\n" + "\n".join(state["exploration"]))
        return [SystemMessage(content=self.evaluate_prompt), HumanMessage(content="\n\n".join(parts))]

    # Nodes

    async def _prepare_node(self, state: SubWorkflowState, config: RunnableConfig) -> dict:
        update = await self.prepare(state, task_context(config))
        if update.get("final_result"):
            logger.info("%s ended during preparation", self.name)
            update.setdefault("status", "incorrect")
        return update

    async def _generate_node(self, state: SubWorkflowState, config: RunnableConfig) -> dict:
        attempt = state.get("attempt", 0) + 1
        logger.info("%s generating artifact (attempt %s/%s)", self.name, attempt, self.max_attempts)
        try:
            artifact = await ainvoke_structured(
                self.model, self.generate_messages(state), self.artifact_schema, retries=self.retries
            )
        except Exception as e:
            logger.warning("%s generation failed on attempt %s: %s", self.name, attempt, e)
            return {
                "attempt": attempt,
                "status": "incorrect",
                "feedback": f"Generating the artifact failed: {e}",
            }
        return {"attempt": attempt, "artifact": artifact.model_dump(), "status": "pending", "sample": []}

    async def _evaluate_node(self, state: SubWorkflowState, config: RunnableConfig) -> dict:
        ctx = task_context(config)
        attempt = state.get("attempt", 0)
        update: dict[str, Any] = {}

        if state.get("executed_attempt") != attempt:
            try:
                result = await self.execute(state, ctx)
            except Exception as e:
                logger.warning("%s execution failed on attempt %s: %s", self.name, attempt, e)
                return {
                    "status": "incorrect",
                    "feedback": f"Executing the artifact failed: {e}",
                    "executed_attempt": attempt,
                    "sample": [],
                }
            update["sample"] = sample_rows(result, self.sample_size)
            update["executed_attempt"] = attempt

        view = {**state, **update}
        try:
            verdict = await ainvoke_structured(
                self.model, self.evaluate_messages(view), Verdict, retries=self.retries
            )
        except Exception as e:
            logger.warning("%s evaluation failed on attempt %s: %s", self.name, attempt, e)
            return {
                **update,
                "status": "incorrect",
                "feedback": f"Evaluating the result failed: {e}",
            }

        logger.info("%s verdict on attempt %s: %s", self.name, attempt, verdict.status)
        return {
            **update,
            "status": verdict.status,
            "feedback": verdict.feedback or None,
            "exploration_queries": verdict.queries,
        }

    async def _explore_node(self, state: SubWorkflowState, config: RunnableConfig) -> dict:
        ctx = task_context(config)
        count = state.get("insufficient_count", 0) + 1
        queries = state.get("exploration_queries") or []
        if not queries:
            note = f"Reviewer needs more information: {state.get('feedback') or 'unspecified'}"
            return {"insufficient_count": count, "exploration": [note]}
        try:
            result = await self.call_tool(ctx, EXPLORE_TOOL, {"queries": queries})
            note = f"Queries: {queries}\nResult: {serialize_result(result)}"
        except Exception as e:
            logger.warning("%s exploration failed: %s", self.name, e)
            note = f"Queries: {queries}\nResult: exploration failed ({e})"
        return {"insufficient_count": count, "exploration": [note], "exploration_queries": []}

    async def _accept_node(self, state: SubWorkflowState, config: RunnableConfig) -> dict:
        try:
            final = await self.finalize(state, task_context(config))
        except Exception as e:
            logger.error("%s finalize failed: %s", self.name, e)
            final = f"{self.name} produced a result but reporting it failed: {e}"
        return {"final_result": final or f"{self.name} completed."}

    async def _rollback_node(self, state: SubWorkflowState, config: RunnableConfig) -> dict:
        undo_invoked = False
        if self.has_side_effects and state.get("artifact"):
            undo_invoked = True
            try:
                await self.undo(state, task_context(config))
            except Exception as e:
                logger.error("%s undo failed: %s", self.name, e)
        logger.info("%s exhausted %s attempts", self.name, state.get("attempt", 0))
        return {
            "status": "incorrect",
            "undo_invoked": undo_invoked,
            "final_result": self.failure_result(state),
        }

    # Edges

    def _after_prepare(self, state: SubWorkflowState) -> str:
        return END if state.get("final_result") else "generate"

    def _after_verdict(self, state: SubWorkflowState) -> str:
        status = state.get("status")
        if status == "correct":
            return "accept"
        if status == "maybe":
            if state.get("insufficient_count", 0) < self.max_insufficient_info:
                return "explore"
            logger.info("%s accepting after %s exploration rounds", self.name, self.max_insufficient_info)
            return "accept"
        if state.get("attempt", 0) < self.max_attempts:
            return "generate"
        return "rollback"

    def _after_generate(self, state: SubWorkflowState) -> str:
        if state.get("status") == "incorrect":
            return self._after_verdict(state)
        return "evaluate"

    def build_graph(self) -> StateGraph:
        graph = StateGraph(SubWorkflowState)
        graph.add_node("prepare", self._prepare_node)
        graph.add_node("generate", self._generate_node)
        graph.add_node("evaluate", self._evaluate_node)
        graph.add_node("explore", self._explore_node)
        graph.add_node("accept", self._accept_node)
        graph.add_node("rollback", self._rollback_node)
        graph.set_entry_point("prepare")
        graph.add_conditional_edges("prepare", self._after_prepare, {"generate": "generate", END: END})
        graph.add_conditional_edges(
            "generate",
            self._after_generate,
            {"evaluate": "evaluate", "generate": "generate", "rollback": "rollback"},
        )
        graph.add_conditional_edges(
            "evaluate",
            self._after_verdict,
            {"accept": "accept", "generate": "generate", "explore": "explore", "rollback": "rollback"},
        )
        graph.add_edge("explore", "evaluate")
        graph.add_edge("accept", END)
        graph.add_edge("rollback", END)
        return graph

    def run_config(self, config: RunnableConfig | None, ctx: TaskContext) -> RunnableConfig:
        """
        The caller's config (callbacks, tags, configurable entries) with the
        task context attached and a recursion limit covering the longest run:
        prepare, a generate/evaluate pair per attempt, an explore/evaluate pair
        per exploration round, then accept or rollback.
        """
        parent = dict(config or {})
        own = make_config(ctx)
        budget = 2 * (self.max_attempts + self.max_insufficient_info) + 2
        return {
            **parent,
            "configurable": {**(parent.get("configurable") or {}), **own["configurable"]},
            "recursion_limit": max(budget, parent.get("recursion_limit") or 0),
        }

    async def run(
        self,
        request: str,
        config: RunnableConfig | None = None,
        *,
        task: str = "",
    ) -> SubWorkflowResult:
        ctx = task_context(config)
        initial: SubWorkflowState = {
            "task": task or request,
            "request": request,
            "attempt": 0,
            "feedback": None,
            "status": "pending",
            "context": "",
            "artifact": None,
            "sample": [],
            "executed_attempt": 0,
            "exploration": [],
            "exploration_queries": [],
            "insufficient_count": 0,
            "final_result": "",
            "undo_invoked": False,
        }
        final = await self.graph.ainvoke(initial, self.run_config(config, ctx))
        return SubWorkflowResult(
            status=final.get("status", "incorrect"),
            final_result=final.get("final_result") or self.failure_result(final),
            attempts=final.get("attempt", 0),
            artifact=final.get("artifact"),
            undo_invoked=final.get("undo_invoked", False),
        )
