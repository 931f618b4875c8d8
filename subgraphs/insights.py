"""getInsights: query existing functions and summarise what the rows say."""

from __future__ import annotations

import json
import logging
from typing import Any, Literal

from langchain_core.messages import HumanMessage, SystemMessage
from pydantic import BaseModel, Field

from core.evidence import serialize_result
from core.llm import ainvoke_structured, message_text
from core.state import TaskContext
from subgraphs.base import SubWorkflow, SubWorkflowState

logger = logging.getLogger(__name__)

SELECTION_PROMPT = """\
Decide whether the available data functions are enough to extract the insight \
the user asks for. Pick the relevant functions. Answer "true" if they are \
enough, "maybe" if more data would give better insights, "false" if a new table \
has to be created first. For "false" or "maybe" describe the table that would \
help, listing all its fields."""

GENERATE_PROMPT = """\
You write read-only SQL queries over the listed data functions \
(SELECT * FROM function_name() ...) whose results reveal the insight requested. \
Order and aggregate so the most telling rows come first."""

SUMMARY_PROMPT = """\
You are a business analyst. Summarise the query results below into a few short, \
concrete insights that answer the request. Quote the numbers you rely on."""


class FunctionSelection(BaseModel):
    functions: list[str] = Field(default_factory=list, description="Relevant data functions")
    is_possible: Literal["true", "maybe", "false"] = Field(
        description="Whether insights can be extracted from the available data"
    )
    new_function: str = Field(
        default="",
        description="Table that would be needed or would help, with all its fields",
    )


class InsightQueries(BaseModel):
    queries: list[str] = Field(description="Read-only SQL queries to run")
    rationale: str = Field(default="", description="What each query is meant to show")


class InsightsWorkflow(SubWorkflow):
    name = "getInsights"
    description = (
        "Extracts insights from data the user already has (existing data functions). "
        "Input is the question the insight should answer."
    )
    artifact_schema = InsightQueries
    has_side_effects = False
    generate_prompt = GENERATE_PROMPT

    async def prepare(self, state: SubWorkflowState, ctx: TaskContext) -> dict:
        functions = serialize_result(await self.call_tool(ctx, "listFunctions"))
        structure = serialize_result(await self.call_tool(ctx, "getDataStructure"))
        selection = await ainvoke_structured(
            self.model,
            [
                SystemMessage(content=SELECTION_PROMPT),
                HumanMessage(
                    content=(
                        f"Available functions:\n{functions}\n\n"
                        f"Tables:\n{structure}\n\n"
                        f"Insight requested:\n{state.get('request', '')}"
                    )
                ),
            ],
            FunctionSelection,
            retries=self.retries,
        )
        logger.info("getInsights functions=%s possible=%s", selection.functions, selection.is_possible)
        if selection.is_possible == "false":
            return {
                "final_result": selection.new_function
                or "We don't have the data needed for this insight yet."
            }
        context = f"Functions to use: {', '.join(selection.functions) or functions}\n\n{structure}"
        if selection.is_possible == "maybe" and selection.new_function:
            context += f"\n\nSuggestion for better insights: {selection.new_function}"
        return {"context": context}

    async def execute(self, state: SubWorkflowState, ctx: TaskContext) -> Any:
        return await self.call_tool(ctx, "executeQueries", {"queries": state["artifact"]["queries"]})

    async def finalize(self, state: SubWorkflowState, ctx: TaskContext) -> str:
        rows = json.dumps(state.get("sample") or [], ensure_ascii=False, default=str)
        response = await self.model.ainvoke(
            [
                SystemMessage(content=SUMMARY_PROMPT),
                HumanMessage(
                    content=(
                        f"Request:\n{state.get('request', '')}\n\n"
                        f"Queries:\n{json.dumps(state['artifact']['queries'])}\n\n"
                        f"Results:\n{rows}"
                    )
                ),
            ]
        )
        return message_text(response).strip()
