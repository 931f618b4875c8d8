"""createView: build a database view the client materialises and previews."""

from __future__ import annotations

import json
import logging
from typing import Any

from langchain_core.messages import HumanMessage, SystemMessage
from pydantic import BaseModel, Field

from core.evidence import serialize_result
from core.llm import ainvoke_structured
from core.state import TaskContext
from subgraphs.base import SubWorkflow, SubWorkflowState
from subgraphs.data_recovery import filter_tables

logger = logging.getLogger(__name__)

FEASIBILITY_PROMPT = """\
Decide whether a database view answering the request can be built from the \
tables below. List the tables to use. If it is not possible, explain which data \
is missing."""

GENERATE_PROMPT = """\
You write a single PostgreSQL CREATE VIEW statement that answers the request. \
Use lowercase `limit` if you need one. Explain what the view contains for a \
marketing team with no technical background."""

EVALUATE_PROMPT = """\
You review a freshly created database view. Given the request, the CREATE VIEW \
statement and the first rows it returned, decide whether the view is correct. \
Judge the query, not the quality of the underlying data. If it is wrong, \
include the error and hints for a better query in the feedback."""


class ViewFeasibility(BaseModel):
    is_possible: bool = Field(description="Whether the view can be created")
    explanation: str = Field(default="", description="The missing data, when not possible")
    sources: list[str] = Field(default_factory=list, description="Tables to build the view from")


class ViewQuery(BaseModel):
    sql: str = Field(description="SQL statement that creates the view")
    explanation: str = Field(default="", description="Non-technical explanation of the view")


class ViewCreationWorkflow(SubWorkflow):
    name = "createView"
    description = (
        "Creates a database view from the user's tables and shows its first rows. "
        "Input is a description of the view to create."
    )
    artifact_schema = ViewQuery
    has_side_effects = True
    generate_prompt = GENERATE_PROMPT
    evaluate_prompt = EVALUATE_PROMPT

    async def prepare(self, state: SubWorkflowState, ctx: TaskContext) -> dict:
        structure = serialize_result(await self.call_tool(ctx, "getDataStructure"))
        feasibility = await ainvoke_structured(
            self.model,
            [
                SystemMessage(content=FEASIBILITY_PROMPT),
                HumanMessage(content=f"Tables:\n{structure}\n\nRequest:\n{state.get('request', '')}"),
            ],
            ViewFeasibility,
            retries=self.retries,
        )
        if not feasibility.is_possible:
            logger.info("createView not possible: %s", feasibility.explanation)
            return {
                "final_result": feasibility.explanation
                or "The view can't be created with the available data."
            }
        return {"context": filter_tables(structure, feasibility.sources) or structure}

    async def execute(self, state: SubWorkflowState, ctx: TaskContext) -> Any:
        return await self.call_tool(ctx, "getSQLResults", {"sqlQuery": state["artifact"]["sql"]})

    async def undo(self, state: SubWorkflowState, ctx: TaskContext) -> None:
        sql = (state.get("artifact") or {}).get("sql", "")
        result = await self.call_tool(ctx, "undoTableCreation", {"sqlQuery": sql})
        if not result:
            logger.warning("createView rollback reported no result for %r", sql[:80])

    async def finalize(self, state: SubWorkflowState, ctx: TaskContext) -> str:
        artifact = state["artifact"]
        payload = {"sqlQuery": artifact["sql"], "explanation": artifact.get("explanation", "")}
        return "View created successfully\n" + json.dumps(payload, ensure_ascii=False)
