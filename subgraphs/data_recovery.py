"""getData: build a SQL function that returns the data the user asked for."""

from __future__ import annotations

import logging
import re
from typing import Any, Literal

from langchain_core.messages import BaseMessage, HumanMessage, SystemMessage
from pydantic import BaseModel, Field

from core.evidence import serialize_result
from core.llm import ainvoke_structured
from core.state import TaskContext
from subgraphs.base import SubWorkflow, SubWorkflowState

logger = logging.getLogger(__name__)

NOT_POSSIBLE_MESSAGE = "It wasn't possible to resolve the query with the available data."

TABLE_RE = re.compile(r"Table: (\w+)\n(.*?)(?=Table: \w+|\s*\Z)", re.S)
FUNCTION_NAME_RE = re.compile(r"CREATE OR REPLACE FUNCTION (\w+)\(", re.I)
RETURNS_TABLE_RE = re.compile(r"RETURNS TABLE \((.+?)\)\s*LANGUAGE", re.I | re.S)

SOURCES_PROMPT = """\
You identify which data sources are relevant for a request. Review the table \
descriptions and examples, then list every table that could help, even if only \
slightly relevant. Say whether answering the request is possible ("true"), \
possible but you need more examples first ("maybe", then give small example \
queries), or not possible with this data ("false")."""

GENERATE_PROMPT = """\
You write PostgreSQL functions that return a table answering a business request. \
The result must be readable by a non-technical person who does not know about IDs. \
Always return all results without a limit.

Use this structure:
CREATE OR REPLACE FUNCTION function_name()
RETURNS TABLE (
    "Column Name" type, ...
)
LANGUAGE sql
AS $$
    SELECT ...
$$;

For chart display types (barChart, doghnutChart, lineChart) return exactly two \
columns, one for labels and one for values. For tables include a date column. \
List the assumptions you made in words a non-technical reader understands."""


class SourceSelection(BaseModel):
    sources: list[str] = Field(default_factory=list, description="Names of the relevant tables")
    is_possible: Literal["true", "maybe", "false"] = Field(
        description="Whether the request can be answered with these sources"
    )
    more_examples: list[str] = Field(
        default_factory=list,
        description="If is_possible is maybe, small queries that fetch more examples",
    )


class SQLFunction(BaseModel):
    sql: str = Field(description="CREATE OR REPLACE FUNCTION statement returning a table")
    title: str = Field(description="Short title for the result, e.g. 'Top 5 Products by Price'")
    description: str = Field(description="The task in one simple phrase")
    display_type: Literal["table", "barChart", "doghnutChart", "lineChart", "dataPoint"] = "table"
    assumptions: str = Field(default="", description="Assumptions made while building the function")


def filter_tables(structure: str, keep: list[str]) -> str:
    """Keep only the `Table: <name>` blocks whose name is in `keep`."""
    blocks = [
        f"Table: {name}\n{body.strip()}"
        for name, body in TABLE_RE.findall(structure or "")
        if name in keep
    ]
    return "Tables:\n\n" + "\n\n".join(blocks) if blocks else ""


def function_name(sql: str) -> str:
    match = FUNCTION_NAME_RE.search(sql or "")
    if not match:
        raise ValueError("SQL must start with CREATE OR REPLACE FUNCTION <name>(...)")
    return match.group(1)


def function_summary(sql: str) -> str:
    name = function_name(sql)
    returns = RETURNS_TABLE_RE.search(sql)
    if not returns:
        raise ValueError(f"Function {name} does not declare RETURNS TABLE (...)")
    columns = ",\n    ".join(c.strip() for c in returns.group(1).split(",") if c.strip())
    return f"Created function: {name}\nThat returns:\n{columns}"


class DataRecoveryWorkflow(SubWorkflow):
    name = "getData"
    description = (
        "Retrieves data from the user's database by creating a SQL function that returns "
        "a table. Input is a plain-language description of the data needed."
    )
    artifact_schema = SQLFunction
    has_side_effects = True
    generate_prompt = GENERATE_PROMPT

    async def prepare(self, state: SubWorkflowState, ctx: TaskContext) -> dict:
        structure = serialize_result(await self.call_tool(ctx, "getDataStructure"))
        selection = await ainvoke_structured(
            self.model,
            self._sources_messages(structure, state.get("request", "")),
            SourceSelection,
            retries=self.retries,
        )
        logger.info("getData sources=%s possible=%s", selection.sources, selection.is_possible)
        if selection.is_possible == "false":
            return {"final_result": NOT_POSSIBLE_MESSAGE}

        update: dict[str, Any] = {"context": filter_tables(structure, selection.sources) or structure}
        if selection.is_possible == "maybe" and selection.more_examples:
            examples = await self.call_tool(ctx, "executeQueries", {"queries": selection.more_examples})
            update["exploration"] = [
                f"Queries: {selection.more_examples}\nResult: {serialize_result(examples)}"
            ]
        return update

    def _sources_messages(self, structure: str, request: str) -> list[BaseMessage]:
        return [
            SystemMessage(content=SOURCES_PROMPT),
            HumanMessage(content=f"Tables:\n{structure}\n\nRequest:\n{request}"),
        ]

    async def execute(self, state: SubWorkflowState, ctx: TaskContext) -> Any:
        artifact = state["artifact"]
        sql = artifact["sql"]
        function_summary(sql)
        return await self.call_tool(
            ctx, "createFunction", {"sql": sql, "functionName": function_name(sql)}
        )

    async def undo(self, state: SubWorkflowState, ctx: TaskContext) -> None:
        sql = (state.get("artifact") or {}).get("sql", "")
        match = FUNCTION_NAME_RE.search(sql)
        if not match:
            logger.warning("getData rollback: no function name in last artifact")
            return
        await self.call_tool(ctx, "dropFunction", {"functionName": match.group(1)})

    async def finalize(self, state: SubWorkflowState, ctx: TaskContext) -> str:
        artifact = state["artifact"]
        sql = artifact["sql"]
        await self.call_tool(
            ctx,
            "getSQLResults",
            {
                "plv8function": sql,
                "functionName": function_name(sql),
                "explanation": artifact.get("assumptions", ""),
                "description": artifact.get("description", ""),
                "title": artifact.get("title", ""),
                "displayType": artifact.get("display_type", "table"),
            },
        )
        return function_summary(sql)
