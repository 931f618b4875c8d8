"""Agents and sub-workflows a plan can call, registered by tool name."""

from __future__ import annotations

import logging
from typing import Mapping

from langchain_core.language_models import BaseChatModel

from agents.worker import AgentSpec, make_agent_node, subworkflow_node
from config import Settings, settings as default_settings
from core.registry import AgentRegistry
from subgraphs import DataRecoveryWorkflow, InsightsWorkflow, ViewCreationWorkflow
from tools import (
    calculate,
    createChart,
    createSQLquery,
    createTableStructure,
    filterData,
    getData,
    getTables,
    organizeItems,
)

logger = logging.getLogger(__name__)


def agent_specs(models: Mapping[str, BaseChatModel] | None = None) -> list[AgentSpec]:
    models = models or {}
    return [
        AgentSpec(
            name="calculate",
            prompt=(
                "You are specialized in math operations and have a calculator tool. "
                "You are asked to perform one operation at a time."
            ),
            tools=[calculate],
            model=models.get("calculate"),
            description=(
                "Performs basic arithmetic on two numbers, including powers and roots. "
                "Input: the operation and both numbers, e.g. calculate[multiply 3 6]."
            ),
        ),
        AgentSpec(
            name="createChart",
            prompt=(
                "You prepare chart data. From the JSON rows you receive, pick labels and values "
                "for the chart the user asked for. Use a bar chart unless another type is requested."
            ),
            tools=[createChart],
            model=models.get("createChart"),
            description=(
                "Generates labels, data and type for a chart from a JSON array of rows, "
                "usually an earlier step's result. Chart types: line, bar or doughnut."
            ),
        ),
        AgentSpec(
            name="filterData",
            prompt=(
                "You filter items of a JSON array as the user requests and return the "
                "filtered array of objects."
            ),
            tools=[filterData],
            model=models.get("filterData"),
            description="Filters a JSON array of objects according to the user's request.",
        ),
        AgentSpec(
            name="organize",
            prompt="You rearrange the items of an array as the user requests.",
            tools=[organizeItems],
            model=models.get("organize"),
            description=(
                "Rearranges items in a list. Pass the items and how they should be arranged. "
                "Only use it when the user explicitly asks to rearrange something."
            ),
        ),
        AgentSpec(
            name="getTables",
            prompt=(
                "You analyze database schemas. The table names come after 'based on this table names:'; "
                "pick the ones most useful for the user's request. Only use names from that list, "
                "never invent new ones, and always answer with your tool."
            ),
            tools=[getTables],
            model=models.get("getTables"),
            description=(
                "Selects the tables related to the request from a list of table names. "
                "Input: the request followed by 'based on this table names:' and the names."
            ),
        ),
        AgentSpec(
            name="getSegmentDetails",
            prompt=(
                "You analyze database schemas. From the table columns the user provides and the request, "
                "write the PostgreSQL query that returns the requested data. Keep table and column names "
                "exactly as given, in double quotes, and return as much detail as the request allows."
            ),
            tools=[getData],
            model=models.get("getSegmentDetails"),
            description=(
                "Writes a PostgreSQL query from table columns and a request. "
                "Only use it when the user asks for a query over known columns."
            ),
        ),
        AgentSpec(
            name="sqlQuery",
            prompt=(
                "You write PostgreSQL queries from the table's columns definition. Return two queries: "
                "the select answering the user's request and a CREATE TABLE statement whose columns "
                "match that select, so its results can be inserted."
            ),
            tools=[createSQLquery],
            model=models.get("sqlQuery"),
            description=(
                "Generates a select query plus the CREATE TABLE statement for its results. "
                "Input: the request and the table's columns definition."
            ),
        ),
        AgentSpec(
            name="createTableStructure",
            prompt=(
                "You turn JSON data into a PostgreSQL table. Return every column name followed by its "
                "data type, e.g. 'order_date date', and the table name. Column names never contain "
                "whitespace; use underscores between words."
            ),
            tools=[createTableStructure],
            model=models.get("createTableStructure"),
            description=(
                "Infers a table name and typed columns from a JSON array of CSV rows, "
                "so the client can create a table for them."
            ),
        ),
    ]


def build_registry(
    settings: Settings | None = None,
    *,
    models: Mapping[str, BaseChatModel] | None = None,
) -> AgentRegistry:
    """
    Register every agent and sub-workflow. `models` overrides the chat model
    per name (tests pass fakes here); missing names use the configured model.
    """
    settings = settings or default_settings
    models = models or {}
    mode = settings.evidence_substitution
    registry = AgentRegistry()

    for spec in agent_specs(models):
        registry.register(spec.name, make_agent_node(spec, substitution=mode), spec.description)

    workflow_options = dict(
        max_attempts=settings.max_attempts,
        max_insufficient_info=settings.max_insufficient_info,
        sample_size=settings.sample_rows,
        retries=settings.structured_output_retries,
    )
    for workflow_cls in (DataRecoveryWorkflow, ViewCreationWorkflow, InsightsWorkflow):
        workflow = workflow_cls(models.get(workflow_cls.name), **workflow_options)
        registry.register(workflow.name, subworkflow_node(workflow, substitution=mode), workflow.description)

    logger.info("Registered agents: %s", ", ".join(registry.names()))
    return registry
