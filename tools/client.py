"""Schemas of tools the connected client executes.

The models are bound to these schemas so they can emit tool calls; the calls
themselves are sent to the client and answered through a toolResponse.
"""

from __future__ import annotations

from typing import Literal

from pydantic import BaseModel, Field


class createChart(BaseModel):
    """Extract chart labels and values from a JSON array of rows. The chart type
    is bar, line or doughnut; with 'auto' the most suitable type is chosen."""

    jsonData: str = Field(description="The JSON array, as a string, with the rows to chart")
    dataDescription: str = Field(description="Which data to use for labels and values")
    chartType: Literal["bar", "line", "doughnut", "auto"] = Field(
        default="auto", description="Chart type; 'auto' picks one from the data"
    )


class Explanation(BaseModel):
    title: str = Field(description="Title of the explanation")
    description: str = Field(description="Why this answer was produced")


class filterData(BaseModel):
    """Given a JSON array, keep the objects matching the user's request."""

    users: list[dict] = Field(description="The objects selected from the array")
    explanation: Explanation


class organizeItems(BaseModel):
    """Rearrange an array of items the way the user asks."""

    cards: list[str] = Field(description="The organized array of elements")


class createTableStructure(BaseModel):
    """Generate a PostgreSQL table definition from a JSON array of CSV rows,
    inferring the data type of every column."""

    columns: list[str] = Field(
        description="Column definitions, each a name without whitespace followed by its type, e.g. 'total_revenue numeric'"
    )
    tableName: str = Field(description="Name of the table to create, without schema prefix")


class createSQLquery(BaseModel):
    """Create a PostgreSQL query from the table's columns definition, plus the
    CREATE TABLE statement its result set can be inserted into."""

    sql: str = Field(description="The select query. Use WHERE, never HAVING")
    sql_insert: str = Field(description="CREATE TABLE statement matching the columns of the select query")
    chart: bool = Field(description="Whether a chart would help to understand the result")


class getTables(BaseModel):
    """Given a list of table names, pick those related to the user's request."""

    tables: list[str] = Field(description="The selected table names, unchanged")
    explanation: Explanation


class getData(BaseModel):
    """From table columns and a request, write one SQL query returning the requested data."""

    sqlQuery: str = Field(description="The query; table and column names in double quotes")
    sqlTitle: str | None = Field(default=None, description="Title of the table the query creates")
    sqlDescription: str = Field(description="Short description giving context to the title")
    headers: list[str] = Field(description="Headers of the query's result set")
    explanation: Explanation


CLIENT_TOOLS = {
    "createChart": createChart,
    "filterData": filterData,
    "organizeItems": organizeItems,
    "createTableStructure": createTableStructure,
    "createSQLquery": createSQLquery,
    "getTables": getTables,
    "getData": getData,
}
