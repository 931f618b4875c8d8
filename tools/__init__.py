"""Tools bound to agent models: local ones and client-executed schemas."""

from .calculator import calculate
from .client import (
    CLIENT_TOOLS,
    createChart,
    createSQLquery,
    createTableStructure,
    filterData,
    getData,
    getTables,
    organizeItems,
)

LOCAL_TOOLS = [calculate]

__all__ = [
    "calculate",
    "createChart",
    "createSQLquery",
    "createTableStructure",
    "filterData",
    "getData",
    "getTables",
    "organizeItems",
    "CLIENT_TOOLS",
    "LOCAL_TOOLS",
]
