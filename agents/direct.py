"""Direct-response node: the planner answered without tools."""

from __future__ import annotations

from langchain_core.runnables import RunnableConfig

from core.state import TaskState, task_context


async def direct_node(state: TaskState, config: RunnableConfig) -> dict:
    result = state.get("direct_response") or ""
    await task_context(config).emit("directResponse", {"message": result})
    return {"result": result}
