"""Request schemas."""

from typing import Any

from pydantic import BaseModel, Field


class TaskRequest(BaseModel):
    task: str = Field(..., min_length=1, max_length=8000, description="User message to plan and solve")
    thread_id: str | None = Field(
        default=None,
        description="Conversation thread. Tasks on the same thread share history; a new id starts a new thread.",
    )


class ToolResponseIn(BaseModel):
    response: Any = Field(
        ...,
        description=(
            "One {function_name, response} object, a list of them, or a JSON string of either"
        ),
    )


class StateUpdate(BaseModel):
    values: dict[str, Any] = Field(..., description="State keys to overwrite on the latest checkpoint")
