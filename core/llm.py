"""Model construction and small helpers shared by the nodes."""

from __future__ import annotations

import logging
from functools import lru_cache
from typing import Any, Type, TypeVar

from langchain_core.language_models import BaseChatModel
from langchain_core.messages import BaseMessage, SystemMessage
from langchain_openai import ChatOpenAI
from pydantic import BaseModel

from config import settings
from core.state import ConversationTurn

logger = logging.getLogger(__name__)

T = TypeVar("T", bound=BaseModel)


@lru_cache(maxsize=8)
def make_llm(model: str | None = None, temperature: float = 0.0) -> ChatOpenAI:
    return ChatOpenAI(
        model=model or settings.openai_model,
        api_key=settings.openai_api_key,
        temperature=temperature,
    )


def message_text(message: Any) -> str:
    """Text of a message or stream chunk; list content blocks are concatenated."""
    content = getattr(message, "content", message)
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        parts = []
        for block in content:
            if isinstance(block, str):
                parts.append(block)
            elif isinstance(block, dict) and block.get("type") == "text":
                parts.append(block.get("text", ""))
        return "".join(parts)
    return "" if content is None else str(content)


def history_messages(history: list[ConversationTurn] | None, max_turns: int) -> list[BaseMessage]:
    turns = list(history or [])
    if max_turns > 0:
        turns = turns[-max_turns:]
    messages: list[BaseMessage] = []
    for turn in turns:
        messages.extend(turn.as_messages())
    return messages


async def ainvoke_structured(
    model: BaseChatModel,
    messages: list[BaseMessage],
    schema: Type[T],
    *,
    retries: int = 1,
) -> T:
    """
    Structured call with repair retries: on a parsing or validation error the
    error is appended as a system message and the call is repeated.
    """
    runnable = model.with_structured_output(schema)
    attempts = max(1, retries + 1)
    for attempt in range(attempts):
        try:
            parsed = await runnable.ainvoke(messages)
            if not isinstance(parsed, schema):
                parsed = schema.model_validate(parsed)
            return parsed
        except Exception as exc:
            if attempt == attempts - 1:
                raise
            logger.warning("Structured output for %s failed, retrying: %s", schema.__name__, exc)
            messages = messages + [
                SystemMessage(
                    content=(
                        "Your last response did not match the required schema.\n"
                        "Return ONLY a valid structured output for the schema. Do not add extra keys.\n"
                        f"Validation/parsing error: {str(exc)[:900]}"
                    )
                )
            ]
    raise RuntimeError("unreachable")
