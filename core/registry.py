"""Name -> node registry for agents and tools reachable from a plan."""

from __future__ import annotations

import logging
from typing import Any, Callable, Iterator

from core.errors import RegistryError, ToolNotRecognizedError
from core.state import TASK_STATE_KEYS

logger = logging.getLogger(__name__)

NodeHandler = Callable[..., Any]

RESERVED_NAMES = frozenset({"plan", "solve", "direct", "__start__", "__end__"}) | TASK_STATE_KEYS


class AgentRegistry:
    """Explicit capability set: every tool name a plan may use maps to one node."""

    def __init__(self) -> None:
        self._handlers: dict[str, NodeHandler] = {}
        self._descriptions: dict[str, str] = {}

    def register(self, name: str, handler: NodeHandler, description: str = "") -> None:
        if not name or not name.isidentifier():
            raise RegistryError(f"Invalid agent name: {name!r}")
        if name in RESERVED_NAMES:
            raise RegistryError(f"Agent name {name!r} is reserved")
        if name in self._handlers:
            raise RegistryError(f"Agent {name!r} is already registered")
        self._handlers[name] = handler
        self._descriptions[name] = description.strip()
        logger.debug("Registered agent %s", name)

    def resolve(self, name: str) -> NodeHandler:
        try:
            return self._handlers[name]
        except KeyError:
            raise ToolNotRecognizedError(name) from None

    def names(self) -> list[str]:
        return list(self._handlers)

    def items(self) -> Iterator[tuple[str, NodeHandler]]:
        return iter(self._handlers.items())

    def describe(self) -> str:
        """Tool catalog for the planning prompt, one `(n) name[input]: description` per line."""
        lines = []
        for i, name in enumerate(self._handlers, start=1):
            description = self._descriptions.get(name) or "No description."
            lines.append(f"({i}) {name}[input]: {description}")
        return "\n".join(lines)

    def __contains__(self, name: object) -> bool:
        return name in self._handlers

    def __len__(self) -> int:
        return len(self._handlers)
