"""Tool callback plumbing between graph nodes and whoever executes the tools.

Local tools run in-process. Client tools go through a ToolResponseBroker: the
request is sent as a `tool` event and the node stays suspended until every
expected function name has a response, the timeout fires, or the broker is
cancelled.
"""

from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass, field
from typing import Any, Iterable, Protocol

from langchain_core.tools import BaseTool

from core.errors import ToolResponseError
from core.state import SendEvent

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ToolInvocation:
    name: str
    arguments: dict[str, Any] = field(default_factory=dict)

    def as_request(self) -> dict[str, Any]:
        return {"function_name": self.name, "arguments": self.arguments}


class ToolCallback(Protocol):
    async def __call__(self, invocations: list[ToolInvocation]) -> dict[str, Any]: ...


class LocalToolExecutor:
    """Runs LangChain tools in-process; results are keyed by tool name."""

    def __init__(self, tools: Iterable[BaseTool] = ()) -> None:
        self._tools: dict[str, BaseTool] = {t.name: t for t in tools}

    @property
    def names(self) -> list[str]:
        return list(self._tools)

    def __contains__(self, name: object) -> bool:
        return name in self._tools

    async def __call__(self, invocations: list[ToolInvocation]) -> dict[str, Any]:
        results: dict[str, Any] = {}
        for invocation in invocations:
            tool = self._tools.get(invocation.name)
            if tool is None:
                raise ToolResponseError(f"No local tool named {invocation.name!r}")
            logger.info("Running local tool %s", invocation.name)
            results[invocation.name] = await tool.ainvoke(invocation.arguments)
        return results


@dataclass
class _PendingRequest:
    expected: frozenset[str]
    future: asyncio.Future
    responses: dict[str, Any] = field(default_factory=dict)


def _normalize_response(response: Any) -> list[dict[str, Any]]:
    if isinstance(response, (str, bytes)):
        try:
            response = json.loads(response)
        except json.JSONDecodeError as e:
            raise ToolResponseError(f"Tool response is not valid JSON: {e}") from e
    items = response if isinstance(response, list) else [response]
    for item in items:
        if not isinstance(item, dict) or "function_name" not in item:
            raise ToolResponseError("Each tool response needs a function_name")
    return items


class ToolResponseBroker:
    """
    Human-in-the-loop tool callback, one per session.

    Only one step may wait at a time. `deliver` correlates incoming responses
    by function name; `cancel` aborts the waiting node.
    """

    def __init__(self, send_event: SendEvent, *, timeout: float | None = None) -> None:
        self._send_event = send_event
        self._timeout = timeout
        self._pending: _PendingRequest | None = None
        self._closed = False

    @property
    def waiting_for(self) -> frozenset[str]:
        if self._pending is None:
            return frozenset()
        return self._pending.expected - set(self._pending.responses)

    @property
    def is_waiting(self) -> bool:
        return self._pending is not None and not self._pending.future.done()

    async def __call__(self, invocations: list[ToolInvocation]) -> dict[str, Any]:
        if self._closed:
            raise ToolResponseError("Tool broker is closed")
        if self._pending is not None:
            raise ToolResponseError("Another tool request is still waiting for a response")
        if not invocations:
            return {}

        expected = frozenset(inv.name for inv in invocations)
        future = asyncio.get_running_loop().create_future()
        self._pending = _PendingRequest(expected=expected, future=future)
        try:
            await self._send_event("tool", {"functions": [inv.as_request() for inv in invocations]})
            if self._timeout:
                return await asyncio.wait_for(future, self._timeout)
            return await future
        except asyncio.TimeoutError:
            logger.warning("Tool response timed out after %ss for %s", self._timeout, sorted(expected))
            raise ToolResponseError(
                f"No response for {', '.join(sorted(expected))} within {self._timeout}s"
            ) from None
        finally:
            self._pending = None

    def deliver(self, response: Any) -> bool:
        """Record one or more responses. Returns True once the waiting step is complete."""
        pending = self._pending
        if pending is None or pending.future.done():
            raise ToolResponseError("No tool request is waiting for a response")

        items = _normalize_response(response)
        unexpected = [i["function_name"] for i in items if i["function_name"] not in pending.expected]
        if unexpected:
            raise ToolResponseError(f"Unexpected tool response for {', '.join(unexpected)}")
        for item in items:
            value = item.get("response")
            pending.responses[item["function_name"]] = value.strip() if isinstance(value, str) else value

        if pending.expected.issubset(pending.responses):
            pending.future.set_result(dict(pending.responses))
            return True
        return False

    def cancel(self) -> None:
        self._closed = True
        if self._pending is not None and not self._pending.future.done():
            logger.info("Cancelling tool request for %s", sorted(self._pending.expected))
            self._pending.future.cancel()


class CompositeToolCallback:
    """Runs invocations the local executor knows; forwards the rest."""

    def __init__(self, local: LocalToolExecutor, remote: ToolCallback | None = None) -> None:
        self._local = local
        self._remote = remote

    async def __call__(self, invocations: list[ToolInvocation]) -> dict[str, Any]:
        local = [inv for inv in invocations if inv.name in self._local]
        remote = [inv for inv in invocations if inv.name not in self._local]
        results: dict[str, Any] = {}
        if local:
            results.update(await self._local(local))
        if remote:
            if self._remote is None:
                raise ToolResponseError(
                    f"No client connected to run {', '.join(inv.name for inv in remote)}"
                )
            results.update(await self._remote(remote))
        return results
