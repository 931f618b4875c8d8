import asyncio
import json

import pytest

from core.errors import ToolResponseError
from core.tool_bridge import CompositeToolCallback, LocalToolExecutor, ToolInvocation, ToolResponseBroker
from tests.fakes import EventRecorder, RecordingTools
from tools import calculate


async def _wait_until_waiting(broker: ToolResponseBroker) -> None:
    for _ in range(100):
        if broker.is_waiting:
            return
        await asyncio.sleep(0)
    raise AssertionError("broker never started waiting")


@pytest.mark.asyncio
async def test_local_executor_runs_calculator():
    executor = LocalToolExecutor([calculate])
    result = await executor([ToolInvocation("calculate", {"a": 3, "b": 6, "operator": "multiply"})])
    assert result == {"calculate": 18}
    assert "calculate" in executor
    with pytest.raises(ToolResponseError):
        await executor([ToolInvocation("createChart", {})])


@pytest.mark.asyncio
async def test_calculator_rejects_division_by_zero():
    executor = LocalToolExecutor([calculate])
    with pytest.raises(ValueError):
        await executor([ToolInvocation("calculate", {"a": 1, "b": 0, "operator": "divide"})])


@pytest.mark.asyncio
async def test_broker_sends_request_and_waits_for_every_function():
    events = EventRecorder()
    broker = ToolResponseBroker(events, timeout=5)
    invocations = [
        ToolInvocation("createChart", {"jsonData": "[]"}),
        ToolInvocation("filterData", {"users": []}),
    ]
    call = asyncio.create_task(broker(invocations))
    await _wait_until_waiting(broker)

    assert events.of("tool") == [
        {
            "functions": [
                {"function_name": "createChart", "arguments": {"jsonData": "[]"}},
                {"function_name": "filterData", "arguments": {"users": []}},
            ]
        }
    ]
    assert broker.deliver({"function_name": "createChart", "response": "chart ok"}) is False
    assert broker.waiting_for == {"filterData"}
    assert broker.deliver(json.dumps([{"function_name": "filterData", "response": [1]}])) is True

    assert await call == {"createChart": "chart ok", "filterData": [1]}
    assert not broker.is_waiting


@pytest.mark.asyncio
async def test_broker_rejects_unexpected_and_uncorrelated_responses():
    broker = ToolResponseBroker(EventRecorder(), timeout=5)
    with pytest.raises(ToolResponseError):
        broker.deliver({"function_name": "createChart", "response": "late"})

    call = asyncio.create_task(broker([ToolInvocation("createChart", {})]))
    await _wait_until_waiting(broker)
    with pytest.raises(ToolResponseError):
        broker.deliver({"function_name": "organizeItems", "response": []})
    with pytest.raises(ToolResponseError):
        broker.deliver("not json")
    with pytest.raises(ToolResponseError):
        await broker([ToolInvocation("filterData", {})])

    broker.deliver({"function_name": "createChart", "response": "ok"})
    assert await call == {"createChart": "ok"}


@pytest.mark.asyncio
async def test_broker_trims_text_responses():
    broker = ToolResponseBroker(EventRecorder(), timeout=5)
    call = asyncio.create_task(
        broker([ToolInvocation("getSQLResults", {}), ToolInvocation("createChart", {})])
    )
    await _wait_until_waiting(broker)
    broker.deliver(
        [
            {"function_name": "getSQLResults", "response": "\n  Table created \n"},
            {"function_name": "createChart", "response": {"labels": [" a "]}},
        ]
    )

    assert await call == {"getSQLResults": "Table created", "createChart": {"labels": [" a "]}}


@pytest.mark.asyncio
async def test_broker_times_out():
    broker = ToolResponseBroker(EventRecorder(), timeout=0.01)
    with pytest.raises(ToolResponseError):
        await broker([ToolInvocation("createChart", {})])
    assert not broker.is_waiting


@pytest.mark.asyncio
async def test_broker_cancel_aborts_waiting_call():
    broker = ToolResponseBroker(EventRecorder())
    call = asyncio.create_task(broker([ToolInvocation("createChart", {})]))
    await _wait_until_waiting(broker)
    broker.cancel()
    with pytest.raises(asyncio.CancelledError):
        await call
    with pytest.raises(ToolResponseError):
        await broker([ToolInvocation("createChart", {})])


@pytest.mark.asyncio
async def test_composite_splits_local_and_remote():
    remote = RecordingTools({"createChart": {"labels": ["a"], "data": [1]}})
    callback = CompositeToolCallback(LocalToolExecutor([calculate]), remote)
    result = await callback(
        [
            ToolInvocation("calculate", {"a": 2, "b": 3, "operator": "add"}),
            ToolInvocation("createChart", {"jsonData": "[]"}),
        ]
    )
    assert result == {"calculate": 5, "createChart": {"labels": ["a"], "data": [1]}}
    assert remote.names() == ["createChart"]


@pytest.mark.asyncio
async def test_composite_without_remote_rejects_client_tools():
    callback = CompositeToolCallback(LocalToolExecutor([calculate]))
    with pytest.raises(ToolResponseError):
        await callback([ToolInvocation("createChart", {})])
