import asyncio

import pytest

from agents.planner import PLANNING_ERROR_MESSAGE
from agents.worker import AGENT_ERROR_MESSAGE
from core.errors import EvidenceOrderError, ThreadBusyError, ToolNotRecognizedError
from core.state import ConversationTurn, Step
from core.tool_bridge import CompositeToolCallback, LocalToolExecutor, ToolResponseBroker
from tests.conftest import build_orchestrator, make_settings
from tests.fakes import CALC_PLAN, FakeChatModel, RecordingTools, last_human_text
from tools import LOCAL_TOOLS

GREETING = "Hi Pepe! How can I help you today?"


@pytest.mark.asyncio
async def test_arithmetic_task_end_to_end(store, events, local_tools):
    planner, solver = FakeChatModel(CALC_PLAN), FakeChatModel("3 times 6 divided by 2 is 9.")
    orchestrator = build_orchestrator(planner, solver, store=store)

    outcome = await orchestrator.run("what's 3*6 divided by 2", "t1", tools=local_tools, send_event=events)

    assert outcome.evidence == {"#E1": "18", "#E2": "9"}
    assert "9" in outcome.result
    assert not outcome.direct
    assert [s.step_id for s in outcome.steps] == ["#E1", "#E2"]

    solver_prompt = last_human_text(solver.calls_of("stream")[0][1])
    assert "18 = calculate[multiply 3 6]" in solver_prompt
    assert "9 = calculate[divide 18 2]" in solver_prompt

    types = events.types()
    assert types.count("plan_step") == 2
    assert types.index("plan") < types.index("step") < types.index("result")
    assert events.of("result") == [{"message": outcome.result}]


@pytest.mark.asyncio
async def test_greeting_is_answered_directly(store, events):
    orchestrator = build_orchestrator(FakeChatModel(GREETING), FakeChatModel("unused"), store=store)

    outcome = await orchestrator.run("Hey! I am Pepe", "t1", send_event=events)

    assert outcome.direct
    assert outcome.result == GREETING
    assert outcome.evidence == {}
    assert events.types() == ["directResponse"]
    assert events.of("directResponse") == [{"message": GREETING}]


@pytest.mark.asyncio
async def test_checkpoints_follow_every_transition(store, local_tools):
    orchestrator = build_orchestrator(store=store)

    outcome = await orchestrator.run("what's 3*6 divided by 2", "t1", tools=local_tools)

    history = [c async for c in store.list("t1")]
    assert len(history) == 5
    oldest, newest = history[-1], history[0]
    assert oldest.metadata.source == "input"
    assert oldest.metadata.step == -1
    assert oldest.state["task"] == "what's 3*6 divided by 2"
    assert [c.metadata.step for c in reversed(history[:-1])] == [0, 1, 2, 3]
    assert [next(iter(c.metadata.writes)) for c in reversed(history[:-1])] == [
        "plan",
        "calculate",
        "calculate",
        "solve",
    ]
    assert newest.checkpoint_id == outcome.checkpoint_id
    assert newest.state["evidence"] == {"#E1": "18", "#E2": "9"}
    assert newest.metadata.writes["solve"]["result"] == outcome.result


@pytest.mark.asyncio
async def test_history_carries_over_between_tasks(store, local_tools):
    planner = FakeChatModel([GREETING, CALC_PLAN])
    orchestrator = build_orchestrator(planner, store=store)

    await orchestrator.run("Hey! I am Pepe", "t1")
    await orchestrator.run("what's 3*6 divided by 2", "t1", tools=local_tools)

    second_call = planner.calls_of("stream")[1][1]
    contents = [m.content for m in second_call]
    assert "Here is a task: Hey! I am Pepe" in contents
    assert GREETING in contents

    state = await orchestrator.load_state("t1")
    assert [t.user for t in state["history"]] == [
        "Here is a task: Hey! I am Pepe",
        "Here is a task: what's 3*6 divided by 2",
        state["history"][2].user,
    ]
    assert state["history"][2].user.startswith("Here are the results of the plan:")
    assert state["steps"][0] == Step("Multiply 3 by 6.", "#E1", "calculate", "multiply 3 6")


@pytest.mark.asyncio
async def test_new_task_resets_run_fields(store, local_tools):
    planner = FakeChatModel([CALC_PLAN, GREETING])
    orchestrator = build_orchestrator(planner, store=store)

    await orchestrator.run("what's 3*6 divided by 2", "t1", tools=local_tools)
    outcome = await orchestrator.run("Hey! I am Pepe", "t1")

    state = await orchestrator.load_state("t1")
    assert outcome.direct
    assert state["evidence"] == {}
    assert state["steps"] == []
    assert state["result"] == GREETING


@pytest.mark.asyncio
async def test_threads_do_not_share_history(store):
    planner = FakeChatModel([GREETING, GREETING])
    orchestrator = build_orchestrator(planner, store=store)

    await orchestrator.run("Hey! I am Pepe", "a")
    await orchestrator.run("Hey! I am Pepe", "b")

    assert len((await orchestrator.load_state("b"))["history"]) == 1


@pytest.mark.asyncio
async def test_unknown_tool_is_fatal(store):
    orchestrator = build_orchestrator(FakeChatModel("Plan: Teleport. #E1 = teleport[now]"), store=store)
    with pytest.raises(ToolNotRecognizedError):
        await orchestrator.run("teleport me", "t1")
    assert not orchestrator.is_busy("t1")


@pytest.mark.asyncio
async def test_forward_reference_is_fatal(store, local_tools):
    plan = "Plan: Multiply. #E1 = calculate[multiply #E2 3]\nPlan: Add. #E2 = calculate[add 1 2]"
    orchestrator = build_orchestrator(FakeChatModel(plan), store=store)
    with pytest.raises(EvidenceOrderError):
        await orchestrator.run("broken plan", "t1", tools=local_tools)


@pytest.mark.asyncio
async def test_planner_failure_becomes_direct_apology(store):
    orchestrator = build_orchestrator(FakeChatModel(RuntimeError("model down")), store=store)
    outcome = await orchestrator.run("anything", "t1")
    assert outcome.direct
    assert outcome.result == PLANNING_ERROR_MESSAGE


@pytest.mark.asyncio
async def test_tool_failure_still_reaches_solve(store):
    tools = RecordingTools({"calculate": RuntimeError("calculator offline")})
    solver = FakeChatModel("Sorry, the calculation failed.")
    plan = "Plan: Multiply 3 by 6. #E1 = calculate[multiply 3 6]"
    orchestrator = build_orchestrator(FakeChatModel(plan), solver, store=store)

    outcome = await orchestrator.run("what's 3*6", "t1", tools=tools)

    assert outcome.evidence == {"#E1": AGENT_ERROR_MESSAGE}
    assert outcome.result == "Sorry, the calculation failed."


@pytest.mark.asyncio
async def test_structured_planner_output(store, local_tools):
    structured = {
        "steps": [
            {"stepId": "#E1", "description": "Multiply", "toolName": "calculate", "toolParameters": ["multiply 3 6"]},
            {"stepId": "#E2", "description": "Halve", "toolName": "calculate", "toolParameters": ["divide #E1 2"]},
        ]
    }
    planner = FakeChatModel(structured=lambda schema, messages: structured)
    settings = make_settings(planner_output="structured")
    orchestrator = build_orchestrator(planner, FakeChatModel("It is 9."), store=store, settings=settings)

    outcome = await orchestrator.run("what's 3*6 divided by 2", "t1", tools=local_tools)

    assert outcome.evidence == {"#E1": "18", "#E2": "9"}
    assert planner.structured_calls("PlannerOutput")


@pytest.mark.asyncio
async def test_busy_thread_rejects_second_task(store, events):
    plan = "Plan: Chart the rows. #E1 = createChart[rows 1 and 2]"
    chart_model = FakeChatModel(tool_calls=[[{"name": "createChart", "args": {"jsonData": "[1, 2]"}, "id": "c1"}]])
    orchestrator = build_orchestrator(
        FakeChatModel(plan), FakeChatModel("Here is your chart."), store=store, models={"createChart": chart_model}
    )
    broker = ToolResponseBroker(events, timeout=5)
    tools = CompositeToolCallback(LocalToolExecutor(LOCAL_TOOLS), broker)

    run = asyncio.create_task(orchestrator.run("chart this", "t1", tools=tools, send_event=events))
    for _ in range(200):
        if broker.is_waiting:
            break
        await asyncio.sleep(0.01)
    assert broker.is_waiting
    assert orchestrator.is_busy("t1")
    with pytest.raises(ThreadBusyError):
        await orchestrator.run("another", "t1")
    with pytest.raises(ThreadBusyError):
        await orchestrator.update_state("t1", {"result": "x"})

    assert events.of("tool")[0]["functions"][0]["function_name"] == "createChart"
    broker.deliver({"function_name": "createChart", "response": {"labels": ["a", "b"], "data": [1, 2]}})
    outcome = await run

    assert outcome.evidence == {"#E1": '{"labels": ["a", "b"], "data": [1, 2]}'}
    assert outcome.result == "Here is your chart."
    assert not orchestrator.is_busy("t1")


@pytest.mark.asyncio
async def test_claimed_thread_is_busy_until_its_run_ends(store, local_tools):
    orchestrator = build_orchestrator(store=store)
    orchestrator.claim("t1")
    with pytest.raises(ThreadBusyError):
        orchestrator.claim("t1")
    with pytest.raises(ThreadBusyError):
        await orchestrator.run("what's 3*6 divided by 2", "t1", tools=local_tools)
    assert orchestrator.is_busy("t1")

    outcome = await orchestrator.run("what's 3*6 divided by 2", "t1", tools=local_tools, claimed=True)

    assert outcome.result
    assert not orchestrator.is_busy("t1")


@pytest.mark.asyncio
async def test_update_state_writes_manual_checkpoint(store):
    orchestrator = build_orchestrator(FakeChatModel(GREETING), store=store)
    await orchestrator.run("Hey! I am Pepe", "t1")
    before = await store.get("t1")

    checkpoint_id = await orchestrator.update_state(
        "t1", {"history": [ConversationTurn("Here is a task: hi", "Hello again!")]}
    )

    latest = await store.get("t1")
    assert latest.checkpoint_id == checkpoint_id
    assert latest.parent_checkpoint_id == before.checkpoint_id
    assert latest.metadata.source == "update"
    assert latest.metadata.step == before.metadata.step + 1
    assert latest.state["history"] == [{"user": "Here is a task: hi", "assistant": "Hello again!"}]
    assert latest.state["result"] == GREETING

    with pytest.raises(ValueError):
        await orchestrator.update_state("t1", {"not_a_field": 1})
