import asyncio

import pytest
from langgraph.checkpoint.serde.jsonplus import JsonPlusSerializer

from core.errors import CheckpointConflictError
from core.state import ConversationTurn, Step, state_from_snapshot
from memory.checkpoints import CheckpointMetadata, CheckpointStore, InMemoryCheckpointBackend


def _meta(step: int, source: str = "loop") -> CheckpointMetadata:
    return CheckpointMetadata(source=source, step=step, writes={"plan": {"step": step}})


async def _collect(store: CheckpointStore, thread_id: str, **kwargs) -> list:
    return [c async for c in store.list(thread_id, **kwargs)]


@pytest.mark.asyncio
async def test_empty_thread(store):
    assert await store.get("nobody") is None
    assert await _collect(store, "nobody") == []


@pytest.mark.asyncio
async def test_put_chains_parents_and_latest_is_newest(store):
    ids = [await store.put("t1", {"task": f"task {i}"}, _meta(i - 1)) for i in range(4)]
    assert ids == sorted(ids)
    assert len(set(ids)) == 4

    latest = await store.get("t1")
    assert latest.checkpoint_id == ids[-1]
    assert latest.state == {"task": "task 3"}

    history = await _collect(store, "t1")
    assert [c.checkpoint_id for c in history] == list(reversed(ids))
    assert [c.parent_checkpoint_id for c in history] == [ids[2], ids[1], ids[0], None]


@pytest.mark.asyncio
async def test_point_read_and_pagination(store):
    ids = [await store.put("t1", {"task": str(i)}, _meta(i)) for i in range(5)]

    second = await store.get("t1", ids[1])
    assert second.state == {"task": "1"}
    assert second.metadata == _meta(1)
    assert await store.get("t1", "missing") is None

    assert [c.checkpoint_id for c in await _collect(store, "t1", limit=2)] == [ids[4], ids[3]]
    assert [c.checkpoint_id for c in await _collect(store, "t1", before=ids[2])] == [ids[1], ids[0]]
    assert await _collect(store, "t1", limit=0) == []


@pytest.mark.asyncio
async def test_list_can_be_restarted(store):
    for i in range(3):
        await store.put("t1", {"task": str(i)}, _meta(i))
    first = await _collect(store, "t1")
    second = await _collect(store, "t1")
    assert [c.checkpoint_id for c in first] == [c.checkpoint_id for c in second]


@pytest.mark.asyncio
async def test_threads_are_isolated(store):
    await store.put("a", {"task": "a"}, _meta(0))
    await store.put("b", {"task": "b"}, _meta(0))
    assert (await store.get("a")).state == {"task": "a"}
    assert len(await _collect(store, "b")) == 1
    assert (await store.get("b")).parent_checkpoint_id is None


@pytest.mark.asyncio
async def test_state_round_trips_as_plain_data(store):
    state = {
        "task": "what's 3*6 divided by 2",
        "steps": [Step("Multiply.", "#E1", "calculate", "multiply 3 6")],
        "evidence": {"#E1": "18"},
        "history": [ConversationTurn("Here is a task: hi", "Hello!")],
        "direct_response": None,
    }
    await store.put("t1", state, _meta(0))
    loaded = await store.get("t1")
    assert loaded.state["steps"] == [
        {"description": "Multiply.", "step_id": "#E1", "tool_name": "calculate", "raw_input": "multiply 3 6"}
    ]
    restored = state_from_snapshot(loaded.state)
    assert restored["steps"] == state["steps"]
    assert restored["history"] == state["history"]
    assert loaded.as_record()["checkpoint"]["evidence"] == {"#E1": "18"}


class CountingSerde(JsonPlusSerializer):
    def __init__(self) -> None:
        super().__init__()
        self.dumped: list = []

    def dumps_typed(self, obj):
        self.dumped.append(obj)
        return super().dumps_typed(obj)


@pytest.mark.asyncio
async def test_store_serializes_snapshots_through_its_serde():
    serde = CountingSerde()
    store = CheckpointStore(serde=serde)
    await store.put("t1", {"task": "x", "steps": [Step("Add.", "#E1", "calculate", "add 1 2")]}, _meta(0))

    assert isinstance(CheckpointStore().serde, JsonPlusSerializer)
    assert serde.dumped[0]["steps"] == [
        {"description": "Add.", "step_id": "#E1", "tool_name": "calculate", "raw_input": "add 1 2"}
    ]
    assert serde.dumped[1] == {"source": "loop", "step": 0, "writes": {"plan": {"step": 0}}}
    assert (await store.get("t1")).state["task"] == "x"


class YieldingBackend(InMemoryCheckpointBackend):
    async def latest(self, thread_id):
        await asyncio.sleep(0)
        return await super().latest(thread_id)


@pytest.mark.asyncio
async def test_thread_locks_are_released_after_writes():
    store = CheckpointStore(YieldingBackend())
    ids = await asyncio.gather(
        *(store.put(f"thread-{i % 3}", {"task": str(i)}, _meta(i)) for i in range(9))
    )
    assert len(set(ids)) == 9
    assert store._locks == {}
    for n in range(3):
        history = await _collect(store, f"thread-{n}")
        assert len(history) == 3
        assert history[-1].parent_checkpoint_id is None


@pytest.mark.asyncio
async def test_backend_rejects_duplicate_ids():
    backend = InMemoryCheckpointBackend()
    store = CheckpointStore(backend)
    checkpoint_id = await store.put("t1", {"task": "x"}, _meta(0))
    record = await backend.fetch("t1", checkpoint_id)
    with pytest.raises(CheckpointConflictError):
        await backend.insert(record)
