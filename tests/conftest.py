from __future__ import annotations

import pytest

from agents import build_registry, make_planner_node, make_solver_node
from config import Settings
from core.graph import create_runnable
from core.orchestrator import Orchestrator
from core.tool_bridge import LocalToolExecutor
from memory.checkpoints import CheckpointStore
from tests.fakes import EventRecorder, calculator_model, make_fake_chain
from tools import LOCAL_TOOLS


def make_settings(**overrides) -> Settings:
    base = dict(
        openai_api_key="test-key",
        planner_output="text",
        evidence_substitution="token",
        max_attempts=3,
        max_insufficient_info=3,
        sample_rows=10,
        tool_response_timeout=5.0,
        max_history_turns=10,
        structured_output_retries=0,
        database_url="",
    )
    base.update(overrides)
    return Settings(**base)


def build_orchestrator(
    planner_model=None,
    solver_model=None,
    *,
    store: CheckpointStore | None = None,
    models: dict | None = None,
    settings: Settings | None = None,
) -> Orchestrator:
    settings = settings or make_settings()
    if planner_model is None or solver_model is None:
        default_planner, default_solver = make_fake_chain()
        planner_model = planner_model or default_planner
        solver_model = solver_model or default_solver
    registry = build_registry(settings, models={"calculate": calculator_model(), **(models or {})})
    runnable = create_runnable(
        registry,
        planner=make_planner_node(registry, planner_model, output=settings.planner_output),
        solver=make_solver_node(solver_model, substitution=settings.evidence_substitution),
    )
    return Orchestrator(runnable, store or CheckpointStore())


@pytest.fixture
def events() -> EventRecorder:
    return EventRecorder()


@pytest.fixture
def store() -> CheckpointStore:
    return CheckpointStore()


@pytest.fixture
def local_tools() -> LocalToolExecutor:
    return LocalToolExecutor(LOCAL_TOOLS)
