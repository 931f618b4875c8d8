"""LangGraph orchestration: plan -> route -> {agent... | direct | solve}."""

from __future__ import annotations

import logging

from langgraph.graph import END, StateGraph

from agents.direct import direct_node
from agents.planner import make_planner_node
from agents.synthesizer import make_solver_node
from core.registry import AgentRegistry
from core.router import DIRECT, SOLVE, make_router
from core.state import TaskState

logger = logging.getLogger(__name__)

PLAN = "plan"


def build_graph(registry: AgentRegistry, planner, solver, direct=direct_node) -> StateGraph:
    """
    Build the task StateGraph. Every registered agent gets a node; the router
    runs after planning and after every agent until all steps have evidence.
    """
    graph = StateGraph(TaskState)
    graph.add_node(PLAN, planner)
    for name, handler in registry.items():
        graph.add_node(name, handler)
    graph.add_node(SOLVE, solver)
    graph.add_node(DIRECT, direct)

    graph.set_entry_point(PLAN)
    route = make_router(registry)
    path_map = {name: name for name in registry.names()}
    path_map.update({SOLVE: SOLVE, DIRECT: DIRECT})
    graph.add_conditional_edges(PLAN, route, path_map)
    for name in registry.names():
        graph.add_conditional_edges(name, route, path_map)
    graph.add_edge(SOLVE, END)
    graph.add_edge(DIRECT, END)
    return graph


def create_runnable(registry: AgentRegistry, *, planner=None, solver=None, direct=direct_node):
    """Compile the graph; planner and solver default to the configured models."""
    graph = build_graph(
        registry,
        planner or make_planner_node(registry),
        solver or make_solver_node(),
        direct,
    )
    logger.info("Compiled task graph with agents: %s", ", ".join(registry.names()))
    return graph.compile()
