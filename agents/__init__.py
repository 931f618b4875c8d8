"""Graph node agents."""

from .catalog import build_registry
from .direct import direct_node
from .planner import make_planner_node
from .synthesizer import make_solver_node
from .worker import AgentSpec, make_agent_node, subworkflow_node

__all__ = [
    "AgentSpec",
    "build_registry",
    "direct_node",
    "make_agent_node",
    "make_planner_node",
    "make_solver_node",
    "subworkflow_node",
]
