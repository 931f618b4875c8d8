"""Self-correcting sub-workflows used as plan steps."""

from .base import SubWorkflow, SubWorkflowResult, SubWorkflowState, Verdict
from .data_recovery import DataRecoveryWorkflow
from .insights import InsightsWorkflow
from .view_creation import ViewCreationWorkflow

__all__ = [
    "SubWorkflow",
    "SubWorkflowResult",
    "SubWorkflowState",
    "Verdict",
    "DataRecoveryWorkflow",
    "InsightsWorkflow",
    "ViewCreationWorkflow",
]
