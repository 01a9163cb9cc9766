"""signoff: human-in-the-loop approval workflows."""

from .config import SignoffConfig, load_config
from .contracts import (
    Approval,
    ApprovalStatus,
    Step,
    StepKind,
    StepState,
    Workflow,
    WorkflowDefinition,
    WorkflowState,
)
from .engine import AUTO_ACTIONS, COMPENSATIONS, derive_workflow_state
from .orchestrator import Orchestrator
from .persistence import get_repository
from .queues import get_queue

__version__ = "0.1.0"
__all__ = [
    "AUTO_ACTIONS",
    "Approval",
    "ApprovalStatus",
    "COMPENSATIONS",
    "Orchestrator",
    "SignoffConfig",
    "Step",
    "StepKind",
    "StepState",
    "Workflow",
    "WorkflowDefinition",
    "WorkflowState",
    "derive_workflow_state",
    "get_queue",
    "get_repository",
    "load_config",
]
