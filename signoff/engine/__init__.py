"""Workflow engine: definitions, execution, settlement and recovery."""

from .actions import AUTO_ACTIONS, COMPENSATIONS, ActionContext, HandlerRegistry
from .compensation import Compensator
from .definitions import DefinitionService, validate_step_shape
from .driver import WorkflowDriver
from .executor import StepExecutor
from .expiry import ExpirySweeper
from .replay import ReplayManager
from .settlement import ApprovalSettlement
from .state import derive_workflow_state

__all__ = [
    "AUTO_ACTIONS",
    "COMPENSATIONS",
    "ActionContext",
    "ApprovalSettlement",
    "Compensator",
    "DefinitionService",
    "ExpirySweeper",
    "HandlerRegistry",
    "ReplayManager",
    "StepExecutor",
    "WorkflowDriver",
    "derive_workflow_state",
    "validate_step_shape",
]
