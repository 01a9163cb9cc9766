"""Exception taxonomy for the orchestration engine."""

from __future__ import annotations


class SignoffError(Exception):
    """Base class for all engine errors."""

    code = "error"


class DefinitionNotFound(SignoffError):
    code = "definition_not_found"


class InvalidDefinition(SignoffError):
    """Raised when step templates fail shape validation."""

    code = "invalid_definition"


class WorkflowNotFound(SignoffError):
    code = "workflow_not_found"


class StepNotFound(SignoffError):
    code = "step_not_found"


class ApprovalNotFound(SignoffError):
    code = "approval_not_found"


class ValidationFailed(SignoffError):
    """An AUTO step rejected the workflow metadata."""

    code = "validation_failed"


class StepNotReplayable(SignoffError):
    code = "step_not_replayable"


class StepExecutionDisabled(SignoffError):
    code = "step_execution_disabled"


class AlreadyProcessed(SignoffError):
    """The approval was already settled; resubmitting is a conflict, not a failure."""

    code = "already_processed"


class ApprovalExpired(SignoffError):
    """The approval token expired; the request may be resent."""

    code = "approval_expired"
    can_resend = True


class InvalidApprovalState(SignoffError):
    code = "invalid_approval_state"


class InvalidWorkflowState(SignoffError):
    code = "invalid_workflow_state"
