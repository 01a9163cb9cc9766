"""AUTO step actions and compensation handlers."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, Optional

from ..config import ValidationConfig
from ..contracts import Step, Workflow
from ..errors import ValidationFailed

logger = logging.getLogger(__name__)


@dataclass
class ActionContext:
    """Everything a handler may look at while running a step."""

    workflow: Workflow
    step: Step
    validation: ValidationConfig = field(default_factory=ValidationConfig)
    parameters: Dict[str, Any] = field(default_factory=dict)

    @property
    def metadata(self) -> Dict[str, Any]:
        return self.workflow.metadata


Handler = Callable[[ActionContext], Awaitable[Any]]


class HandlerRegistry:
    """Named async handlers with a fallback for unknown names."""

    def __init__(self, default: Optional[Handler] = None) -> None:
        self._handlers: Dict[str, Handler] = {}
        self._default = default

    def register(self, name: str) -> Callable[[Handler], Handler]:
        """Decorator registering ``fn`` under ``name``."""

        def decorator(fn: Handler) -> Handler:
            self._handlers[name] = fn
            return fn

        return decorator

    def add(self, name: str, handler: Handler) -> None:
        self._handlers[name] = handler

    def get(self, name: Optional[str]) -> Optional[Handler]:
        if name and name in self._handlers:
            return self._handlers[name]
        return self._default

    def names(self) -> list[str]:
        return sorted(self._handlers)

    def copy(self) -> "HandlerRegistry":
        clone = HandlerRegistry(self._default)
        clone._handlers = dict(self._handlers)
        return clone

    async def run(self, name: Optional[str], ctx: ActionContext) -> Any:
        handler = self.get(name)
        if handler is None:
            raise KeyError(f"No handler registered for {name!r}")
        return await handler(ctx)


async def _default_action(ctx: ActionContext) -> None:
    logger.info(
        f"Executing default auto action for step {ctx.step.idx} of workflow {ctx.workflow.id}"
    )


async def _default_compensation(ctx: ActionContext) -> None:
    logger.info(
        f"No compensation handler for step {ctx.step.idx}; recorded without side effects"
    )


AUTO_ACTIONS = HandlerRegistry(default=_default_action)
COMPENSATIONS = HandlerRegistry(default=_default_compensation)


@AUTO_ACTIONS.register("validate_data")
async def validate_data(ctx: ActionContext) -> None:
    """Reject workflows whose amount is over the ceiling or lack a description."""
    amount = ctx.metadata.get("amount")
    ceiling = ctx.validation.max_amount
    if amount is not None:
        try:
            value = float(amount)
        except (TypeError, ValueError):
            raise ValidationFailed(f"Amount must be a number, got {amount!r}") from None
        if value > ceiling:
            raise ValidationFailed(f"Amount exceeds maximum limit of ${ceiling:,.0f}")
    if not ctx.metadata.get("description"):
        raise ValidationFailed("Description is required")
    logger.info(f"Data validation passed for workflow {ctx.workflow.id} (amount: {amount})")


@AUTO_ACTIONS.register("process_payment")
async def process_payment(ctx: ActionContext) -> None:
    logger.info(
        f"Processing payment of {ctx.metadata.get('amount')} for workflow {ctx.workflow.id}"
    )


@AUTO_ACTIONS.register("send_notification")
async def send_notification(ctx: ActionContext) -> None:
    logger.info(f"Sending notification: {ctx.step.config.message}")


@AUTO_ACTIONS.register("spell_check")
async def spell_check(ctx: ActionContext) -> None:
    logger.info(f"Running spell check on content of workflow {ctx.workflow.id}")


@AUTO_ACTIONS.register("publish_content")
async def publish_content(ctx: ActionContext) -> None:
    logger.info(f"Publishing content for workflow {ctx.workflow.id}")
