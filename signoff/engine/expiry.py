"""Expiring stale approvals and resending them."""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timedelta
from typing import Optional

from ..constants import DEFAULT_APPROVAL_TTL_HOURS
from ..contracts import (
    ApprovalStatus,
    Event,
    EventType,
    ResendResult,
    StepState,
    new_token,
    utcnow,
)
from ..errors import ApprovalNotFound, InvalidApprovalState
from ..notifications import Notifier, notify_safely
from ..persistence import StateRepository

logger = logging.getLogger(__name__)


class ExpirySweeper:
    """Moves pending approvals past their deadline to ``expired``.

    Expiry is terminal for the token but not for the step: an expired
    approval can be resent with a new token while its step still waits.
    """

    def __init__(
        self,
        repository: StateRepository,
        notifier: Optional[Notifier] = None,
        approval_ttl: timedelta = timedelta(hours=DEFAULT_APPROVAL_TTL_HOURS),
    ) -> None:
        self._repository = repository
        self._notifier = notifier
        self.approval_ttl = approval_ttl

    async def sweep(self, now: Optional[datetime] = None) -> int:
        """Expire overdue approvals; return how many were expired."""
        now = now or utcnow()
        candidates = await self._repository.list_expired_approvals(now)
        expired = 0
        for candidate in candidates:
            async with self._repository.transaction() as repo:
                # settled or queued for settlement since the scan
                if not await repo.expire_approval(candidate.id, now):
                    continue
                approval = candidate.model_copy(update={"status": ApprovalStatus.EXPIRED})
                await repo.add_event(
                    Event(
                        workflow_id=approval.workflow_id,
                        type=EventType.APPROVAL_EXPIRED,
                        payload={
                            "approvalId": approval.id,
                            "stepId": approval.step_id,
                            "expiredAt": approval.expires_at.isoformat(),
                        },
                    )
                )
            expired += 1
            logger.info(f"Approval {approval.id} for workflow {approval.workflow_id} expired")
            await notify_safely(self._notifier, "notify_approval_expired", approval)
        if expired:
            logger.info(f"Expired {expired} approvals")
        return expired

    async def resend(self, approval_id: str) -> ResendResult:
        """Reissue an expired approval with a fresh token and deadline."""
        async with self._repository.transaction() as repo:
            approval = await repo.get_approval(approval_id)
            if approval is None:
                raise ApprovalNotFound(f"Approval {approval_id} not found")
            if approval.status != ApprovalStatus.EXPIRED:
                raise InvalidApprovalState("Can only resend expired approvals")
            step = await repo.get_step(approval.step_id)
            if step is None or step.state != StepState.WAITING:
                raise InvalidApprovalState("Step is no longer waiting for this approval")
            live = await repo.list_approvals(
                step_id=approval.step_id, status=ApprovalStatus.PENDING
            )
            if live:
                raise InvalidApprovalState("Step already has a pending approval")
            workflow = await repo.get_workflow(approval.workflow_id)

            approval.token = new_token()
            approval.expires_at = utcnow() + self.approval_ttl
            approval.status = ApprovalStatus.PENDING
            approval.decision_queued_at = None
            if not await repo.save_approval(
                approval, expected_status=ApprovalStatus.EXPIRED
            ):
                raise InvalidApprovalState("Approval changed while resending")
            await repo.add_event(
                Event(
                    workflow_id=approval.workflow_id,
                    type=EventType.APPROVAL_RESENT,
                    payload={
                        "approvalId": approval.id,
                        "stepId": approval.step_id,
                        "newExpiry": approval.expires_at.isoformat(),
                    },
                )
            )

        logger.info(f"Approval {approval.id} resent, expires {approval.expires_at.isoformat()}")
        if workflow is not None:
            await notify_safely(
                self._notifier, "notify_approval_requested", approval, workflow, step
            )
        return ResendResult(
            approval_id=approval.id,
            new_token=approval.token,
            new_expiry=approval.expires_at,
        )

    async def run_periodically(
        self, interval: float = 60.0, lifespan: Optional[float] = None
    ) -> None:
        """Sweep every ``interval`` seconds, for ``lifespan`` seconds if given."""
        loop = asyncio.get_running_loop()
        start_time = loop.time()
        while True:
            try:
                await self.sweep()
            except Exception as exc:
                logger.error(f"Expiry sweep failed: {exc}")
            if lifespan is not None and loop.time() - start_time + interval > lifespan:
                break
            await asyncio.sleep(interval)
