"""Per-channel delivery of approval notifications."""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime
from typing import Any, Dict, List, Optional, Protocol

import httpx
from pydantic import BaseModel, Field

from ..config import SignoffConfig
from ..constants import DEFAULT_BASE_URL, DEFAULT_CHANNEL
from ..contracts import Approval, Step, Workflow

logger = logging.getLogger(__name__)


class NotificationMessage(BaseModel):
    """What a channel sender needs to tell the approver."""

    kind: str
    channel: str
    approval_id: str
    workflow_id: str
    approval_url: str
    expires_at: datetime
    workflow_type: Optional[str] = None
    step_idx: Optional[int] = None
    title: Optional[str] = None
    assignee: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)


class ChannelSender(Protocol):
    async def send(self, message: NotificationMessage) -> None:
        """Deliver ``message``; raise on failure."""


class LogChannelSender:
    """Sender that writes the approval link to the log."""

    async def send(self, message: NotificationMessage) -> None:
        logger.info(
            f"[{message.channel}] {message.kind} for workflow {message.workflow_id}: "
            f"{message.approval_url}"
        )


class WebhookChannelSender:
    """POST the message as JSON to a webhook URL (Slack, Teams, custom)."""

    def __init__(
        self,
        url: str,
        timeout: float = 5.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.url = url
        self.timeout = timeout
        self._transport = transport

    async def send(self, message: NotificationMessage) -> None:
        title = message.title or "Workflow Approval"
        prefix = "Approval expired" if message.kind == "approval_expired" else "Approval required"
        body = {
            "text": f"{prefix}: {title}\n{message.approval_url}",
            "signoff": message.model_dump(mode="json"),
        }
        async with httpx.AsyncClient(
            timeout=self.timeout, transport=self._transport
        ) as client:
            response = await client.post(self.url, json=body)
            response.raise_for_status()


class ChannelDispatcher:
    """Fan one notification out to every channel configured for a step.

    Channels are sent concurrently and independently: a failing channel is
    logged and reported, and never prevents delivery on the others.
    """

    def __init__(
        self,
        senders: Optional[Dict[str, ChannelSender]] = None,
        fallback: Optional[ChannelSender] = None,
        base_url: str = DEFAULT_BASE_URL,
        default_channel: str = DEFAULT_CHANNEL,
    ) -> None:
        self.senders: Dict[str, ChannelSender] = dict(senders or {})
        self.fallback = fallback
        self.base_url = base_url.rstrip("/")
        self.default_channel = default_channel

    @classmethod
    def from_config(cls, config: SignoffConfig) -> "ChannelDispatcher":
        senders: Dict[str, ChannelSender] = {
            channel: WebhookChannelSender(url)
            for channel, url in config.notifications.webhooks.items()
        }
        return cls(
            senders=senders,
            fallback=LogChannelSender(),
            base_url=config.approvals.base_url,
            default_channel=config.notifications.default_channel,
        )

    def approval_url(self, token: str) -> str:
        return f"{self.base_url}/approve/{token}"

    def channels_for(self, step: Optional[Step], approval: Approval) -> List[str]:
        channels: List[str] = []
        candidates = [approval.channel]
        if step is not None:
            candidates += [step.config.channel, *step.config.channels]
        for channel in candidates:
            if channel and channel not in channels:
                channels.append(channel)
        return channels or [self.default_channel]

    def build_message(
        self,
        kind: str,
        channel: str,
        approval: Approval,
        workflow: Optional[Workflow] = None,
        step: Optional[Step] = None,
    ) -> NotificationMessage:
        return NotificationMessage(
            kind=kind,
            channel=channel,
            approval_id=approval.id,
            workflow_id=approval.workflow_id,
            approval_url=self.approval_url(approval.token),
            expires_at=approval.expires_at,
            workflow_type=workflow.type if workflow else None,
            step_idx=step.idx if step else None,
            title=step.config.title if step else None,
            assignee=step.config.assignee if step else None,
            metadata=workflow.metadata if workflow else {},
        )

    async def send(self, message: NotificationMessage) -> None:
        sender = self.senders.get(message.channel, self.fallback)
        if sender is None:
            raise ValueError(f"Unknown channel: {message.channel}")
        await sender.send(message)

    async def fan_out(
        self,
        kind: str,
        approval: Approval,
        workflow: Optional[Workflow] = None,
        step: Optional[Step] = None,
    ) -> Dict[str, Optional[str]]:
        """Send to every channel; map each channel to ``None`` or its error."""
        channels = self.channels_for(step, approval)
        logger.info(f"Sending approval {approval.id} via channels: {', '.join(channels)}")
        results = await asyncio.gather(
            *(
                self.send(self.build_message(kind, channel, approval, workflow, step))
                for channel in channels
            ),
            return_exceptions=True,
        )
        report: Dict[str, Optional[str]] = {}
        for channel, result in zip(channels, results):
            if isinstance(result, BaseException):
                logger.error(f"Failed to send to {channel}: {result}")
                report[channel] = str(result) or type(result).__name__
            else:
                logger.info(f"Sent to {channel}")
                report[channel] = None
        return report
