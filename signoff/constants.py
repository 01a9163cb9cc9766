"""Shared constants for signoff."""

DEFAULT_APPROVAL_TTL_HOURS = 24
DEFAULT_MAX_AMOUNT = 10_000
DEFAULT_CHANNEL = "web"
DEFAULT_BASE_URL = "http://localhost:3000"
DEFAULT_ACTOR = "system"

APPROVAL_QUEUE = "approvals"
NOTIFICATION_QUEUE = "notifications"

DEFAULT_MAX_ATTEMPTS = 3
DEFAULT_BACKOFF_BASE = 2.0
DEFAULT_BACKOFF_JITTER = 0.5


def approval_job_id(token: str) -> str:
    """Deterministic job key for a decision on ``token``."""
    return f"approval-{token}"
