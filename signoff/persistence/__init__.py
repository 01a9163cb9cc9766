"""Persistence layer for signoff workflow state."""

from __future__ import annotations

import os
from typing import Optional

from ..config import SignoffConfig, load_config
from .inmemory import InMemoryStateRepository
from .repository import StateRepository
from .sql import SQLStateRepository

_repository_instance: StateRepository | None = None


def get_repository(
    database_url: Optional[str] = None, config: Optional[SignoffConfig] = None
) -> StateRepository:
    """Factory function to obtain a state repository.

    The repository backend is selected based on ``database_url`` which can be
    provided explicitly, via environment variable ``SIGNOFF_DATABASE_URL`` or
    ``DATABASE_URL``, or from loaded configuration. When no database is
    configured, an in-memory repository is returned.
    """

    global _repository_instance
    if _repository_instance is not None and database_url is None and config is None:
        return _repository_instance

    config = config or load_config()
    database_url = (
        database_url
        or os.getenv("SIGNOFF_DATABASE_URL")
        or os.getenv("DATABASE_URL")
        or getattr(config, "database_url", None)
    )

    if not database_url:
        _repository_instance = InMemoryStateRepository()
        return _repository_instance

    if database_url.startswith(("sqlite", "postgres")):
        _repository_instance = SQLStateRepository(database_url)
    else:
        raise ValueError(f"Unsupported database backend: {database_url}")

    return _repository_instance


__all__ = [
    "StateRepository",
    "InMemoryStateRepository",
    "SQLStateRepository",
    "get_repository",
]
