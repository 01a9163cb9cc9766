"""Workflow definition store operations."""

from __future__ import annotations

import logging
from typing import Any, Iterable, List, Optional

from pydantic import ValidationError

from ..contracts import StepKind, StepTemplate, WorkflowDefinition
from ..errors import DefinitionNotFound, InvalidDefinition
from ..persistence import StateRepository

logger = logging.getLogger(__name__)


def validate_step_shape(steps: Any) -> List[StepTemplate]:
    """Validate raw step templates and return them parsed.

    Each step needs a ``kind`` of AUTO or HUMAN, HUMAN steps need a
    ``config.channel``, and an explicit ``idx`` must match the position.
    """
    if not isinstance(steps, list):
        raise InvalidDefinition("Workflow steps must be a list")
    if not steps:
        raise InvalidDefinition("Workflow must have at least one step")

    parsed: List[StepTemplate] = []
    for index, raw in enumerate(steps):
        data = raw.model_dump() if isinstance(raw, StepTemplate) else raw
        if not isinstance(data, dict):
            raise InvalidDefinition(f"Step {index} must be a mapping")
        kind = data.get("kind")
        if not kind:
            raise InvalidDefinition(f"Step {index} must have a 'kind' property (AUTO or HUMAN)")
        if getattr(kind, "value", kind) not in {k.value for k in StepKind}:
            raise InvalidDefinition(
                f"Step {index} has invalid kind: {kind}. Must be AUTO or HUMAN"
            )
        try:
            template = StepTemplate.model_validate(data)
        except ValidationError as exc:
            raise InvalidDefinition(f"Step {index} is malformed: {exc}") from exc
        if template.kind == StepKind.HUMAN and not template.config.channel:
            raise InvalidDefinition(f"Step {index} (HUMAN) must have a channel in config")
        if template.idx is not None and template.idx != index:
            raise InvalidDefinition(
                f"Step index mismatch: expected {index}, got {template.idx}"
            )
        parsed.append(template.model_copy(update={"idx": index}))
    return parsed


class DefinitionService:
    """Reads and writes versioned workflow definitions."""

    def __init__(self, repository: StateRepository) -> None:
        self._repository = repository

    async def create(
        self, name: str, steps: Iterable[Any], description: Optional[str] = None
    ) -> WorkflowDefinition:
        """Validate ``steps`` and store them as the next version of ``name``."""
        if not name:
            raise InvalidDefinition("Definition name is required")
        templates = validate_step_shape(list(steps))
        async with self._repository.transaction() as repo:
            existing = await repo.get_latest_definition(name, active_only=False)
            version = existing.version + 1 if existing else 1
            definition = WorkflowDefinition(
                name=name, version=version, description=description, steps=templates
            )
            await repo.add_definition(definition)
        logger.info(f"Created workflow definition: {name} v{version}")
        return definition

    async def get_active(self, name: str) -> WorkflowDefinition:
        """Return the highest active version of ``name``."""
        definition = await self._repository.get_latest_definition(name, active_only=True)
        if definition is None:
            available = await self.available_types()
            raise DefinitionNotFound(
                f"Workflow definition '{name}' not found. "
                f"Available types: {', '.join(available) or 'none'}"
            )
        return definition

    async def available_types(self) -> list[str]:
        seen: dict[str, WorkflowDefinition] = {}
        for definition in await self._repository.list_definitions():
            if definition.is_active and definition.name not in seen:
                seen[definition.name] = definition
        return [f"{d.name} (v{d.version})" for d in seen.values()]

    async def list_definitions(self) -> list[WorkflowDefinition]:
        return await self._repository.list_definitions()

    async def deactivate(self, name: str) -> int:
        count = await self._repository.deactivate_definitions(name)
        logger.info(f"Deactivated workflow definition: {name} ({count} versions)")
        return count
