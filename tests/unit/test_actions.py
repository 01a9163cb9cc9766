import pytest

from signoff.config import ValidationConfig
from signoff.contracts import Step, StepKind, Workflow
from signoff.engine import AUTO_ACTIONS, ActionContext, HandlerRegistry
from signoff.errors import ValidationFailed


def _ctx(metadata, max_amount=10_000):
    workflow = Workflow(type="expense_approval", metadata=metadata)
    step = Step(workflow_id=workflow.id, idx=0, kind=StepKind.AUTO)
    return ActionContext(
        workflow=workflow, step=step, validation=ValidationConfig(max_amount=max_amount)
    )


@pytest.mark.asyncio
async def test_validate_data_accepts_valid_metadata():
    await AUTO_ACTIONS.run("validate_data", _ctx({"amount": 500, "description": "Lunch"}))


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "metadata, message",
    [
        ({"amount": 15000, "description": "Laptop"}, "exceeds maximum"),
        ({"amount": 100}, "Description is required"),
        ({"amount": "lots", "description": "x"}, "must be a number"),
    ],
)
async def test_validate_data_rejects(metadata, message):
    with pytest.raises(ValidationFailed, match=message):
        await AUTO_ACTIONS.run("validate_data", _ctx(metadata))


@pytest.mark.asyncio
async def test_validate_data_uses_configured_ceiling():
    with pytest.raises(ValidationFailed):
        await AUTO_ACTIONS.run("validate_data", _ctx({"amount": 60, "description": "x"}, 50))


@pytest.mark.asyncio
async def test_unknown_action_falls_back_to_default():
    assert await AUTO_ACTIONS.run("does_not_exist", _ctx({})) is None
    assert await AUTO_ACTIONS.run(None, _ctx({})) is None


@pytest.mark.asyncio
async def test_registry_without_default_raises_for_unknown_name():
    registry = HandlerRegistry()
    with pytest.raises(KeyError):
        await registry.run("missing", _ctx({}))


@pytest.mark.asyncio
async def test_copy_does_not_leak_registrations():
    registry = AUTO_ACTIONS.copy()
    calls = []

    @registry.register("custom")
    async def custom(ctx):
        calls.append(ctx.step.idx)
        return "ok"

    assert await registry.run("custom", _ctx({})) == "ok"
    assert calls == [0]
    assert "custom" in registry.names()
    assert "custom" not in AUTO_ACTIONS.names()
