"""State repository tests for the in-memory and SQLite backends."""

from datetime import timedelta

import pytest
import pytest_asyncio

from signoff.contracts import (
    Approval,
    ApprovalStatus,
    Event,
    EventType,
    Step,
    StepKind,
    StepReplay,
    StepState,
    StepTemplate,
    Workflow,
    WorkflowDefinition,
    WorkflowState,
    utcnow,
)
from signoff.persistence import InMemoryStateRepository, SQLStateRepository
from signoff.persistence.tables import ApprovalRow, StepRow, WorkflowRow


def _workflow():
    workflow = Workflow(type="expense_approval", metadata={"amount": 100})
    workflow.steps = [
        Step(workflow_id=workflow.id, idx=1, kind=StepKind.HUMAN, config={"channel": "web"}),
        Step(workflow_id=workflow.id, idx=0, kind=StepKind.AUTO, config={"action": "validate_data"}),
    ]
    return workflow


def _approval(workflow, step, **kwargs):
    kwargs.setdefault("expires_at", utcnow() + timedelta(hours=1))
    return Approval(workflow_id=workflow.id, step_id=step.id, channel="web", **kwargs)


@pytest_asyncio.fixture(params=["memory", "sqlite"])
async def state_repo(request, tmp_path):
    if request.param == "memory":
        yield InMemoryStateRepository()
        return
    repo = SQLStateRepository(f"sqlite:///{tmp_path / 'state.db'}")
    await repo.init_db()
    yield repo
    await repo.dispose()


@pytest.mark.asyncio
async def test_workflow_crud(state_repo):
    workflow = _workflow()
    await state_repo.add_workflow(workflow)

    loaded = await state_repo.get_workflow(workflow.id)
    assert loaded is not None
    assert loaded.metadata == {"amount": 100}
    assert [s.idx for s in loaded.steps] == [0, 1]
    assert loaded.steps[1].config.channel == "web"

    loaded.state = WorkflowState.RUNNING
    loaded.current_step_index = 1
    await state_repo.save_workflow(loaded)
    step = loaded.steps[0]
    step.state = StepState.DONE
    step.executed_at = utcnow()
    await state_repo.save_step(step)

    again = await state_repo.get_workflow(workflow.id)
    assert again.state == WorkflowState.RUNNING
    assert again.current_step_index == 1
    assert again.steps[0].state == StepState.DONE
    assert again.steps[0].executed_at.tzinfo is not None

    listed = await state_repo.list_workflows()
    assert [w.id for w in listed] == [workflow.id]
    assert await state_repo.get_workflow("missing") is None


@pytest.mark.asyncio
async def test_definitions_latest_and_deactivate(state_repo):
    steps = [StepTemplate(idx=0, kind=StepKind.AUTO)]
    await state_repo.add_definition(WorkflowDefinition(name="a", version=1, steps=steps))
    await state_repo.add_definition(WorkflowDefinition(name="a", version=2, steps=steps))

    latest = await state_repo.get_latest_definition("a")
    assert latest.version == 2
    assert latest.steps[0].kind == StepKind.AUTO

    assert await state_repo.deactivate_definitions("a") == 2
    assert await state_repo.get_latest_definition("a") is None
    inactive = await state_repo.get_latest_definition("a", active_only=False)
    assert inactive.version == 2
    assert not inactive.is_active


@pytest.mark.asyncio
async def test_approval_queries(state_repo):
    workflow = _workflow()
    await state_repo.add_workflow(workflow)
    human = workflow.steps[0]
    overdue = _approval(workflow, human, expires_at=utcnow() - timedelta(minutes=5))
    await state_repo.add_approval(overdue)

    assert (await state_repo.get_approval_by_token(overdue.token)).id == overdue.id
    expired = await state_repo.list_expired_approvals(utcnow())
    assert [a.id for a in expired] == [overdue.id]

    assert await state_repo.expire_pending_approvals([human.id], utcnow()) == 1
    assert (await state_repo.get_approval(overdue.id)).status == ApprovalStatus.EXPIRED
    assert await state_repo.list_expired_approvals(utcnow()) == []

    fresh = _approval(workflow, human)
    await state_repo.add_approval(fresh)
    pending = await state_repo.list_approvals(step_id=human.id, status=ApprovalStatus.PENDING)
    assert [a.id for a in pending] == [fresh.id]
    assert len(await state_repo.list_approvals(workflow_id=workflow.id)) == 2


@pytest.mark.asyncio
async def test_events_newest_first_and_replays(state_repo):
    workflow = _workflow()
    await state_repo.add_workflow(workflow)
    base = utcnow()
    for offset, kind in enumerate([EventType.WORKFLOW_CREATED, EventType.STEP_EXECUTED]):
        await state_repo.add_event(
            Event(
                workflow_id=workflow.id,
                type=kind,
                payload={"n": offset},
                created_at=base + timedelta(seconds=offset),
            )
        )
    events = await state_repo.list_events(workflow.id)
    assert [e.type for e in events] == [EventType.STEP_EXECUTED, EventType.WORKFLOW_CREATED]
    assert len(await state_repo.list_events(workflow.id, limit=1)) == 1

    step = workflow.steps[1]
    await state_repo.add_step_replay(
        StepReplay(step_id=step.id, workflow_id=workflow.id, reason="fix", replayed_by="ops")
    )
    replays = await state_repo.list_step_replays(step.id)
    assert [(r.reason, r.replayed_by) for r in replays] == [("fix", "ops")]


@pytest.mark.asyncio
async def test_delete_workflow_cascades(state_repo):
    workflow = _workflow()
    await state_repo.add_workflow(workflow)
    step = workflow.steps[0]
    approval = _approval(workflow, step)
    await state_repo.add_approval(approval)
    await state_repo.add_event(Event(workflow_id=workflow.id, type=EventType.WORKFLOW_CREATED))
    await state_repo.add_step_replay(StepReplay(step_id=step.id, workflow_id=workflow.id))

    assert await state_repo.delete_workflow(workflow.id) is True
    assert await state_repo.get_workflow(workflow.id) is None
    assert await state_repo.get_step(step.id) is None
    assert await state_repo.get_approval(approval.id) is None
    assert await state_repo.list_events(workflow.id) == []
    assert await state_repo.list_step_replays(step.id) == []
    assert await state_repo.delete_workflow(workflow.id) is False


@pytest.mark.asyncio
async def test_transaction_rolls_back_on_error(state_repo):
    workflow = _workflow()
    await state_repo.add_workflow(workflow)

    with pytest.raises(RuntimeError):
        async with state_repo.transaction() as tx:
            step = await tx.get_step(workflow.steps[0].id)
            step.state = StepState.DONE
            await tx.save_step(step)
            await tx.add_event(Event(workflow_id=workflow.id, type=EventType.STEP_EXECUTED))
            raise RuntimeError("boom")

    assert (await state_repo.get_step(workflow.steps[0].id)).state == StepState.READY
    assert await state_repo.list_events(workflow.id) == []


@pytest.mark.asyncio
async def test_transaction_commits(state_repo):
    workflow = _workflow()
    async with state_repo.transaction() as tx:
        await tx.add_workflow(workflow)
        await tx.add_event(Event(workflow_id=workflow.id, type=EventType.WORKFLOW_CREATED))

    assert await state_repo.get_workflow(workflow.id) is not None
    assert len(await state_repo.list_events(workflow.id)) == 1


@pytest.mark.asyncio
async def test_inmemory_returns_copies():
    repo = InMemoryStateRepository()
    workflow = _workflow()
    await repo.add_workflow(workflow)

    loaded = await repo.get_workflow(workflow.id)
    loaded.metadata["amount"] = 999
    loaded.steps[0].state = StepState.FAILED

    fresh = await repo.get_workflow(workflow.id)
    assert fresh.metadata == {"amount": 100}
    assert fresh.steps[0].state == StepState.READY


@pytest.mark.asyncio
async def test_inmemory_nested_transaction_joins_outer():
    repo = InMemoryStateRepository()
    workflow = _workflow()

    with pytest.raises(RuntimeError):
        async with repo.transaction() as outer:
            await outer.add_workflow(workflow)
            async with repo.transaction() as inner:
                await inner.add_event(Event(workflow_id=workflow.id, type=EventType.WORKFLOW_CREATED))
            raise RuntimeError("boom")

    assert await repo.get_workflow(workflow.id) is None
    assert await repo.list_events(workflow.id) == []


@pytest.mark.asyncio
async def test_inmemory_rejects_duplicate_token():
    repo = InMemoryStateRepository()
    workflow = _workflow()
    await repo.add_workflow(workflow)
    first = _approval(workflow, workflow.steps[0])
    await repo.add_approval(first)

    with pytest.raises(ValueError):
        await repo.add_approval(_approval(workflow, workflow.steps[0], token=first.token))


@pytest.mark.asyncio
async def test_conditional_approval_save(state_repo):
    workflow = _workflow()
    await state_repo.add_workflow(workflow)
    approval = _approval(workflow, workflow.steps[0])
    await state_repo.add_approval(approval)

    approval.status = ApprovalStatus.APPROVED
    approval.decided_by = "ana"
    assert await state_repo.save_approval(approval, expected_status=ApprovalStatus.PENDING)

    # a second writer that read the approval while pending loses
    approval.status = ApprovalStatus.REJECTED
    approval.decided_by = "bob"
    assert not await state_repo.save_approval(approval, expected_status=ApprovalStatus.PENDING)

    stored = await state_repo.get_approval(approval.id)
    assert stored.status == ApprovalStatus.APPROVED
    assert stored.decided_by == "ana"
    assert not await state_repo.save_approval(_approval(workflow, workflow.steps[0]))


@pytest.mark.asyncio
async def test_queued_decision_blocks_expiry(state_repo):
    workflow = _workflow()
    await state_repo.add_workflow(workflow)
    human = workflow.steps[0]
    queued = _approval(workflow, human, expires_at=utcnow() - timedelta(minutes=5))
    idle = _approval(workflow, human, expires_at=utcnow() - timedelta(minutes=5))
    await state_repo.add_approval(queued)
    await state_repo.add_approval(idle)

    stamped_at = utcnow()
    assert await state_repo.mark_decision_queued(queued.token, stamped_at)
    # stamping twice keeps the first time
    assert await state_repo.mark_decision_queued(queued.token, stamped_at + timedelta(seconds=5))
    assert (await state_repo.get_approval(queued.id)).decision_queued_at == stamped_at

    expired = await state_repo.list_expired_approvals(utcnow())
    assert [a.id for a in expired] == [idle.id]
    assert not await state_repo.expire_approval(queued.id, utcnow())
    assert await state_repo.expire_approval(idle.id, utcnow())
    assert not await state_repo.expire_approval(idle.id, utcnow())

    assert (await state_repo.get_approval(queued.id)).status == ApprovalStatus.PENDING
    assert (await state_repo.get_approval(idle.id)).status == ApprovalStatus.EXPIRED
    assert not await state_repo.mark_decision_queued(idle.token, utcnow())
    assert not await state_repo.mark_decision_queued("unknown", utcnow())


@pytest.mark.asyncio
async def test_timestamps_round_trip_with_timezone(state_repo):
    workflow = _workflow()
    await state_repo.add_workflow(workflow)
    approval = _approval(workflow, workflow.steps[0])
    await state_repo.add_approval(approval)

    loaded = await state_repo.get_approval(approval.id)
    assert loaded.expires_at == approval.expires_at
    assert loaded.created_at == approval.created_at
    assert loaded.expires_at.tzinfo is not None
    assert (await state_repo.get_workflow(workflow.id)).created_at == workflow.created_at


def test_sql_timestamp_columns_are_timezone_aware():
    assert ApprovalRow.__table__.c.expires_at.type.timezone
    assert ApprovalRow.__table__.c.decision_queued_at.nullable
    assert StepRow.__table__.c.executed_at.type.timezone
    assert WorkflowRow.__table__.c.created_at.type.timezone
