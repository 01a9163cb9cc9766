import asyncio

from typer.testing import CliRunner

import signoff.persistence as persistence
from signoff.cli import app
from signoff.contracts import ApprovalStatus, WorkflowState
from signoff.persistence import InMemoryStateRepository

DEFINITION = """
name: expense_approval
description: Expense sign-off
steps:
  - kind: AUTO
    config:
      action: validate_data
  - kind: HUMAN
    config:
      channel: web
  - kind: AUTO
    config:
      action: process_payment
"""


def _setup_repo() -> InMemoryStateRepository:
    repo = InMemoryStateRepository()
    persistence._repository_instance = repo
    return repo


def _create_definition(runner, tmp_path):
    path = tmp_path / "expense.yaml"
    path.write_text(DEFINITION)
    return runner.invoke(app, ["definition", "create", str(path)])


def test_definition_create_and_list(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    _setup_repo()
    runner = CliRunner()

    result = _create_definition(runner, tmp_path)
    assert result.exit_code == 0, result.stdout
    assert "expense_approval v1 (3 steps)" in result.stdout

    result = runner.invoke(app, ["definition", "list"])
    assert result.exit_code == 0
    assert "expense_approval\tv1\tactive" in result.stdout


def test_definition_create_rejects_invalid_steps(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    _setup_repo()
    path = tmp_path / "bad.yaml"
    path.write_text("name: broken\nsteps:\n  - kind: HUMAN\n")

    result = CliRunner().invoke(app, ["definition", "create", str(path)])
    assert result.exit_code == 1
    assert "invalid_definition" in result.stdout


def test_workflow_lifecycle_through_cli(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    repo = _setup_repo()
    runner = CliRunner()
    _create_definition(runner, tmp_path)

    result = runner.invoke(
        app,
        [
            "workflow",
            "create",
            "expense_approval",
            "--metadata",
            '{"amount": 250, "description": "Books"}',
        ],
    )
    assert result.exit_code == 0, result.stdout
    assert "WAITING_APPROVAL" in result.stdout

    workflow = asyncio.run(repo.list_workflows())[0]
    approval = asyncio.run(repo.list_approvals(workflow_id=workflow.id))[0]

    result = runner.invoke(app, ["approval", "decide", approval.token, "approved", "--by", "lee"])
    assert result.exit_code == 0, result.stdout
    assert f"approval-{approval.token}" in result.stdout

    stored = asyncio.run(repo.get_workflow(workflow.id))
    assert stored.state == WorkflowState.DONE
    settled = asyncio.run(repo.get_approval(approval.id))
    assert settled.status == ApprovalStatus.APPROVED
    assert settled.decided_by == "lee"

    result = runner.invoke(app, ["workflow", "list"])
    assert f"{workflow.id}\texpense_approval\tDONE" in result.stdout

    result = runner.invoke(app, ["workflow", "show", workflow.id])
    assert result.exit_code == 0
    assert "WORKFLOW_COMPLETED" in result.stdout
    assert "approved via web" in result.stdout


def test_workflow_show_missing(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    _setup_repo()
    result = CliRunner().invoke(app, ["workflow", "show", "missing-id"])
    assert result.exit_code == 1
    assert "not found" in result.stdout


def test_workflow_create_reports_validation_failure(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    repo = _setup_repo()
    runner = CliRunner()
    _create_definition(runner, tmp_path)

    result = runner.invoke(
        app,
        ["workflow", "create", "expense_approval", "--metadata", '{"amount": 15000, "description": "Car"}'],
    )
    assert result.exit_code == 1
    assert "validation_failed" in result.stdout
    workflow = asyncio.run(repo.list_workflows())[0]
    assert workflow.state == WorkflowState.FAILED


def test_workflow_create_rejects_bad_metadata(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    _setup_repo()
    result = CliRunner().invoke(
        app, ["workflow", "create", "expense_approval", "--metadata", "[1, 2]"]
    )
    assert result.exit_code == 1
    assert "JSON object" in result.stdout
