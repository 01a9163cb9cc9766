"""Run an expense approval end to end in a single process.

Uses the in-memory repository and queue, so no database or Redis is
needed. The approval worker is drained in-process to apply the decision.
"""

import asyncio
from pathlib import Path

import yaml

from signoff import Orchestrator, SignoffConfig
from signoff.persistence import InMemoryStateRepository
from signoff.queues import InMemoryJobQueue


async def main():
    orchestrator = Orchestrator(
        InMemoryStateRepository(), InMemoryJobQueue(), config=SignoffConfig()
    )

    definition = yaml.safe_load((Path(__file__).parent / "expense_approval.yaml").read_text())
    await orchestrator.create_definition(
        definition["name"], definition["steps"], definition.get("description")
    )

    workflow = await orchestrator.create_workflow(
        "expense_approval", {"amount": 420, "description": "Conference travel"}
    )
    print(f"Workflow {workflow.id}: {workflow.state.value}")

    # the notification worker would normally send this link to the approver
    details = await orchestrator.get_workflow_details(workflow.id)
    approval = details.approvals[-1]
    print(f"Approve at: {orchestrator.dispatcher.approval_url(approval.token)}")

    receipt = await orchestrator.submit_approval_decision(
        approval.token, "approved", feedback="Looks fine", decided_by="manager@example.com"
    )
    print(f"Queued decision as {receipt.job_id}")
    await orchestrator.process_pending()

    workflow = await orchestrator.get_workflow(workflow.id)
    print(f"Workflow {workflow.id}: {workflow.state.value}")


if __name__ == "__main__":
    asyncio.run(main())
