import httpx
import pytest

from automation_platform.core.exceptions import NotFoundError, ValidationError
from automation_platform.models import ExecutionLog, ExecutionStep
from automation_platform.schemas.workflow import WorkflowCreate, WorkflowDefinition, WorkflowUpdate
from automation_platform.services.error_handler import WorkflowErrorHandler
from automation_platform.services.workflow_service import (
    create_workflow,
    delete_workflow,
    get_workflow,
    list_workflows,
    run_workflow,
    set_workflow_status,
    update_workflow,
    validate_definition,
)

from conftest import ORG_ID, simple_definition


async def _no_sleep(_delay):
    return None


def _definition(nodes, edges=()):
    return WorkflowDefinition.model_validate({"nodes": nodes, "edges": list(edges)})


def test_validate_definition_accepts_simple_graph():
    validate_definition(WorkflowDefinition.model_validate(simple_definition()))


@pytest.mark.parametrize(
    "nodes, edges, message",
    [
        ([{"id": "a", "type": "action"}], [], "exactly one trigger"),
        (
            [{"id": "t1", "type": "trigger"}, {"id": "t2", "type": "trigger"}],
            [],
            "exactly one trigger",
        ),
        ([{"id": "t", "type": "trigger"}, {"id": "t", "type": "action"}], [], "unique"),
        ([{"id": "t", "type": "trigger"}, {"id": "x", "type": "mystery"}], [], "Unknown node type"),
        ([{"id": "t", "type": "trigger"}], [{"source": "t", "target": "ghost"}], "missing node"),
    ],
)
def test_validate_definition_rejects_bad_graphs(nodes, edges, message):
    with pytest.raises(ValidationError, match=message):
        validate_definition(_definition(nodes, edges))


def test_workflow_crud(db):
    payload = WorkflowCreate(
        name="Onboarding",
        definition=WorkflowDefinition.model_validate(simple_definition()),
        webhook_secret="s3cret",
        tags=["crm"],
    )
    created = create_workflow(db, payload, ORG_ID, created_by="owner")

    assert created["status"] == "draft"
    assert created["version"] == 1
    assert created["has_webhook_secret"] is True
    assert "webhook_secret" not in created

    workflow_id = created["id"]
    assert get_workflow(db, workflow_id, ORG_ID)["name"] == "Onboarding"
    assert get_workflow(db, workflow_id, "org-2") is None
    assert [w["id"] for w in list_workflows(db, ORG_ID, status="draft")] == [workflow_id]
    assert list_workflows(db, ORG_ID, status="active") == []

    renamed = update_workflow(db, workflow_id, WorkflowUpdate(name="Onboarding v2"), ORG_ID)
    assert renamed["name"] == "Onboarding v2"
    assert renamed["version"] == 1

    new_definition = simple_definition("Welcome {{trigger_data.name}}")
    bumped = update_workflow(
        db, workflow_id, WorkflowUpdate(definition=WorkflowDefinition.model_validate(new_definition)), ORG_ID
    )
    assert bumped["version"] == 2
    assert bumped["definition"]["nodes"][1]["data"]["config"]["message"] == "Welcome {{trigger_data.name}}"

    assert delete_workflow(db, workflow_id, ORG_ID) is True
    assert delete_workflow(db, workflow_id, ORG_ID) is False
    assert update_workflow(db, workflow_id, WorkflowUpdate(name="x"), ORG_ID) is None


def test_create_workflow_rejects_invalid_definition(db):
    payload = WorkflowCreate(name="Broken", definition=_definition([{"id": "a", "type": "action"}]))
    with pytest.raises(ValidationError):
        create_workflow(db, payload, ORG_ID)


def test_set_workflow_status(db, make_workflow):
    workflow = make_workflow(status="draft")

    assert set_workflow_status(db, str(workflow.id), "active", ORG_ID)["status"] == "active"
    assert set_workflow_status(db, str(workflow.id), "paused", ORG_ID)["status"] == "paused"
    assert set_workflow_status(db, "not-a-uuid", "active", ORG_ID) is None
    with pytest.raises(ValidationError):
        set_workflow_status(db, str(workflow.id), "sleeping", ORG_ID)


def test_activation_validates_definition(db, make_workflow):
    workflow = make_workflow(definition={"nodes": [{"id": "a", "type": "action"}], "edges": []}, status="draft")
    with pytest.raises(ValidationError):
        set_workflow_status(db, str(workflow.id), "active", ORG_ID)


@pytest.mark.asyncio
async def test_run_workflow_records_execution(db, make_workflow):
    workflow = make_workflow()

    result = await run_workflow(db, str(workflow.id), trigger_data={"name": "Ada"}, user_id="owner")

    assert result["success"] is True
    assert result["status"] == "completed"
    assert result["source"] == "manual"
    assert result["recovered"] is False
    assert result["result"]["final_output"]["log"]["data"]["message"] == "Hello Ada"

    row = db.query(ExecutionLog).one()
    assert str(row.id) == result["execution_id"]
    assert row.status == "completed"
    assert row.triggered_by == "owner"
    assert row.trigger_data == {"name": "Ada"}

    steps = db.query(ExecutionStep).all()
    assert [(s.step_index, s.node_id, s.action_type, s.status) for s in steps] == [
        (0, "log", "action:log_message", "completed")
    ]


@pytest.mark.asyncio
async def test_run_workflow_failure_marks_execution_failed(db, make_workflow):
    definition = {
        "nodes": [
            {"id": "trigger", "type": "trigger"},
            {"id": "fetch", "type": "action", "data": {"config": {"actionType": "http_request"}}},
        ],
        "edges": [{"source": "trigger", "target": "fetch"}],
    }
    workflow = make_workflow(definition=definition)

    result = await run_workflow(
        db, str(workflow.id), error_handler=WorkflowErrorHandler(sleep=_no_sleep), source="api"
    )

    assert result["success"] is False
    assert result["status"] == "failed"
    assert result["failed_node"] == "fetch"
    row = db.query(ExecutionLog).one()
    assert row.status == "failed"
    assert row.error_details["node_id"] == "fetch"
    assert row.triggered_by == "api"


@pytest.mark.asyncio
async def test_run_workflow_rejects_missing_and_paused(db, make_workflow):
    with pytest.raises(NotFoundError):
        await run_workflow(db, "3f1c1d7e-0000-4000-8000-000000000000")

    paused = make_workflow(status="paused")
    with pytest.raises(ValidationError):
        await run_workflow(db, str(paused.id))

    other_org = make_workflow(organization_id="org-2")
    with pytest.raises(NotFoundError):
        await run_workflow(db, str(other_org.id), organization_id=ORG_ID)

    assert db.query(ExecutionLog).count() == 0


@pytest.mark.asyncio
async def test_run_workflow_recovers_with_strategy(db, make_workflow):
    calls = []

    def handler(request):
        calls.append(request.url.path)
        if len(calls) == 1:
            return httpx.Response(503, json={"error": "busy"})
        return httpx.Response(200, json={"ok": True})

    definition = {
        "nodes": [
            {"id": "trigger", "type": "trigger"},
            {
                "id": "fetch",
                "type": "action",
                "data": {
                    "config": {
                        "actionType": "http_request",
                        "url": "https://api.example.com/sync",
                        "raise_for_status": True,
                    }
                },
            },
        ],
        "edges": [{"source": "trigger", "target": "fetch"}],
    }
    workflow = make_workflow(definition=definition, error_handling={"strategy": "integration"})

    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
        result = await run_workflow(
            db,
            str(workflow.id),
            http_client=client,
            error_handler=WorkflowErrorHandler(sleep=_no_sleep),
        )

    assert result["success"] is True
    assert result["recovered"] is True
    assert len(calls) == 2

    row = db.query(ExecutionLog).one()
    assert row.status == "completed"
    assert row.retry_count == 1
    assert any("recovered after 1 attempt" in entry["message"] for entry in row.logs)

    steps = db.query(ExecutionStep).order_by(ExecutionStep.step_index).all()
    assert [(s.step_index, s.status) for s in steps] == [(0, "failed"), (1, "completed")]


@pytest.mark.asyncio
async def test_unrecoverable_failure_skips_strategy(db, make_workflow):
    calls = []

    def handler(request):
        calls.append(request)
        return httpx.Response(404, json={"error": "missing"})

    definition = {
        "nodes": [
            {"id": "trigger", "type": "trigger"},
            {
                "id": "fetch",
                "type": "action",
                "data": {"config": {"actionType": "http_request", "url": "https://x.test", "raise_for_status": True}},
            },
        ],
        "edges": [{"source": "trigger", "target": "fetch"}],
    }
    workflow = make_workflow(definition=definition, error_handling={"strategy": "integration"})

    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
        result = await run_workflow(
            db, str(workflow.id), http_client=client, error_handler=WorkflowErrorHandler(sleep=_no_sleep)
        )

    assert result["success"] is False
    assert result["recovered"] is False
    assert len(calls) == 1
    assert db.query(ExecutionLog).one().retry_count == 0
