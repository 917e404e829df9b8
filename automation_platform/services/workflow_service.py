from __future__ import annotations

import logging
import uuid
from datetime import datetime
from typing import Any

import httpx
from sqlalchemy.orm import Session

from automation_platform.core.exceptions import NotFoundError, ValidationError, WorkflowExecutionError
from automation_platform.core.serialization import isoformat, parse_uuid
from automation_platform.models import WORKFLOW_STATUSES, Workflow
from automation_platform.schemas.workflow import WorkflowCreate, WorkflowDefinition, WorkflowUpdate
from automation_platform.services.error_handler import WorkflowErrorHandler, build_strategy, workflow_error_handler
from automation_platform.services.execution_engine import ExecutionResult, execute_workflow
from automation_platform.services.execution_logger import ExecutionLogger
from automation_platform.websockets.connection_manager import manager

logger = logging.getLogger(__name__)

NODE_TYPES = {"trigger", "action", "condition", "loop", "transform"}
RUNNABLE_STATUSES = ("active", "draft")


def serialize_workflow(row: Workflow) -> dict[str, Any]:
    return {
        "id": str(row.id),
        "organization_id": row.organization_id,
        "created_by": row.created_by,
        "name": row.name,
        "description": row.description,
        "status": row.status,
        "definition": row.definition or {"nodes": [], "edges": []},
        "variables": row.variables or {},
        "error_handling": row.error_handling or {},
        "webhook_enabled": bool(row.webhook_enabled),
        "webhook_auth_type": row.webhook_auth_type or "none",
        "has_webhook_secret": bool(row.webhook_secret),
        "version": row.version or 1,
        "tags": row.tags or [],
        "created_at": isoformat(row.created_at),
        "updated_at": isoformat(row.updated_at),
    }


def validate_definition(definition: WorkflowDefinition) -> None:
    """Reject graphs the engine cannot start: trigger count, duplicate ids, dangling edges."""
    triggers = [node for node in definition.nodes if node.type == "trigger"]
    if len(triggers) != 1:
        raise ValidationError(f"Workflow must have exactly one trigger node (found {len(triggers)})")

    node_ids = [node.id for node in definition.nodes]
    if len(node_ids) != len(set(node_ids)):
        raise ValidationError("Node ids must be unique")

    unknown = sorted({node.type for node in definition.nodes} - NODE_TYPES)
    if unknown:
        raise ValidationError(f"Unknown node type(s): {', '.join(unknown)}")

    known = set(node_ids)
    for edge in definition.edges:
        if edge.source not in known or edge.target not in known:
            raise ValidationError(f"Edge {edge.id or edge.source + '->' + edge.target} references a missing node")


def get_workflow_row(db: Session, workflow_id: str, organization_id: str | None = None) -> Workflow | None:
    uid = parse_uuid(workflow_id)
    if uid is None:
        return None
    query = db.query(Workflow).filter(Workflow.id == uid)
    if organization_id is not None:
        query = query.filter(Workflow.organization_id == organization_id)
    return query.first()


def list_workflows(
    db: Session,
    organization_id: str | None = None,
    status: str | None = None,
) -> list[dict[str, Any]]:
    query = db.query(Workflow)
    if organization_id is not None:
        query = query.filter(Workflow.organization_id == organization_id)
    if status:
        query = query.filter(Workflow.status == status)
    return [serialize_workflow(row) for row in query.order_by(Workflow.created_at.desc()).all()]


def get_workflow(db: Session, workflow_id: str, organization_id: str | None = None) -> dict[str, Any] | None:
    row = get_workflow_row(db, workflow_id, organization_id)
    return serialize_workflow(row) if row else None


def create_workflow(
    db: Session,
    payload: WorkflowCreate,
    organization_id: str,
    created_by: str | None = None,
) -> dict[str, Any]:
    validate_definition(payload.definition)
    row = Workflow(
        organization_id=organization_id,
        created_by=created_by,
        name=payload.name,
        description=payload.description,
        status=payload.status,
        definition=payload.definition.model_dump(by_alias=True, exclude_none=True),
        variables=payload.variables,
        error_handling=payload.error_handling,
        webhook_enabled=payload.webhook_enabled,
        webhook_secret=payload.webhook_secret,
        webhook_auth_type=payload.webhook_auth_type,
        tags=payload.tags,
        version=1,
    )
    db.add(row)
    db.commit()
    db.refresh(row)
    logger.info("Created workflow %s (%s)", row.id, row.name)
    return serialize_workflow(row)


def update_workflow(
    db: Session,
    workflow_id: str,
    payload: WorkflowUpdate,
    organization_id: str | None = None,
) -> dict[str, Any] | None:
    row = get_workflow_row(db, workflow_id, organization_id)
    if not row:
        return None

    changes = payload.model_dump(exclude_unset=True)
    definition = changes.pop("definition", None)
    if definition is not None:
        parsed = WorkflowDefinition.model_validate(definition)
        validate_definition(parsed)
        new_definition = parsed.model_dump(by_alias=True, exclude_none=True)
        if new_definition != (row.definition or {}):
            row.definition = new_definition
            row.version = (row.version or 1) + 1

    for key, value in changes.items():
        if value is None and key in ("name", "status"):
            continue
        setattr(row, key, value)
    row.updated_at = datetime.utcnow()
    db.commit()
    db.refresh(row)
    return serialize_workflow(row)


def delete_workflow(db: Session, workflow_id: str, organization_id: str | None = None) -> bool:
    row = get_workflow_row(db, workflow_id, organization_id)
    if not row:
        return False
    db.delete(row)
    db.commit()
    logger.info("Deleted workflow %s", workflow_id)
    return True


def set_workflow_status(
    db: Session,
    workflow_id: str,
    status: str,
    organization_id: str | None = None,
) -> dict[str, Any] | None:
    if status not in WORKFLOW_STATUSES:
        raise ValidationError(f"Invalid workflow status: {status}")
    row = get_workflow_row(db, workflow_id, organization_id)
    if not row:
        return None
    if status == "active":
        validate_definition(WorkflowDefinition.model_validate(row.definition or {}))
    row.status = status
    row.updated_at = datetime.utcnow()
    db.commit()
    db.refresh(row)
    return serialize_workflow(row)


async def run_workflow(
    db: Session,
    workflow_id: str,
    trigger_data: Any = None,
    user_id: str | None = None,
    source: str = "manual",
    organization_id: str | None = None,
    http_client: httpx.AsyncClient | None = None,
    error_handler: WorkflowErrorHandler | None = None,
    parent_execution_id: str | None = None,
    execution_id: str | None = None,
) -> dict[str, Any]:
    """
    Execute a workflow end to end: log row, engine run, optional recovery, broadcast.

    Raises NotFoundError for unknown workflows and ValidationError for workflows
    that are paused or archived. Node failures do not raise; they come back as
    ``success=False`` in the returned dict.
    """
    workflow = get_workflow_row(db, workflow_id, organization_id)
    if not workflow:
        raise NotFoundError("Workflow not found")
    if workflow.status not in RUNNABLE_STATUSES:
        raise ValidationError(f"Workflow is {workflow.status}; only active or draft workflows can run")

    error_handler = error_handler or workflow_error_handler
    workflow_key = str(workflow.id)
    organization = workflow.organization_id
    execution_id = execution_id or str(uuid.uuid4())
    trigger_data = trigger_data if trigger_data is not None else {}

    execution_logger = ExecutionLogger(db)
    execution_logger.start_execution(
        execution_id,
        workflow_key,
        organization,
        triggered_by=user_id or source,
        trigger_data=trigger_data,
        variables=workflow.variables,
        parent_execution_id=parent_execution_id,
    )
    execution_logger.log_info(execution_id, f"Triggered via {source}", {"source": source, "version": workflow.version})

    async def _run() -> ExecutionResult:
        return await execute_workflow(
            workflow,
            workflow_key,
            execution_id,
            organization,
            user_id=user_id,
            trigger_data=trigger_data,
            db=db,
            http_client=http_client,
            execution_logger=execution_logger,
            step_offset=execution_logger.count_steps(execution_id),
        )

    async def _rerun() -> ExecutionResult:
        retry_result = await _run()
        if not retry_result.success:
            raise WorkflowExecutionError(
                retry_result.error or "Workflow execution failed",
                retry_result.error_code or "WORKFLOW_EXECUTION_ERROR",
                node_id=retry_result.failed_node,
                recoverable=retry_result.recoverable,
            )
        return retry_result

    try:
        result = await _run()
        recovered = False
        final_error: WorkflowExecutionError | None = None

        if not result.success:
            error = WorkflowExecutionError(
                result.error or "Workflow execution failed",
                result.error_code or "WORKFLOW_EXECUTION_ERROR",
                node_id=result.failed_node,
                recoverable=result.recoverable,
            )
            strategy = build_strategy((workflow.error_handling or {}).get("strategy"), _rerun)
            outcome = await error_handler.handle_error(error, workflow_key, execution_id, strategy)
            attempts = outcome.get("attempts", 0)
            if attempts:
                row = execution_logger.get_execution(execution_id)
                row.retry_count = attempts
                db.commit()

            if outcome["recovered"]:
                result = outcome["result"]
                recovered = True
                execution_logger.log_warning(
                    execution_id,
                    f"Workflow recovered after {attempts} attempt(s)",
                    {"original_error": error.to_dict()},
                )
            else:
                final_error = outcome["final_error"]
                result.error = final_error.message

        if final_error is None:
            execution_logger.complete_execution(execution_id, result.result)
        else:
            execution_logger.fail_execution(execution_id, final_error)
    except Exception as exc:
        db.rollback()
        logger.exception("Workflow %s execution %s crashed: %s", workflow_key, execution_id, exc)
        execution_logger.fail_execution(execution_id, exc)
        raise

    status = "completed" if result.success else "failed"
    logger.info("Workflow %s execution %s %s via %s", workflow_key, execution_id, status, source)

    await manager.broadcast(
        "workflow_execution",
        {
            "workflow_id": workflow_key,
            "workflow_name": workflow.name,
            "execution_id": execution_id,
            "status": status,
            "source": source,
            "failed_node": result.failed_node,
            "error": result.error,
            "duration_ms": result.duration_ms,
        },
        organization_id=organization,
    )

    return {
        **result.to_dict(),
        "execution_id": execution_id,
        "workflow_id": workflow_key,
        "status": status,
        "source": source,
        "recovered": recovered,
    }
