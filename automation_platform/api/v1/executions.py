from __future__ import annotations

from datetime import datetime, timedelta
from typing import Any, Literal

from fastapi import APIRouter, Depends, HTTPException, Query
from fastapi.responses import Response
from sqlalchemy.orm import Session

from automation_platform.core.exceptions import NotFoundError
from automation_platform.core.security import get_current_user
from automation_platform.core.serialization import naive_utc, parse_uuid
from automation_platform.database import get_db
from automation_platform.models import ExecutionLog
from automation_platform.services.execution_logger import ExecutionLogger, serialize_execution
from automation_platform.services.workflow_service import get_workflow_row

router = APIRouter()

TimeRange = Literal["1h", "24h", "7d", "30d"]
Level = Literal["info", "warning", "error", "debug"]


def _require_workflow(db: Session, workflow_id: str, user: dict[str, Any]) -> None:
    if not get_workflow_row(db, workflow_id, user["organization_id"]):
        raise HTTPException(status_code=404, detail="Workflow not found")


def _require_execution(db: Session, execution_id: str, user: dict[str, Any]) -> ExecutionLog:
    row = ExecutionLogger(db).get_execution(execution_id)
    if not row or row.organization_id != user["organization_id"]:
        raise HTTPException(status_code=404, detail="Execution not found")
    return row


@router.get("/")
async def list_executions(
    workflow_id: str | None = None,
    status: str | None = None,
    limit: int = Query(default=100, ge=1, le=500),
    db: Session = Depends(get_db),
    user: dict[str, Any] = Depends(get_current_user),
):
    query = db.query(ExecutionLog).filter(ExecutionLog.organization_id == user["organization_id"])
    if workflow_id:
        uid = parse_uuid(workflow_id)
        if uid is None:
            return []
        query = query.filter(ExecutionLog.workflow_id == uid)
    if status:
        query = query.filter(ExecutionLog.status == status)
    rows = query.order_by(ExecutionLog.created_at.desc()).limit(limit).all()
    return [serialize_execution(r) for r in rows]


@router.get("/active")
async def active_executions(
    db: Session = Depends(get_db),
    user: dict[str, Any] = Depends(get_current_user),
):
    return ExecutionLogger(db).get_active_executions(user["organization_id"])


@router.get("/metrics")
async def execution_metrics(
    time_range: TimeRange = "24h",
    db: Session = Depends(get_db),
    user: dict[str, Any] = Depends(get_current_user),
):
    return ExecutionLogger(db).get_execution_metrics(user["organization_id"], time_range)


@router.get("/stats/{workflow_id}")
async def execution_stats(
    workflow_id: str,
    time_range: TimeRange | None = None,
    db: Session = Depends(get_db),
    user: dict[str, Any] = Depends(get_current_user),
):
    _require_workflow(db, workflow_id, user)
    return ExecutionLogger(db).get_execution_stats(workflow_id, time_range)


@router.get("/performance/{workflow_id}")
async def performance_metrics(
    workflow_id: str,
    time_range: TimeRange = "24h",
    db: Session = Depends(get_db),
    user: dict[str, Any] = Depends(get_current_user),
):
    _require_workflow(db, workflow_id, user)
    return ExecutionLogger(db).get_performance_metrics(workflow_id, time_range)


@router.get("/export/{workflow_id}")
async def export_executions(
    workflow_id: str,
    start: datetime | None = None,
    end: datetime | None = None,
    format: Literal["json", "csv"] = "json",
    db: Session = Depends(get_db),
    user: dict[str, Any] = Depends(get_current_user),
):
    _require_workflow(db, workflow_id, user)
    end = naive_utc(end) or datetime.utcnow()
    start = naive_utc(start) or end - timedelta(days=30)
    if start > end:
        raise HTTPException(status_code=422, detail="start must be before end")

    exported = ExecutionLogger(db).export_execution_logs(workflow_id, start, end, format)
    if format == "csv":
        return Response(
            content=exported,
            media_type="text/csv",
            headers={"Content-Disposition": f'attachment; filename="executions-{workflow_id}.csv"'},
        )
    return exported


@router.delete("/cleanup")
async def cleanup_executions(
    retention_days: int | None = Query(default=None, ge=1),
    db: Session = Depends(get_db),
    user: dict[str, Any] = Depends(get_current_user),
):
    deleted = ExecutionLogger(db).cleanup_old_logs(retention_days, organization_id=user["organization_id"])
    return {"deleted": deleted}


@router.get("/{execution_id}")
async def execution_detail(
    execution_id: str,
    db: Session = Depends(get_db),
    user: dict[str, Any] = Depends(get_current_user),
):
    _require_execution(db, execution_id, user)
    try:
        return ExecutionLogger(db).get_detailed_execution_report(execution_id)
    except NotFoundError:
        raise HTTPException(status_code=404, detail="Execution not found")


@router.get("/{execution_id}/logs")
async def execution_logs(
    execution_id: str,
    level: Level | None = None,
    db: Session = Depends(get_db),
    user: dict[str, Any] = Depends(get_current_user),
):
    _require_execution(db, execution_id, user)
    return ExecutionLogger(db).get_execution_logs(execution_id, level)


@router.post("/logs/batch")
async def batch_execution_logs(
    execution_ids: list[str],
    db: Session = Depends(get_db),
    user: dict[str, Any] = Depends(get_current_user),
):
    if len(execution_ids) > 100:
        raise HTTPException(status_code=422, detail="At most 100 execution ids per request")
    execution_logger = ExecutionLogger(db)
    allowed = []
    for execution_id in execution_ids:
        row = execution_logger.get_execution(execution_id)
        if row and row.organization_id == user["organization_id"]:
            allowed.append(execution_id)
    return execution_logger.get_batch_execution_logs(allowed)
