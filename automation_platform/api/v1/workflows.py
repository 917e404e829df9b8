from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy.orm import Session

from automation_platform.core.exceptions import NotFoundError, ValidationError
from automation_platform.core.security import get_current_user
from automation_platform.database import get_db
from automation_platform.schemas.workflow import WorkflowCreate, WorkflowExecuteRequest, WorkflowUpdate
from automation_platform.services.workflow_service import (
    create_workflow,
    delete_workflow,
    get_workflow,
    list_workflows,
    run_workflow,
    set_workflow_status,
    update_workflow,
)

router = APIRouter()


@router.get("/")
async def get_workflows(
    status_filter: str | None = Query(default=None, alias="status"),
    db: Session = Depends(get_db),
    user: dict[str, Any] = Depends(get_current_user),
):
    return list_workflows(db, user["organization_id"], status_filter)


@router.post("/", status_code=status.HTTP_201_CREATED)
async def post_workflow(
    payload: WorkflowCreate,
    db: Session = Depends(get_db),
    user: dict[str, Any] = Depends(get_current_user),
):
    try:
        return create_workflow(db, payload, user["organization_id"], created_by=user["id"])
    except ValidationError as exc:
        raise HTTPException(status_code=422, detail=str(exc))


@router.get("/{workflow_id}")
async def workflow_detail(
    workflow_id: str,
    db: Session = Depends(get_db),
    user: dict[str, Any] = Depends(get_current_user),
):
    row = get_workflow(db, workflow_id, user["organization_id"])
    if not row:
        raise HTTPException(status_code=404, detail="Workflow not found")
    return row


@router.put("/{workflow_id}")
async def put_workflow(
    workflow_id: str,
    payload: WorkflowUpdate,
    db: Session = Depends(get_db),
    user: dict[str, Any] = Depends(get_current_user),
):
    try:
        row = update_workflow(db, workflow_id, payload, user["organization_id"])
    except ValidationError as exc:
        raise HTTPException(status_code=422, detail=str(exc))
    if not row:
        raise HTTPException(status_code=404, detail="Workflow not found")
    return row


@router.delete("/{workflow_id}")
async def remove_workflow(
    workflow_id: str,
    db: Session = Depends(get_db),
    user: dict[str, Any] = Depends(get_current_user),
):
    if not delete_workflow(db, workflow_id, user["organization_id"]):
        raise HTTPException(status_code=404, detail="Workflow not found")
    return {"success": True, "id": workflow_id}


@router.post("/{workflow_id}/execute")
async def workflow_execute(
    workflow_id: str,
    payload: WorkflowExecuteRequest | None = None,
    db: Session = Depends(get_db),
    user: dict[str, Any] = Depends(get_current_user),
):
    trigger_data = payload.trigger_data if payload else {}
    try:
        return await run_workflow(
            db,
            workflow_id,
            trigger_data=trigger_data,
            user_id=user["id"],
            source="manual",
            organization_id=user["organization_id"],
        )
    except NotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc))
    except ValidationError as exc:
        raise HTTPException(status_code=409, detail=str(exc))


async def _set_status(db: Session, workflow_id: str, new_status: str, organization_id: str):
    try:
        row = set_workflow_status(db, workflow_id, new_status, organization_id)
    except ValidationError as exc:
        raise HTTPException(status_code=422, detail=str(exc))
    if not row:
        raise HTTPException(status_code=404, detail="Workflow not found")
    return row


@router.post("/{workflow_id}/activate")
async def activate_workflow(
    workflow_id: str,
    db: Session = Depends(get_db),
    user: dict[str, Any] = Depends(get_current_user),
):
    return await _set_status(db, workflow_id, "active", user["organization_id"])


@router.post("/{workflow_id}/pause")
async def pause_workflow(
    workflow_id: str,
    db: Session = Depends(get_db),
    user: dict[str, Any] = Depends(get_current_user),
):
    return await _set_status(db, workflow_id, "paused", user["organization_id"])
