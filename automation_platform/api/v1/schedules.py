from __future__ import annotations

import hmac
from typing import Any

from fastapi import APIRouter, Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials
from sqlalchemy.orm import Session

from automation_platform.config import settings
from automation_platform.core.exceptions import NotFoundError, ValidationError
from automation_platform.core.security import AUTH_SCHEME, get_current_user
from automation_platform.database import get_db
from automation_platform.schemas.schedule import CronValidateRequest, ScheduleUpsert
from automation_platform.services.workflow_scheduler import (
    delete_schedule,
    list_schedules,
    run_due_schedules,
    toggle_schedule,
    upsert_schedule,
    validate_cron,
)

router = APIRouter()


def verify_cron_request(
    creds: HTTPAuthorizationCredentials | None = Depends(AUTH_SCHEME),
) -> None:
    """Accept the shared cron secret when configured, otherwise a normal user token."""
    if settings.cron_secret is None:
        get_current_user(creds)
        return
    provided = creds.credentials if creds else ""
    expected = settings.cron_secret.get_secret_value()
    if not hmac.compare_digest(provided.encode("utf-8"), expected.encode("utf-8")):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid cron secret")


@router.get("/")
async def get_schedules(
    db: Session = Depends(get_db),
    user: dict[str, Any] = Depends(get_current_user),
):
    return list_schedules(db, user["organization_id"])


@router.post("/validate")
async def validate_schedule(
    payload: CronValidateRequest,
    user: dict[str, Any] = Depends(get_current_user),
):
    return validate_cron(payload.cron_expression, payload.timezone)


@router.post("/run-due", dependencies=[Depends(verify_cron_request)])
async def run_due(db: Session = Depends(get_db)):
    return await run_due_schedules(db)


@router.put("/workflow/{workflow_id}")
async def put_schedule(
    workflow_id: str,
    payload: ScheduleUpsert,
    db: Session = Depends(get_db),
    user: dict[str, Any] = Depends(get_current_user),
):
    try:
        return upsert_schedule(db, workflow_id, payload, user["organization_id"], created_by=user["id"])
    except NotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc))
    except ValidationError as exc:
        raise HTTPException(status_code=422, detail=str(exc))


@router.post("/{schedule_id}/toggle")
async def toggle(
    schedule_id: str,
    enabled: bool | None = None,
    db: Session = Depends(get_db),
    user: dict[str, Any] = Depends(get_current_user),
):
    row = toggle_schedule(db, schedule_id, enabled, user["organization_id"])
    if not row:
        raise HTTPException(status_code=404, detail="Schedule not found")
    return row


@router.delete("/{schedule_id}")
async def remove_schedule(
    schedule_id: str,
    db: Session = Depends(get_db),
    user: dict[str, Any] = Depends(get_current_user),
):
    if not delete_schedule(db, schedule_id, user["organization_id"]):
        raise HTTPException(status_code=404, detail="Schedule not found")
    return {"success": True, "id": schedule_id}
