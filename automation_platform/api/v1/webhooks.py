"""
Webhook Trigger Endpoint
Receives HTTP requests and starts workflow executions

    POST /api/v1/webhooks/{workflow_id}
      x-api-key: <secret>                   (auth type api_key)
      Authorization: Bearer <secret>        (auth type bearer_token)
      x-webhook-signature: <hex hmac>       (auth type hmac)
"""
from __future__ import annotations

import logging
import time
import uuid
from datetime import datetime
from typing import Any

from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, Request, status
from sqlalchemy.orm import Session

from automation_platform.core.exceptions import AppError
from automation_platform.core.security import get_optional_user
from automation_platform.database import SessionLocal, get_db
from automation_platform.services.webhooks import (
    parse_webhook_body,
    record_webhook_request,
    redact_headers,
    validate_webhook_auth,
)
from automation_platform.services.workflow_service import get_workflow_row, run_workflow
from automation_platform.websockets.connection_manager import manager

logger = logging.getLogger(__name__)

router = APIRouter()


def _source_ip(request: Request) -> str:
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",")[0].strip()
    return request.headers.get("x-real-ip") or (request.client.host if request.client else "unknown")


async def _run_in_background(workflow_id: str, execution_id: str, trigger_data: dict[str, Any], user_id: str | None):
    db = SessionLocal()
    try:
        await run_workflow(
            db,
            workflow_id,
            trigger_data=trigger_data,
            user_id=user_id,
            source="webhook",
            execution_id=execution_id,
        )
    except AppError as exc:
        logger.warning("Webhook execution %s for workflow %s rejected: %s", execution_id, workflow_id, exc)
    except Exception as exc:
        logger.exception("Webhook execution %s for workflow %s failed: %s", execution_id, workflow_id, exc)
    finally:
        db.close()


@router.post("/{workflow_id}", status_code=status.HTTP_202_ACCEPTED)
async def receive_webhook(
    workflow_id: str,
    request: Request,
    background_tasks: BackgroundTasks,
    db: Session = Depends(get_db),
):
    started = time.monotonic()
    raw_body = await request.body()
    headers = dict(request.headers)
    query = dict(request.query_params)
    source_ip = _source_ip(request)

    def _reject(status_code: int, message: str, organization_id: str | None = None):
        record_webhook_request(
            db,
            workflow_id,
            request.method,
            status_code,
            False,
            int((time.monotonic() - started) * 1000),
            organization_id=organization_id,
            headers=headers,
            query=query,
            source_ip=source_ip,
            error_message=message,
        )
        logger.warning("Webhook for %s rejected (%s): %s", workflow_id, status_code, message)
        raise HTTPException(status_code=status_code, detail=message)

    workflow = get_workflow_row(db, workflow_id)
    if not workflow:
        _reject(status.HTTP_404_NOT_FOUND, "Workflow not found")
    if not workflow.webhook_enabled:
        _reject(status.HTTP_403_FORBIDDEN, "Webhook not enabled for this workflow", workflow.organization_id)
    if not validate_webhook_auth(workflow.webhook_auth_type, workflow.webhook_secret, request.headers, raw_body):
        _reject(status.HTTP_401_UNAUTHORIZED, "Invalid authentication", workflow.organization_id)
    if workflow.status not in ("active", "draft"):
        _reject(status.HTTP_409_CONFLICT, f"Workflow is {workflow.status}", workflow.organization_id)

    body = parse_webhook_body(raw_body)
    trigger_data = {
        "body": body,
        "headers": redact_headers(headers),
        "query": query,
        "method": request.method,
        "timestamp": datetime.utcnow().isoformat(),
        "source_ip": source_ip,
        "user_agent": request.headers.get("user-agent", "unknown"),
    }
    execution_id = str(uuid.uuid4())
    workflow_key = str(workflow.id)
    background_tasks.add_task(_run_in_background, workflow_key, execution_id, trigger_data, workflow.created_by)

    record_webhook_request(
        db,
        workflow_id,
        request.method,
        status.HTTP_202_ACCEPTED,
        True,
        int((time.monotonic() - started) * 1000),
        organization_id=workflow.organization_id,
        headers=headers,
        query=query,
        body=body,
        source_ip=source_ip,
        execution_id=execution_id,
    )
    await manager.broadcast(
        "webhook_received",
        {"workflow_id": workflow_key, "execution_id": execution_id, "source_ip": source_ip},
        organization_id=workflow.organization_id,
    )
    logger.info("Webhook accepted for workflow %s, execution %s", workflow_key, execution_id)

    return {
        "success": True,
        "message": "Workflow triggered successfully",
        "workflow_id": workflow_key,
        "workflow_name": workflow.name,
        "execution_id": execution_id,
        "timestamp": datetime.utcnow().isoformat(),
    }


@router.get("/{workflow_id}")
async def webhook_info(
    workflow_id: str,
    db: Session = Depends(get_db),
    user: dict[str, Any] | None = Depends(get_optional_user),
):
    """Describe the webhook endpoint without exposing its secret."""
    workflow = get_workflow_row(db, workflow_id)
    if not workflow:
        raise HTTPException(status_code=404, detail="Workflow not found")

    info = {
        "message": "Webhook endpoint active" if workflow.webhook_enabled else "Webhook disabled",
        "workflow_id": str(workflow.id),
        "workflow_name": workflow.name,
        "webhook_enabled": bool(workflow.webhook_enabled),
        "auth_type": workflow.webhook_auth_type or "none",
        "method": "POST",
    }
    if user and user["organization_id"] == workflow.organization_id:
        info["has_secret"] = bool(workflow.webhook_secret)
        info["status"] = workflow.status
    return info
