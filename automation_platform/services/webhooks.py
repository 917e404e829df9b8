"""
Inbound webhook authentication and audit logging.
"""
from __future__ import annotations

import hashlib
import hmac
import json
import logging
from typing import Any, Mapping

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from automation_platform.core.serialization import to_jsonable
from automation_platform.models import WebhookRequest

logger = logging.getLogger(__name__)

SENSITIVE_HEADERS = {"authorization", "x-api-key", "x-webhook-signature", "cookie"}


def sign_payload(secret: str, body: bytes) -> str:
    """Hex HMAC-SHA256 of the raw request body, as sent in `x-webhook-signature`."""
    return hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()


def _header(headers: Mapping[str, str], name: str) -> str | None:
    value = headers.get(name)
    if value is None:
        value = next((v for k, v in headers.items() if k.lower() == name), None)
    return value


def validate_webhook_auth(
    auth_type: str | None,
    secret: str | None,
    headers: Mapping[str, str],
    body: bytes,
) -> bool:
    auth_type = auth_type or "none"

    if auth_type == "none":
        return True
    if not secret:
        logger.warning("Webhook auth %s configured without a secret", auth_type)
        return False

    if auth_type == "api_key":
        provided = _header(headers, "x-api-key") or ""
        return hmac.compare_digest(provided.encode("utf-8"), secret.encode("utf-8"))

    if auth_type == "bearer_token":
        auth = _header(headers, "authorization") or ""
        scheme, _, token = auth.partition(" ")
        if scheme.lower() != "bearer":
            return False
        return hmac.compare_digest(token.strip().encode("utf-8"), secret.encode("utf-8"))

    if auth_type == "hmac":
        signature = (_header(headers, "x-webhook-signature") or "").strip().lower()
        if not signature:
            return False
        return hmac.compare_digest(signature, sign_payload(secret, body))

    logger.warning("Unknown webhook auth type: %s", auth_type)
    return False


def parse_webhook_body(raw: bytes) -> Any:
    if not raw:
        return {}
    text = raw.decode("utf-8", errors="replace")
    try:
        return json.loads(text)
    except ValueError:
        return {"raw": text}


def redact_headers(headers: Mapping[str, str]) -> dict[str, str]:
    return {k: ("[redacted]" if k.lower() in SENSITIVE_HEADERS else v) for k, v in headers.items()}


def record_webhook_request(
    db: Session,
    workflow_id: str,
    method: str,
    status_code: int,
    success: bool,
    duration_ms: int,
    organization_id: str | None = None,
    headers: Mapping[str, str] | None = None,
    query: Mapping[str, str] | None = None,
    body: Any = None,
    source_ip: str | None = None,
    error_message: str | None = None,
    execution_id: str | None = None,
) -> WebhookRequest | None:
    """Insert a `webhook_requests` row; a failed insert is logged and returns None."""
    row = WebhookRequest(
        workflow_id=workflow_id,
        organization_id=organization_id,
        method=method,
        headers=redact_headers(headers or {}),
        query=dict(query or {}),
        body=to_jsonable(body),
        source_ip=source_ip or "unknown",
        status_code=status_code,
        success=success,
        error_message=error_message,
        execution_id=execution_id,
        duration_ms=duration_ms,
    )
    try:
        db.add(row)
        db.commit()
        return row
    except SQLAlchemyError as exc:
        db.rollback()
        logger.error("Failed to log webhook request for %s: %s", workflow_id, exc)
        return None
