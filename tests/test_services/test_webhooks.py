import json

import pytest

from automation_platform.models import WebhookRequest
from automation_platform.services.webhooks import (
    parse_webhook_body,
    record_webhook_request,
    redact_headers,
    sign_payload,
    validate_webhook_auth,
)
from automation_platform.websockets.connection_manager import ConnectionManager

BODY = json.dumps({"event": "signup", "email": "ada@example.com"}).encode()


def test_no_auth_accepts_everything():
    assert validate_webhook_auth("none", None, {}, BODY) is True
    assert validate_webhook_auth(None, None, {}, BODY) is True


@pytest.mark.parametrize(
    "headers, expected",
    [
        ({"x-api-key": "k3y"}, True),
        ({"X-Api-Key": "k3y"}, True),
        ({"x-api-key": "wrong"}, False),
        ({}, False),
    ],
)
def test_api_key_auth(headers, expected):
    assert validate_webhook_auth("api_key", "k3y", headers, BODY) is expected


@pytest.mark.parametrize(
    "header, expected",
    [
        ("Bearer tok", True),
        ("bearer tok", True),
        ("Bearer nope", False),
        ("Basic tok", False),
        ("", False),
    ],
)
def test_bearer_auth(header, expected):
    assert validate_webhook_auth("bearer_token", "tok", {"authorization": header}, BODY) is expected


def test_hmac_auth_checks_raw_body():
    signature = sign_payload("shh", BODY)

    assert validate_webhook_auth("hmac", "shh", {"x-webhook-signature": signature}, BODY) is True
    assert validate_webhook_auth("hmac", "shh", {"x-webhook-signature": signature.upper()}, BODY) is True
    assert validate_webhook_auth("hmac", "shh", {"x-webhook-signature": signature}, BODY + b" ") is False
    assert validate_webhook_auth("hmac", "other", {"x-webhook-signature": signature}, BODY) is False
    assert validate_webhook_auth("hmac", "shh", {}, BODY) is False


def test_auth_without_secret_or_unknown_type_is_rejected():
    assert validate_webhook_auth("api_key", None, {"x-api-key": ""}, BODY) is False
    assert validate_webhook_auth("oauth", "secret", {}, BODY) is False


@pytest.mark.parametrize(
    "raw, expected",
    [
        (b"", {}),
        (b'{"a": 1}', {"a": 1}),
        (b"[1, 2]", [1, 2]),
        (b"name=ada", {"raw": "name=ada"}),
    ],
)
def test_parse_webhook_body(raw, expected):
    assert parse_webhook_body(raw) == expected


def test_redact_headers():
    redacted = redact_headers({"Authorization": "Bearer x", "x-api-key": "k", "content-type": "application/json"})
    assert redacted == {
        "Authorization": "[redacted]",
        "x-api-key": "[redacted]",
        "content-type": "application/json",
    }


def test_record_webhook_request(db):
    row = record_webhook_request(
        db,
        "wf-1",
        "POST",
        202,
        True,
        12,
        organization_id="org-1",
        headers={"x-api-key": "k", "user-agent": "pytest"},
        query={"source": "crm"},
        body={"event": "signup"},
        execution_id="exec-1",
    )

    assert row is not None
    stored = db.query(WebhookRequest).one()
    assert stored.headers == {"x-api-key": "[redacted]", "user-agent": "pytest"}
    assert stored.query == {"source": "crm"}
    assert stored.body == {"event": "signup"}
    assert stored.source_ip == "unknown"
    assert stored.execution_id == "exec-1"


class FakeWebSocket:
    def __init__(self, fail=False):
        self.accepted = False
        self.sent = []
        self.fail = fail

    async def accept(self):
        self.accepted = True

    async def send_json(self, message):
        if self.fail and self.accepted and self.sent:
            raise RuntimeError("socket closed")
        self.sent.append(message)


@pytest.mark.asyncio
async def test_connection_manager_filters_by_event_and_organization():
    manager = ConnectionManager()
    everything = FakeWebSocket()
    schedules_only = FakeWebSocket()
    other_org = FakeWebSocket()

    assert await manager.connect(everything, ["bogus"], organization_id="org-1") == ["all"]
    assert await manager.connect(schedules_only, ["schedule_run"], organization_id="org-1") == ["schedule_run"]
    await manager.connect(other_org, None, organization_id="org-2")

    delivered = await manager.broadcast("workflow_execution", {"status": "completed"}, organization_id="org-1")
    assert delivered == 1
    assert everything.sent[-1]["type"] == "workflow_execution"
    assert everything.sent[-1]["data"] == {"status": "completed"}
    assert len(schedules_only.sent) == 1
    assert len(other_org.sent) == 1

    assert await manager.broadcast("schedule_run", {}, organization_id="org-1") == 2


@pytest.mark.asyncio
async def test_connection_manager_drops_failed_sockets():
    manager = ConnectionManager()
    broken = FakeWebSocket(fail=True)
    await manager.connect(broken)

    assert await manager.broadcast("webhook_received", {}) == 0
    assert broken not in manager.active_connections

    healthy = FakeWebSocket()
    await manager.connect(healthy)
    manager.disconnect(healthy)
    assert manager.active_connections == []
    assert await manager.broadcast("webhook_received", {}) == 0
