import json

import httpx
import pytest
from pydantic import SecretStr

from automation_platform.config import settings
from automation_platform.core.exceptions import IntegrationError
from automation_platform.integrations.email import EmailService
from automation_platform.integrations.slack import SlackClient


@pytest.mark.asyncio
async def test_sendgrid_payload(monkeypatch):
    monkeypatch.setattr(settings, "sendgrid_api_key", SecretStr("sg-key"))
    seen = {}

    def handler(request):
        seen["auth"] = request.headers["authorization"]
        seen["payload"] = json.loads(request.content)
        return httpx.Response(202, headers={"X-Message-Id": "msg-1"})

    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
        result = await EmailService(http_client=client).send_email(
            to="ada@example.com", subject="Hi", html_content="<b>Hi</b>", text_content="Hi"
        )

    assert result == {"status": "sent", "message_id": "msg-1", "to": "ada@example.com", "provider": "sendgrid"}
    assert seen["auth"] == "Bearer sg-key"
    assert seen["payload"]["personalizations"] == [{"to": [{"email": "ada@example.com"}]}]
    assert [c["type"] for c in seen["payload"]["content"]] == ["text/plain", "text/html"]


@pytest.mark.asyncio
async def test_sendgrid_failure_is_integration_error(monkeypatch):
    monkeypatch.setattr(settings, "sendgrid_api_key", SecretStr("sg-key"))
    transport = httpx.MockTransport(lambda request: httpx.Response(500))

    async with httpx.AsyncClient(transport=transport) as client:
        with pytest.raises(IntegrationError) as exc_info:
            await EmailService(http_client=client).send_email(to="ada@example.com", subject="Hi", text_content="x")

    assert exc_info.value.integration == "sendgrid"
    assert exc_info.value.recoverable is True


@pytest.mark.asyncio
async def test_email_without_provider_fails(monkeypatch):
    monkeypatch.setattr(settings, "sendgrid_api_key", None)
    monkeypatch.setattr(settings, "smtp_host", None)

    with pytest.raises(IntegrationError, match="SMTP is not configured"):
        await EmailService().send_email(to="ada@example.com", subject="Hi", text_content="x")
    with pytest.raises(IntegrationError, match="recipient"):
        await EmailService().send_email(to="", subject="Hi")


@pytest.mark.asyncio
async def test_slack_posts_with_token():
    def handler(request):
        assert request.headers["authorization"] == "Bearer xoxb-1"
        body = json.loads(request.content)
        return httpx.Response(200, json={"ok": True, "channel": "C1", "ts": "1.0", "echo": body})

    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
        result = await SlackClient(http_client=client, token="xoxb-1").send_message("#ops", "deployed")

    assert result == {"sent": True, "simulated": False, "channel": "C1", "ts": "1.0", "message": "deployed"}


@pytest.mark.asyncio
async def test_slack_api_error():
    transport = httpx.MockTransport(lambda request: httpx.Response(200, json={"ok": False, "error": "ratelimited"}))

    async with httpx.AsyncClient(transport=transport) as client:
        with pytest.raises(IntegrationError) as exc_info:
            await SlackClient(http_client=client, token="xoxb-1").send_message("#ops", "hi")

    assert "ratelimited" in exc_info.value.message
    assert exc_info.value.recoverable is True
