from __future__ import annotations

import asyncio
import smtplib
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import Any, Dict, Optional

import httpx

from automation_platform.config import settings
from automation_platform.core.exceptions import IntegrationError


class EmailService:
    """Email sending via SendGrid or SMTP."""

    def __init__(self, http_client: httpx.AsyncClient | None = None):
        self.sendgrid_key = settings.sendgrid_api_key.get_secret_value() if settings.sendgrid_api_key else None
        self.smtp_host = settings.smtp_host
        self.smtp_port = settings.smtp_port
        self.smtp_username = settings.smtp_username
        self.smtp_password = settings.smtp_password.get_secret_value() if settings.smtp_password else None
        self.default_from_email = settings.default_from_email
        self.default_from_name = settings.default_from_name
        self._http_client = http_client

    @property
    def provider(self) -> str:
        return "sendgrid" if self.sendgrid_key else "smtp"

    async def send_email(
        self,
        to: str,
        subject: str,
        html_content: str | None = None,
        text_content: str | None = None,
        from_email: Optional[str] = None,
        from_name: Optional[str] = None,
        template_id: Optional[str] = None,
    ) -> Dict[str, Any]:
        if not to:
            raise IntegrationError("Email recipient is required", integration="email", recoverable=False)
        from_email = from_email or self.default_from_email
        from_name = from_name or self.default_from_name
        if self.sendgrid_key:
            return await self._send_via_sendgrid(
                to, subject, html_content, text_content, from_email, from_name, template_id
            )
        return await self._send_via_smtp(to, subject, html_content, text_content, from_email, from_name)

    async def _send_via_sendgrid(
        self,
        to: str,
        subject: str,
        html_content: str | None,
        text_content: str | None,
        from_email: str,
        from_name: str,
        template_id: str | None,
    ) -> Dict[str, Any]:
        content = []
        if text_content:
            content.append({"type": "text/plain", "value": text_content})
        if html_content:
            content.append({"type": "text/html", "value": html_content})
        payload: Dict[str, Any] = {
            "personalizations": [{"to": [{"email": to}]}],
            "from": {"email": from_email, "name": from_name},
            "subject": subject,
        }
        if template_id:
            payload["template_id"] = template_id
        if content:
            payload["content"] = content

        client = self._http_client or httpx.AsyncClient(timeout=20.0)
        try:
            response = await client.post(
                "https://api.sendgrid.com/v3/mail/send",
                headers={
                    "Authorization": f"Bearer {self.sendgrid_key}",
                    "Content-Type": "application/json",
                },
                json=payload,
            )
            response.raise_for_status()
        except httpx.HTTPError as exc:
            raise IntegrationError(f"SendGrid request failed: {exc}", integration="sendgrid") from exc
        finally:
            if self._http_client is None:
                await client.aclose()
        return {
            "status": "sent",
            "message_id": response.headers.get("X-Message-Id"),
            "to": to,
            "provider": "sendgrid",
        }

    async def _send_via_smtp(
        self,
        to: str,
        subject: str,
        html_content: str | None,
        text_content: str | None,
        from_email: str,
        from_name: str,
    ) -> Dict[str, Any]:
        if not all([self.smtp_host, self.smtp_username, self.smtp_password]):
            raise IntegrationError(
                "SMTP is not configured and SendGrid key is missing",
                integration="smtp",
                recoverable=False,
            )
        message = MIMEMultipart("alternative")
        message["Subject"] = subject
        message["From"] = f"{from_name} <{from_email}>"
        message["To"] = to
        if text_content:
            message.attach(MIMEText(text_content, "plain"))
        if html_content:
            message.attach(MIMEText(html_content, "html"))

        def _deliver() -> None:
            with smtplib.SMTP(self.smtp_host, self.smtp_port) as server:
                server.starttls()
                server.login(self.smtp_username, self.smtp_password)
                server.send_message(message)

        try:
            await asyncio.to_thread(_deliver)
        except (smtplib.SMTPException, OSError) as exc:
            raise IntegrationError(f"SMTP delivery failed: {exc}", integration="smtp") from exc
        return {"status": "sent", "message_id": None, "to": to, "provider": "smtp"}
