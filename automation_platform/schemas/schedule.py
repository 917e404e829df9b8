from __future__ import annotations

from pydantic import BaseModel


class ScheduleUpsert(BaseModel):
    cron_expression: str
    timezone: str = "UTC"
    enabled: bool = True
    name: str | None = None
    description: str | None = None


class CronValidateRequest(BaseModel):
    cron_expression: str
    timezone: str = "UTC"
