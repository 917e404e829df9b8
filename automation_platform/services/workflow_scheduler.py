"""
Cron schedules for workflows.

Schedules live in ``workflow_schedules``; ``next_run_at`` is stored as naive
UTC and computed with croniter in the schedule's own timezone. Due schedules
are picked up either by the in-process ``WorkflowScheduler`` loop or by an
external cron hitting ``POST /schedules/run-due``.
"""
from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone as dt_timezone
from typing import Any, Callable, Set
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from croniter import croniter
from sqlalchemy import or_
from sqlalchemy.orm import Session

from automation_platform.core.exceptions import AppError, NotFoundError, ValidationError
from automation_platform.core.serialization import isoformat, naive_utc, parse_uuid
from automation_platform.database import SessionLocal
from automation_platform.models import Workflow, WorkflowSchedule
from automation_platform.schemas.schedule import ScheduleUpsert
from automation_platform.services.workflow_service import get_workflow_row, run_workflow
from automation_platform.websockets.connection_manager import manager

logger = logging.getLogger(__name__)


def _zone(timezone: str | None) -> ZoneInfo | None:
    try:
        return ZoneInfo(timezone or "UTC")
    except (ZoneInfoNotFoundError, ValueError):
        return None


def compute_next_run(cron_expression: str | None, from_dt: datetime, timezone: str = "UTC") -> datetime | None:
    """Next fire time after `from_dt` (naive UTC in, naive UTC out); None when invalid."""
    if not cron_expression or not croniter.is_valid(cron_expression):
        return None
    zone = _zone(timezone)
    if zone is None:
        return None
    local_start = naive_utc(from_dt).replace(tzinfo=dt_timezone.utc).astimezone(zone)
    try:
        next_local = croniter(cron_expression, local_start).get_next(datetime)
    except (ValueError, KeyError) as exc:
        logger.warning("Could not compute next run for %r: %s", cron_expression, exc)
        return None
    return next_local.astimezone(dt_timezone.utc).replace(tzinfo=None)


def validate_cron(cron_expression: str, timezone: str = "UTC", count: int = 5) -> dict[str, Any]:
    if not cron_expression or not croniter.is_valid(cron_expression):
        return {"valid": False, "error": f"Invalid cron expression: {cron_expression!r}"}
    if _zone(timezone) is None:
        return {"valid": False, "error": f"Unknown timezone: {timezone!r}"}

    next_runs = []
    cursor = datetime.utcnow()
    for _ in range(count):
        cursor = compute_next_run(cron_expression, cursor, timezone)
        if cursor is None:
            break
        next_runs.append(cursor.isoformat())
    return {"valid": True, "timezone": timezone, "next_runs": next_runs}


def serialize_schedule(row: WorkflowSchedule) -> dict[str, Any]:
    return {
        "id": str(row.id),
        "workflow_id": str(row.workflow_id),
        "organization_id": row.organization_id,
        "name": row.name,
        "description": row.description,
        "cron_expression": row.cron_expression,
        "timezone": row.timezone,
        "enabled": bool(row.enabled),
        "last_run_at": isoformat(row.last_run_at),
        "next_run_at": isoformat(row.next_run_at),
        "total_runs": row.total_runs or 0,
        "successful_runs": row.successful_runs or 0,
        "failed_runs": row.failed_runs or 0,
        "created_at": isoformat(row.created_at),
        "updated_at": isoformat(row.updated_at),
    }


def list_schedules(db: Session, organization_id: str | None = None) -> list[dict[str, Any]]:
    query = db.query(WorkflowSchedule)
    if organization_id is not None:
        query = query.filter(WorkflowSchedule.organization_id == organization_id)
    return [serialize_schedule(row) for row in query.order_by(WorkflowSchedule.created_at.desc()).all()]


def get_schedule_row(db: Session, schedule_id: str, organization_id: str | None = None) -> WorkflowSchedule | None:
    uid = parse_uuid(schedule_id)
    if uid is None:
        return None
    query = db.query(WorkflowSchedule).filter(WorkflowSchedule.id == uid)
    if organization_id is not None:
        query = query.filter(WorkflowSchedule.organization_id == organization_id)
    return query.first()


def upsert_schedule(
    db: Session,
    workflow_id: str,
    payload: ScheduleUpsert,
    organization_id: str | None = None,
    created_by: str | None = None,
) -> dict[str, Any]:
    workflow = get_workflow_row(db, workflow_id, organization_id)
    if not workflow:
        raise NotFoundError("Workflow not found")

    check = validate_cron(payload.cron_expression, payload.timezone)
    if not check["valid"]:
        raise ValidationError(check["error"])

    now = datetime.utcnow()
    row = db.query(WorkflowSchedule).filter(WorkflowSchedule.workflow_id == workflow.id).first()
    if row is None:
        row = WorkflowSchedule(
            workflow_id=workflow.id,
            organization_id=workflow.organization_id,
            created_by=created_by,
            total_runs=0,
            successful_runs=0,
            failed_runs=0,
        )
        db.add(row)

    row.name = payload.name or row.name or workflow.name
    row.description = payload.description if payload.description is not None else row.description
    row.cron_expression = payload.cron_expression
    row.timezone = payload.timezone
    row.enabled = payload.enabled
    row.next_run_at = compute_next_run(payload.cron_expression, now, payload.timezone) if payload.enabled else None
    row.updated_at = now
    db.commit()
    db.refresh(row)
    logger.info("Schedule for workflow %s set to %r (%s)", workflow.id, row.cron_expression, row.timezone)
    return serialize_schedule(row)


def toggle_schedule(
    db: Session,
    schedule_id: str,
    enabled: bool | None = None,
    organization_id: str | None = None,
) -> dict[str, Any] | None:
    row = get_schedule_row(db, schedule_id, organization_id)
    if not row:
        return None
    row.enabled = (not row.enabled) if enabled is None else enabled
    now = datetime.utcnow()
    row.next_run_at = compute_next_run(row.cron_expression, now, row.timezone) if row.enabled else None
    row.updated_at = now
    db.commit()
    db.refresh(row)
    return serialize_schedule(row)


def delete_schedule(db: Session, schedule_id: str, organization_id: str | None = None) -> bool:
    row = get_schedule_row(db, schedule_id, organization_id)
    if not row:
        return False
    db.delete(row)
    db.commit()
    return True


def claim_due_schedules(
    db: Session,
    now: datetime,
    skip_workflow_ids: Set[str] | None = None,
) -> list[WorkflowSchedule]:
    """Select due schedules on active workflows and advance their `next_run_at` before running."""
    due = (
        db.query(WorkflowSchedule)
        .join(Workflow, Workflow.id == WorkflowSchedule.workflow_id)
        .filter(
            WorkflowSchedule.enabled.is_(True),
            Workflow.status == "active",
            or_(WorkflowSchedule.next_run_at.is_(None), WorkflowSchedule.next_run_at <= now),
        )
        .all()
    )

    claimed = []
    for schedule in due:
        if skip_workflow_ids and str(schedule.workflow_id) in skip_workflow_ids:
            continue
        # Advance first so a failing run is not retried on every tick.
        schedule.next_run_at = compute_next_run(schedule.cron_expression, now, schedule.timezone)
        claimed.append(schedule)
    db.commit()
    return claimed


async def execute_schedule(db: Session, schedule: WorkflowSchedule, now: datetime | None = None) -> bool:
    """Run one schedule's workflow and record the outcome on the schedule row."""
    now = now or datetime.utcnow()
    schedule_id = str(schedule.id)
    workflow_id = str(schedule.workflow_id)
    error = None
    execution_id = None

    try:
        result = await run_workflow(
            db,
            workflow_id,
            trigger_data={
                "schedule_id": schedule_id,
                "cron_expression": schedule.cron_expression,
                "timezone": schedule.timezone,
                "scheduled_at": now.isoformat(),
            },
            user_id=schedule.created_by,
            source="scheduled",
        )
        success = bool(result["success"])
        execution_id = result["execution_id"]
        error = result.get("error")
    except AppError as exc:
        success = False
        error = str(exc)
        logger.warning("Scheduled run of workflow %s rejected: %s", workflow_id, exc)

    schedule = db.query(WorkflowSchedule).filter(WorkflowSchedule.id == schedule.id).one()
    schedule.last_run_at = now
    schedule.total_runs = (schedule.total_runs or 0) + 1
    if success:
        schedule.successful_runs = (schedule.successful_runs or 0) + 1
    else:
        schedule.failed_runs = (schedule.failed_runs or 0) + 1
    db.commit()

    await manager.broadcast(
        "schedule_run",
        {
            "schedule_id": schedule_id,
            "workflow_id": workflow_id,
            "execution_id": execution_id,
            "success": success,
            "error": error,
            "next_run_at": isoformat(schedule.next_run_at),
        },
        organization_id=schedule.organization_id,
    )
    return success


async def run_due_schedules(db: Session, now: datetime | None = None) -> dict[str, Any]:
    """Run every due schedule in turn on `db`; used by the cron endpoint."""
    now = now or datetime.utcnow()
    executed = 0
    failed = 0
    for schedule in claim_due_schedules(db, now):
        try:
            if await execute_schedule(db, schedule, now):
                executed += 1
            else:
                failed += 1
        except Exception as exc:
            db.rollback()
            failed += 1
            logger.exception("Scheduled execution failed for schedule %s: %s", schedule.id, exc)
    return {"executed": executed, "failed": failed, "checked_at": now.isoformat()}


class WorkflowScheduler:
    """Polls the DB for due schedules and runs each as its own task."""

    def __init__(self, poll_seconds: int = 30, session_factory: Callable[[], Session] = SessionLocal):
        self.poll_seconds = poll_seconds
        self.session_factory = session_factory
        self._stop_event = asyncio.Event()
        self._task: asyncio.Task | None = None
        self._running_workflow_ids: Set[str] = set()
        self._runs: Set[asyncio.Task] = set()

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.running:
            return
        self._stop_event.clear()
        self._task = asyncio.create_task(self._run_loop())
        logger.info("WorkflowScheduler started (poll every %ss)", self.poll_seconds)

    async def stop(self) -> None:
        """Stop the loop and wait for in-flight runs."""
        self._stop_event.set()
        if self._task:
            await self._task
        if self._runs:
            await asyncio.gather(*self._runs, return_exceptions=True)
        logger.info("WorkflowScheduler stopped")

    async def _run_loop(self) -> None:
        while not self._stop_event.is_set():
            try:
                await self.tick()
            except Exception as exc:
                logger.exception("WorkflowScheduler tick failed: %s", exc)
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=self.poll_seconds)
            except asyncio.TimeoutError:
                continue

    async def tick(self, now: datetime | None = None) -> list[str]:
        """Claim due schedules and start a run for each; returns the started workflow ids."""
        now = now or datetime.utcnow()
        db = self.session_factory()
        try:
            claimed = claim_due_schedules(db, now, skip_workflow_ids=self._running_workflow_ids)
            started = []
            for schedule in claimed:
                workflow_id = str(schedule.workflow_id)
                self._running_workflow_ids.add(workflow_id)
                task = asyncio.create_task(self._execute(str(schedule.id), workflow_id, now))
                self._runs.add(task)
                task.add_done_callback(self._runs.discard)
                started.append(workflow_id)
            return started
        finally:
            db.close()

    async def _execute(self, schedule_id: str, workflow_id: str, now: datetime) -> None:
        db = self.session_factory()
        try:
            schedule = get_schedule_row(db, schedule_id)
            if not schedule or not schedule.enabled:
                return
            success = await execute_schedule(db, schedule, now)
            logger.info("Scheduled run complete for workflow %s: success=%s", workflow_id, success)
        except Exception as exc:
            db.rollback()
            logger.exception("Scheduled execution failed for workflow %s: %s", workflow_id, exc)
        finally:
            self._running_workflow_ids.discard(workflow_id)
            db.close()
