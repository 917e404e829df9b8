from datetime import datetime, timedelta

import pytest

from automation_platform.core.exceptions import NotFoundError, ValidationError
from automation_platform.models import ExecutionLog, WorkflowSchedule
from automation_platform.schemas.schedule import ScheduleUpsert
from automation_platform.services.workflow_scheduler import (
    WorkflowScheduler,
    compute_next_run,
    delete_schedule,
    list_schedules,
    run_due_schedules,
    toggle_schedule,
    upsert_schedule,
    validate_cron,
)

from conftest import ORG_ID

FAILING_DEFINITION = {
    "nodes": [
        {"id": "trigger", "type": "trigger"},
        {"id": "fetch", "type": "action", "data": {"config": {"actionType": "http_request"}}},
    ],
    "edges": [{"source": "trigger", "target": "fetch"}],
}


def _schedule(db, workflow, cron="*/5 * * * *", next_run_at=None, **fields):
    row = WorkflowSchedule(
        workflow_id=workflow.id,
        organization_id=workflow.organization_id,
        created_by="owner",
        cron_expression=cron,
        timezone=fields.pop("timezone", "UTC"),
        enabled=fields.pop("enabled", True),
        next_run_at=next_run_at,
        total_runs=0,
        successful_runs=0,
        failed_runs=0,
        **fields,
    )
    db.add(row)
    db.commit()
    db.refresh(row)
    return row


def test_compute_next_run_utc():
    assert compute_next_run("*/15 * * * *", datetime(2026, 1, 1, 10, 7)) == datetime(2026, 1, 1, 10, 15)
    assert compute_next_run("*/15 * * * *", datetime(2026, 1, 1, 10, 15)) == datetime(2026, 1, 1, 10, 30)


@pytest.mark.parametrize(
    "from_dt, expected",
    [
        (datetime(2026, 1, 15, 12, 0), datetime(2026, 1, 15, 14, 0)),
        (datetime(2026, 7, 15, 12, 0), datetime(2026, 7, 15, 13, 0)),
        (datetime(2026, 7, 15, 14, 0), datetime(2026, 7, 16, 13, 0)),
    ],
)
def test_compute_next_run_honours_timezone(from_dt, expected):
    assert compute_next_run("0 9 * * *", from_dt, "America/New_York") == expected


@pytest.mark.parametrize(
    "cron, timezone",
    [("not a cron", "UTC"), ("", "UTC"), ("0 9 * * *", "Mars/Olympus_Mons")],
)
def test_compute_next_run_invalid(cron, timezone):
    assert compute_next_run(cron, datetime(2026, 1, 1), timezone) is None


def test_validate_cron():
    result = validate_cron("0 * * * *", count=3)
    assert result["valid"] is True
    assert result["timezone"] == "UTC"
    runs = [datetime.fromisoformat(value) for value in result["next_runs"]]
    assert len(runs) == 3
    assert runs[1] - runs[0] == timedelta(hours=1)
    assert all(run.minute == 0 for run in runs)

    assert validate_cron("61 * * * *")["valid"] is False
    assert "timezone" in validate_cron("0 * * * *", "Nowhere/City")["error"]


def test_upsert_toggle_and_delete(db, make_workflow):
    workflow = make_workflow(name="Nightly report")

    created = upsert_schedule(db, str(workflow.id), ScheduleUpsert(cron_expression="0 2 * * *"), ORG_ID, "owner")
    assert created["name"] == "Nightly report"
    assert created["enabled"] is True
    assert created["next_run_at"] is not None
    assert datetime.fromisoformat(created["next_run_at"]).hour == 2

    updated = upsert_schedule(
        db, str(workflow.id), ScheduleUpsert(cron_expression="30 6 * * 1", timezone="Europe/Berlin"), ORG_ID
    )
    assert updated["id"] == created["id"]
    assert updated["cron_expression"] == "30 6 * * 1"
    assert updated["timezone"] == "Europe/Berlin"
    assert len(list_schedules(db, ORG_ID)) == 1
    assert list_schedules(db, "org-2") == []

    paused = toggle_schedule(db, created["id"], organization_id=ORG_ID)
    assert paused["enabled"] is False
    assert paused["next_run_at"] is None
    resumed = toggle_schedule(db, created["id"], enabled=True, organization_id=ORG_ID)
    assert resumed["enabled"] is True
    assert resumed["next_run_at"] is not None
    assert toggle_schedule(db, created["id"], organization_id="org-2") is None

    assert delete_schedule(db, created["id"], ORG_ID) is True
    assert delete_schedule(db, created["id"], ORG_ID) is False


def test_upsert_rejects_bad_input(db, make_workflow):
    workflow = make_workflow()
    with pytest.raises(ValidationError):
        upsert_schedule(db, str(workflow.id), ScheduleUpsert(cron_expression="every day"), ORG_ID)
    with pytest.raises(NotFoundError):
        upsert_schedule(db, str(workflow.id), ScheduleUpsert(cron_expression="0 * * * *"), "org-2")


@pytest.mark.asyncio
async def test_run_due_schedules_updates_counters(db, make_workflow):
    now = datetime(2026, 3, 1, 12, 0)
    good = _schedule(db, make_workflow(name="good"), next_run_at=now - timedelta(minutes=1))
    bad = _schedule(db, make_workflow(name="bad", definition=FAILING_DEFINITION), next_run_at=now)
    future = _schedule(db, make_workflow(name="later"), next_run_at=now + timedelta(hours=1))
    paused = _schedule(db, make_workflow(name="paused", status="paused"), next_run_at=now - timedelta(hours=1))
    disabled = _schedule(db, make_workflow(name="off"), next_run_at=now - timedelta(hours=1), enabled=False)

    summary = await run_due_schedules(db, now)

    assert summary == {"executed": 1, "failed": 1, "checked_at": now.isoformat()}

    db.expire_all()
    good = db.get(WorkflowSchedule, good.id)
    assert (good.total_runs, good.successful_runs, good.failed_runs) == (1, 1, 0)
    assert good.last_run_at.replace(tzinfo=None) == now
    assert good.next_run_at.replace(tzinfo=None) == datetime(2026, 3, 1, 12, 5)

    bad = db.get(WorkflowSchedule, bad.id)
    assert (bad.total_runs, bad.successful_runs, bad.failed_runs) == (1, 0, 1)

    for untouched in (future, paused, disabled):
        assert db.get(WorkflowSchedule, untouched.id).total_runs == 0

    runs = db.query(ExecutionLog).all()
    assert len(runs) == 2
    assert all(run.trigger_data["cron_expression"] == "*/5 * * * *" for run in runs)


@pytest.mark.asyncio
async def test_scheduler_tick_runs_and_skips_in_flight(db, session_factory, make_workflow):
    now = datetime(2026, 3, 1, 12, 0)
    workflow = make_workflow()
    schedule = _schedule(db, workflow, next_run_at=now - timedelta(minutes=1))
    scheduler = WorkflowScheduler(poll_seconds=60, session_factory=session_factory)

    assert await scheduler.tick(now) == [str(workflow.id)]

    # Due again before the first run has had a chance to finish.
    db.query(WorkflowSchedule).filter(WorkflowSchedule.id == schedule.id).update(
        {WorkflowSchedule.next_run_at: now - timedelta(minutes=1)}, synchronize_session=False
    )
    db.commit()
    assert await scheduler.tick(now) == []

    await scheduler.stop()
    assert scheduler.running is False

    db.expire_all()
    row = db.get(WorkflowSchedule, schedule.id)
    assert row.total_runs == 1
    assert row.successful_runs == 1
    assert db.query(ExecutionLog).count() == 1


@pytest.mark.asyncio
async def test_scheduler_start_and_stop():
    scheduler = WorkflowScheduler(poll_seconds=3600, session_factory=lambda: None)
    scheduler.tick = _noop_tick
    scheduler.start()
    assert scheduler.running is True
    await scheduler.stop()
    assert scheduler.running is False


async def _noop_tick(now=None):
    return []
