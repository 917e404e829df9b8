"""
Persistent execution logging.

Every workflow run gets one ``execution_logs`` row carrying a bounded list of
log entries, plus one ``execution_steps`` row per executed node. The query
helpers at the bottom back the executions API (stats, reports, exports).
"""
from __future__ import annotations

import csv
import io
import logging
from datetime import datetime, timedelta
from typing import Any, Literal

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from automation_platform.config import settings
from automation_platform.core.exceptions import NotFoundError, ValidationError
from automation_platform.core.serialization import isoformat, naive_utc, parse_uuid, to_jsonable
from automation_platform.models import ExecutionLog, ExecutionStep, Workflow

logger = logging.getLogger(__name__)

LogLevel = Literal["info", "warning", "error", "debug"]

TIME_RANGES = {
    "1h": timedelta(hours=1),
    "24h": timedelta(hours=24),
    "7d": timedelta(days=7),
    "30d": timedelta(days=30),
}

CSV_HEADERS = [
    "Execution ID",
    "Workflow ID",
    "Status",
    "Started At",
    "Completed At",
    "Duration (ms)",
    "Error Message",
]

ERROR_CATEGORIES = (
    ("Network/Timeout", ("timeout", "network")),
    ("Authentication", ("auth", "unauthorized")),
    ("Rate Limiting", ("rate limit", "quota")),
    ("Validation", ("validation", "invalid")),
    ("Not Found", ("not found", "404")),
    ("Permission", ("permission", "forbidden")),
)


def categorize_error(message: str) -> str:
    lowered = message.lower()
    for category, markers in ERROR_CATEGORIES:
        if any(marker in lowered for marker in markers):
            return category
    return "Other"


def range_start(time_range: str | None, now: datetime | None = None) -> datetime | None:
    """Start of a `1h`/`24h`/`7d`/`30d` window; None means all time."""
    if not time_range:
        return None
    delta = TIME_RANGES.get(time_range)
    if delta is None:
        raise ValidationError(f"Unsupported time range: {time_range}")
    return (now or datetime.utcnow()) - delta


def performance_grade(success_rate: float, avg_duration_ms: float) -> str:
    if success_rate >= 95 and avg_duration_ms < 5000:
        return "A"
    if success_rate >= 90 and avg_duration_ms < 10000:
        return "B"
    if success_rate >= 80 and avg_duration_ms < 30000:
        return "C"
    if success_rate >= 70:
        return "D"
    return "F"


def performance_recommendations(stats: dict[str, Any]) -> list[str]:
    recommendations = []
    if stats["success_rate"] < 90:
        recommendations.append("Consider reviewing error patterns and adding better error handling")
    if stats["average_duration_ms"] > 30000:
        recommendations.append("Workflow execution time is high - consider optimizing action performance")
    if stats["failed_executions"] > stats["successful_executions"] * 0.1:
        recommendations.append("High failure rate detected - review workflow logic and conditions")
    return recommendations


def _duration_ms(started_at: datetime | None, ended_at: datetime) -> int | None:
    started = naive_utc(started_at)
    if started is None:
        return None
    return max(int((ended_at - started).total_seconds() * 1000), 0)


def _error_payload(error: Any) -> dict[str, Any]:
    if isinstance(error, BaseException):
        payload = {"message": str(error), "name": type(error).__name__}
        code = getattr(error, "code", None)
        if code:
            payload["code"] = code
        node_id = getattr(error, "node_id", None)
        if node_id:
            payload["node_id"] = node_id
        return payload
    if isinstance(error, dict):
        return {"message": str(error.get("message", "")), "name": error.get("name", "Error"), **error}
    return {"message": str(error), "name": "Error"}


def serialize_execution(row: ExecutionLog, include_logs: bool = False) -> dict[str, Any]:
    data = {
        "id": str(row.id),
        "workflow_id": str(row.workflow_id),
        "organization_id": row.organization_id,
        "triggered_by": row.triggered_by,
        "status": row.status,
        "trigger_data": row.trigger_data or {},
        "execution_data": row.execution_data or {},
        "error_details": row.error_details,
        "retry_count": row.retry_count or 0,
        "parent_execution_id": str(row.parent_execution_id) if row.parent_execution_id else None,
        "started_at": isoformat(row.started_at),
        "completed_at": isoformat(row.completed_at),
        "duration_ms": row.duration_ms,
        "created_at": isoformat(row.created_at),
    }
    if include_logs:
        data["logs"] = row.logs or []
    return data


def serialize_step(row: ExecutionStep) -> dict[str, Any]:
    return {
        "id": str(row.id),
        "execution_id": str(row.execution_id),
        "step_index": row.step_index,
        "node_id": row.node_id,
        "action_type": row.action_type,
        "status": row.status,
        "input_data": row.input_data or {},
        "output_data": row.output_data,
        "error_message": row.error_message,
        "started_at": isoformat(row.started_at),
        "completed_at": isoformat(row.completed_at),
        "duration_ms": row.duration_ms,
    }


class ExecutionLogger:
    def __init__(self, db: Session, max_log_entries: int | None = None):
        self.db = db
        self.max_log_entries = max_log_entries or settings.execution_log_max_entries

    # Execution lifecycle

    def start_execution(
        self,
        execution_id: str,
        workflow_id: str,
        organization_id: str,
        triggered_by: str | None = None,
        trigger_data: Any = None,
        variables: dict[str, Any] | None = None,
        parent_execution_id: str | None = None,
    ) -> ExecutionLog:
        started_at = datetime.utcnow()
        row = ExecutionLog(
            id=parse_uuid(execution_id),
            workflow_id=parse_uuid(workflow_id),
            organization_id=organization_id,
            triggered_by=triggered_by,
            status="running",
            trigger_data=to_jsonable(trigger_data) or {},
            started_at=started_at,
            parent_execution_id=parse_uuid(parent_execution_id) if parent_execution_id else None,
            execution_data={
                "variables": to_jsonable(variables) or {},
                "current_step_index": 0,
                "started_at": started_at.isoformat(),
            },
            logs=[
                self._entry(
                    "info",
                    "Workflow execution started",
                    {"workflow_id": workflow_id, "trigger_data": trigger_data, "user_id": triggered_by},
                )
            ],
        )
        self.db.add(row)
        self.db.commit()
        self.db.refresh(row)
        return row

    def complete_execution(self, execution_id: str, final_result: Any = None) -> None:
        row = self._require_execution(execution_id)
        completed_at = datetime.utcnow()
        duration = _duration_ms(row.started_at, completed_at)

        row.status = "completed"
        row.completed_at = completed_at
        row.duration_ms = duration
        if final_result is not None:
            row.execution_data = {
                **(row.execution_data or {}),
                "final_result": to_jsonable(final_result),
                "completed_at": completed_at.isoformat(),
            }
        row.logs = self._trim(
            [
                *(row.logs or []),
                self._entry(
                    "info",
                    "Workflow execution completed successfully",
                    {"duration_ms": duration, "completed_at": completed_at.isoformat()},
                ),
            ]
        )
        self.db.commit()

    def fail_execution(self, execution_id: str, error: Any) -> None:
        """Mark the run failed; persistence errors are logged so the original error is not masked."""
        try:
            row = self._require_execution(execution_id)
            failed_at = datetime.utcnow()
            duration = _duration_ms(row.started_at, failed_at)
            details = {**_error_payload(error), "timestamp": failed_at.isoformat()}

            row.status = "failed"
            row.completed_at = failed_at
            row.duration_ms = duration
            row.error_details = to_jsonable(details)
            row.logs = self._trim(
                [
                    *(row.logs or []),
                    self._entry(
                        "error",
                        "Workflow execution failed",
                        {"error": details, "duration_ms": duration, "failed_at": failed_at.isoformat()},
                    ),
                ]
            )
            self.db.commit()
        except (SQLAlchemyError, NotFoundError) as exc:
            self.db.rollback()
            logger.error("Failed to log execution failure for %s: %s", execution_id, exc)

    # Steps

    def start_step(
        self,
        execution_id: str,
        step_index: int,
        action_type: str,
        input_data: Any = None,
        node_id: str | None = None,
    ) -> str:
        step = ExecutionStep(
            execution_id=parse_uuid(execution_id),
            step_index=step_index,
            node_id=node_id,
            action_type=action_type,
            status="running",
            input_data=to_jsonable(input_data) or {},
            started_at=datetime.utcnow(),
        )
        self.db.add(step)
        self.db.commit()
        self.log_info(
            execution_id,
            f"Started step {step_index}: {action_type}",
            {"step_index": step_index, "action_type": action_type, "input_data": input_data},
        )
        return str(step.id)

    def complete_step(self, execution_id: str, step_index: int, output_data: Any = None) -> None:
        step = self._get_step(execution_id, step_index)
        completed_at = datetime.utcnow()
        duration = _duration_ms(step.started_at, completed_at) if step else None
        if step:
            step.status = "completed"
            step.output_data = to_jsonable(output_data)
            step.completed_at = completed_at
            step.duration_ms = duration
            self.db.commit()

        self.log_info(
            execution_id,
            f"Completed step {step_index}",
            {"step_index": step_index, "output_data": output_data, "duration_ms": duration},
        )

    def fail_step(self, execution_id: str, step_index: int, error: Any) -> None:
        details = _error_payload(error)
        duration = None
        try:
            step = self._get_step(execution_id, step_index)
            if step:
                completed_at = datetime.utcnow()
                duration = _duration_ms(step.started_at, completed_at)
                step.status = "failed"
                step.error_message = details["message"]
                step.completed_at = completed_at
                step.duration_ms = duration
                self.db.commit()
        except SQLAlchemyError as exc:
            self.db.rollback()
            logger.error("Failed to log step failure for %s#%s: %s", execution_id, step_index, exc)

        self.log_error(
            execution_id,
            f"Step {step_index} failed: {details['message']}",
            {"step_index": step_index, "error": details, "duration_ms": duration},
        )

    # Log entries

    def log_info(self, execution_id: str, message: str, metadata: Any = None) -> bool:
        return self.log_message(execution_id, "info", message, metadata)

    def log_warning(self, execution_id: str, message: str, metadata: Any = None) -> bool:
        return self.log_message(execution_id, "warning", message, metadata)

    def log_error(self, execution_id: str, message: str, metadata: Any = None) -> bool:
        return self.log_message(execution_id, "error", message, metadata)

    def log_debug(self, execution_id: str, message: str, metadata: Any = None) -> bool:
        return self.log_message(execution_id, "debug", message, metadata)

    def log_message(self, execution_id: str, level: LogLevel, message: str, metadata: Any = None) -> bool:
        """Append a log entry; failures are logged and reported as False."""
        try:
            row = self._require_execution(execution_id)
            row.logs = self._trim([*(row.logs or []), self._entry(level, message, metadata)])
            self.db.commit()
            return True
        except (SQLAlchemyError, NotFoundError) as exc:
            self.db.rollback()
            logger.error("Failed to write log entry for %s: %s", execution_id, exc)
            return False

    safe_log_message = log_message

    def _entry(self, level: LogLevel, message: str, metadata: Any = None) -> dict[str, Any]:
        entry = {"timestamp": datetime.utcnow().isoformat(), "level": level, "message": message}
        if metadata is not None:
            entry["metadata"] = to_jsonable(metadata)
        return entry

    def _trim(self, logs: list[dict[str, Any]]) -> list[dict[str, Any]]:
        if len(logs) > self.max_log_entries:
            return logs[-self.max_log_entries :]
        return logs

    def _require_execution(self, execution_id: str) -> ExecutionLog:
        row = self.get_execution(execution_id)
        if row is None:
            raise NotFoundError(f"Execution {execution_id} not found")
        return row

    def count_steps(self, execution_id: str) -> int:
        return self.db.query(ExecutionStep).filter(ExecutionStep.execution_id == parse_uuid(execution_id)).count()

    def _get_step(self, execution_id: str, step_index: int) -> ExecutionStep | None:
        return (
            self.db.query(ExecutionStep)
            .filter(ExecutionStep.execution_id == parse_uuid(execution_id), ExecutionStep.step_index == step_index)
            .first()
        )

    # Queries

    def get_execution(self, execution_id: str) -> ExecutionLog | None:
        uid = parse_uuid(execution_id)
        if uid is None:
            return None
        return self.db.query(ExecutionLog).filter(ExecutionLog.id == uid).first()

    def get_execution_logs(self, execution_id: str, level: LogLevel | None = None) -> list[dict[str, Any]]:
        row = self.get_execution(execution_id)
        if row is None:
            return []
        logs = row.logs or []
        if level:
            return [entry for entry in logs if entry.get("level") == level]
        return logs

    def get_batch_execution_logs(self, execution_ids: list[str]) -> dict[str, list[dict[str, Any]]]:
        return {execution_id: self.get_execution_logs(execution_id) for execution_id in execution_ids}

    def get_execution_stats(self, workflow_id: str, time_range: str | None = None) -> dict[str, Any]:
        query = self.db.query(ExecutionLog).filter(ExecutionLog.workflow_id == parse_uuid(workflow_id))
        since = range_start(time_range)
        if since is not None:
            query = query.filter(ExecutionLog.created_at >= since)
        executions = query.all()

        total = len(executions)
        counts = {status: 0 for status in ("completed", "failed", "running", "pending")}
        for row in executions:
            if row.status in counts:
                counts[row.status] += 1

        durations = [row.duration_ms for row in executions if row.duration_ms]
        error_breakdown: dict[str, int] = {}
        for row in executions:
            message = (row.error_details or {}).get("message") if row.status == "failed" else None
            if message:
                category = categorize_error(message)
                error_breakdown[category] = error_breakdown.get(category, 0) + 1

        return {
            "total_executions": total,
            "successful_executions": counts["completed"],
            "failed_executions": counts["failed"],
            "running_executions": counts["running"],
            "pending_executions": counts["pending"],
            "success_rate": (counts["completed"] / total) * 100 if total else 0,
            "failure_rate": (counts["failed"] / total) * 100 if total else 0,
            "average_duration_ms": sum(durations) / len(durations) if durations else 0,
            "time_range": time_range or "all",
            "error_breakdown": error_breakdown,
        }

    def get_detailed_execution_report(self, execution_id: str) -> dict[str, Any]:
        row = self._require_execution(execution_id)
        steps = (
            self.db.query(ExecutionStep)
            .filter(ExecutionStep.execution_id == row.id)
            .order_by(ExecutionStep.step_index.asc())
            .all()
        )
        children = self.db.query(ExecutionLog).filter(ExecutionLog.parent_execution_id == row.id).all()

        return {
            "execution": serialize_execution(row),
            "steps": [serialize_step(step) for step in steps],
            "child_executions": [serialize_execution(child) for child in children],
            "logs": row.logs or [],
            "summary": {
                "total_steps": len(steps),
                "completed_steps": sum(1 for step in steps if step.status == "completed"),
                "failed_steps": sum(1 for step in steps if step.status == "failed"),
                "total_duration": row.duration_ms or 0,
                "has_child_executions": bool(children),
            },
        }

    def export_execution_logs(
        self,
        workflow_id: str,
        start_date: datetime,
        end_date: datetime,
        format: Literal["json", "csv"] = "json",
    ) -> list[dict[str, Any]] | str:
        executions = (
            self.db.query(ExecutionLog)
            .filter(
                ExecutionLog.workflow_id == parse_uuid(workflow_id),
                ExecutionLog.created_at >= naive_utc(start_date),
                ExecutionLog.created_at <= naive_utc(end_date),
            )
            .order_by(ExecutionLog.created_at.desc())
            .all()
        )
        if format == "csv":
            return self._to_csv(executions)
        return [serialize_execution(row, include_logs=True) for row in executions]

    @staticmethod
    def _to_csv(executions: list[ExecutionLog]) -> str:
        if not executions:
            return ""
        buffer = io.StringIO()
        writer = csv.writer(buffer, quoting=csv.QUOTE_ALL, lineterminator="\n")
        writer.writerow(CSV_HEADERS)
        for row in executions:
            writer.writerow(
                [
                    str(row.id),
                    str(row.workflow_id),
                    row.status,
                    isoformat(row.started_at) or "",
                    isoformat(row.completed_at) or "",
                    row.duration_ms if row.duration_ms is not None else "",
                    (row.error_details or {}).get("message", ""),
                ]
            )
        return buffer.getvalue().rstrip("\n")

    def get_active_executions(self, organization_id: str, limit: int = 50) -> list[dict[str, Any]]:
        rows = (
            self.db.query(ExecutionLog, Workflow.name)
            .join(Workflow, Workflow.id == ExecutionLog.workflow_id)
            .filter(Workflow.organization_id == organization_id, ExecutionLog.status.in_(("running", "pending")))
            .order_by(ExecutionLog.created_at.desc())
            .limit(limit)
            .all()
        )
        return [{**serialize_execution(row), "workflow_name": name} for row, name in rows]

    def get_execution_metrics(self, organization_id: str, time_range: str = "24h") -> dict[str, Any]:
        query = (
            self.db.query(ExecutionLog.status, ExecutionLog.duration_ms)
            .join(Workflow, Workflow.id == ExecutionLog.workflow_id)
            .filter(Workflow.organization_id == organization_id)
        )
        since = range_start(time_range)
        if since is not None:
            query = query.filter(ExecutionLog.created_at >= since)
        executions = query.all()
        total = len(executions)
        completed = sum(1 for status, _ in executions if status == "completed")
        failed = sum(1 for status, _ in executions if status == "failed")
        return {
            "total_executions": total,
            "successful_executions": completed,
            "failed_executions": failed,
            "success_rate": (completed / total) * 100 if total else 0,
            "average_duration_ms": sum(duration or 0 for _, duration in executions) / total if total else 0,
            "time_range": time_range,
        }

    def get_performance_metrics(self, workflow_id: str, time_range: str | None = "24h") -> dict[str, Any]:
        stats = self.get_execution_stats(workflow_id, time_range)
        return {
            **stats,
            "performance_grade": performance_grade(stats["success_rate"], stats["average_duration_ms"]),
            "recommendations": performance_recommendations(stats),
        }

    def cleanup_old_logs(self, retention_days: int | None = None, organization_id: str | None = None) -> int:
        """Delete executions (and their steps) older than the retention window.

        When `organization_id` is given only that organization's executions are removed.
        """
        days = retention_days or settings.execution_log_retention_days
        cutoff = datetime.utcnow() - timedelta(days=days)
        query = self.db.query(ExecutionLog.id).filter(ExecutionLog.created_at < cutoff)
        if organization_id is not None:
            query = query.filter(ExecutionLog.organization_id == organization_id)
        ids = [row.id for row in query.all()]
        if not ids:
            return 0
        self.db.query(ExecutionStep).filter(ExecutionStep.execution_id.in_(ids)).delete(synchronize_session=False)
        self.db.query(ExecutionLog).filter(ExecutionLog.parent_execution_id.in_(ids)).update(
            {ExecutionLog.parent_execution_id: None}, synchronize_session=False
        )
        deleted = self.db.query(ExecutionLog).filter(ExecutionLog.id.in_(ids)).delete(synchronize_session=False)
        self.db.commit()
        logger.info("Cleaned up %s execution logs older than %s days", deleted, days)
        return deleted
