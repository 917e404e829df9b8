"""
Workflow execution engine.

Walks a workflow's node/edge graph breadth-first from its trigger node and
executes one node at a time. Node results are kept on the execution context
so later nodes can reference them through ``{{template}}`` variables, e.g.
``{{trigger_data.email}}`` or ``{{node_results.fetch.data.status}}``.

Condition nodes gate their outgoing edges when those edges carry a branch
handle (``true``/``false``); edges without a handle are always followed.
"""
from __future__ import annotations

import json
import logging
import operator as op
import re
import time
from collections import deque
from collections.abc import Mapping
from contextlib import contextmanager
from dataclasses import asdict, dataclass, field
from datetime import date, datetime, timezone
from typing import TYPE_CHECKING, Any, Iterator

import httpx
from sqlalchemy import column, insert, literal_column, select, table, update
from sqlalchemy.orm import Session

from automation_platform.config import settings
from automation_platform.core.exceptions import (
    IntegrationError,
    NodeExecutionError,
    ValidationError,
    WorkflowExecutionError,
)
from automation_platform.integrations.email import EmailService
from automation_platform.integrations.slack import SlackClient
from automation_platform.models import Base
from automation_platform.schemas.workflow import WorkflowDefinition, WorkflowEdge, WorkflowNode
from automation_platform.services.retry import RetryConfig, RetryManager, is_retryable_error

if TYPE_CHECKING:
    from automation_platform.services.execution_logger import ExecutionLogger

logger = logging.getLogger(__name__)

VARIABLE_PATTERN = re.compile(r"\{\{([^}]+)\}\}")
# Two-character operators must be tried before their one-character prefixes.
CONDITION_PATTERN = re.compile(r"^(.+?)\s*(==|!=|>=|<=|>|<)\s*(.+?)$", re.DOTALL)
TABLE_NAME_PATTERN = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")

TRUE_HANDLES = {"true", "yes", "then"}
FALSE_HANDLES = {"false", "no", "else"}
DEFAULT_MAX_LOOP_ITERATIONS = 1000

STRING_OPERATORS = {"contains", "not_contains", "starts_with", "ends_with", "matches_regex"}
NUMERIC_OPERATORS = {
    "greater_than": op.gt,
    "less_than": op.lt,
    "greater_than_or_equal": op.ge,
    "less_than_or_equal": op.le,
}
TYPE_OPERATORS = {"is_string": str, "is_number": (int, float), "is_boolean": bool, "is_array": list, "is_object": dict}

_MISSING = object()


def _now_iso() -> str:
    return datetime.utcnow().isoformat()


def _elapsed_ms(start: float) -> int:
    return int((time.monotonic() - start) * 1000)


def _stringify(value: Any) -> str:
    """Render a resolved value for interpolation into a larger string."""
    if isinstance(value, bool):
        return "true" if value else "false"
    if value is None:
        return "null"
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    if isinstance(value, (dict, list)):
        return json.dumps(value, default=str)
    return str(value)


def _to_number(value: Any) -> float | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value)
    try:
        number = float(str(value).strip())
    except (TypeError, ValueError):
        return None
    return None if number != number else number


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool) and value == value


def _to_datetime(value: Any) -> datetime | None:
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, date):
        parsed = datetime(value.year, value.month, value.day)
    elif isinstance(value, str) and value.strip():
        try:
            parsed = datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
        except ValueError:
            return None
    else:
        return None
    # Naive values are UTC.
    return parsed.replace(tzinfo=timezone.utc) if parsed.tzinfo is None else parsed


def parse_value(raw: str) -> Any:
    """Parse one side of a condition: numbers become floats, quotes are stripped."""
    value = raw.strip()
    number = _to_number(value)
    if number is not None:
        return number
    if len(value) >= 2 and value[0] == value[-1] and value[0] in ("'", '"'):
        return value[1:-1]
    return value


@dataclass
class ExecutionContext:
    workflow_id: str
    execution_id: str
    organization_id: str
    user_id: str | None = None
    trigger_data: Any = field(default_factory=dict)
    variables: dict[str, Any] = field(default_factory=dict)
    node_results: dict[str, Any] = field(default_factory=dict)

    def as_lookup(self) -> dict[str, Any]:
        """Roots available to template paths, in snake_case and camelCase."""
        return {
            "workflow_id": self.workflow_id,
            "workflowId": self.workflow_id,
            "execution_id": self.execution_id,
            "executionId": self.execution_id,
            "organization_id": self.organization_id,
            "organizationId": self.organization_id,
            "user_id": self.user_id,
            "userId": self.user_id,
            "trigger_data": self.trigger_data,
            "triggerData": self.trigger_data,
            "variables": self.variables,
            "node_results": self.node_results,
            "nodeResults": self.node_results,
        }


@dataclass
class ExecutionResult:
    success: bool
    execution_id: str
    completed_nodes: list[str]
    duration_ms: int
    result: Any = None
    failed_node: str | None = None
    error: str | None = None
    error_code: str | None = None
    recoverable: bool = False

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


class WorkflowExecutionEngine:
    """Single-pass interpreter for a workflow graph."""

    def __init__(
        self,
        definition: WorkflowDefinition,
        context: ExecutionContext,
        db: Session | None = None,
        http_client: httpx.AsyncClient | None = None,
        email_service: EmailService | None = None,
        slack_client: SlackClient | None = None,
        execution_logger: "ExecutionLogger | None" = None,
        retry_manager: RetryManager | None = None,
        step_offset: int = 0,
    ):
        self.definition = definition
        self.context = context
        self.db = db
        self.http_client = http_client
        self.email_service = email_service or EmailService(http_client=http_client)
        self.slack_client = slack_client or SlackClient(http_client=http_client)
        self.execution_logger = execution_logger
        self.retry_manager = retry_manager or RetryManager()
        self.last_error: BaseException | None = None
        self._node_errors: dict[str, BaseException] = {}
        self._step_index = step_offset

    async def execute(self) -> ExecutionResult:
        """Execute the entire workflow; node failures are reported, never raised."""
        start = time.monotonic()
        completed_nodes: list[str] = []
        self.last_error = None

        try:
            logger.info(f"Starting workflow execution: {self.context.workflow_id}")

            trigger_node = next((n for n in self.definition.nodes if n.type == "trigger"), None)
            if trigger_node is None:
                raise WorkflowExecutionError("No trigger node found in workflow", "NO_TRIGGER_NODE")

            self.context.node_results[trigger_node.id] = {
                "success": True,
                "data": self.context.trigger_data,
                "timestamp": _now_iso(),
            }
            completed_nodes.append(trigger_node.id)

            planned = self.get_execution_order(trigger_node.id)
            logger.info("Execution order: %s", " -> ".join(n.label for n in planned) or "(trigger only)")

            visited = {trigger_node.id}
            queue: deque[str] = deque([trigger_node.id])
            while queue:
                current_id = queue.popleft()
                for edge in self._edges_to_follow(current_id):
                    if edge.target in visited:
                        continue
                    node = self.definition.get_node(edge.target)
                    if node is None:
                        continue
                    visited.add(edge.target)

                    logger.info(f"Executing node: {node.label} ({node.type})")
                    result = await self._run_step(node)
                    if not result["success"]:
                        cause = self._node_errors.get(node.id)
                        raise NodeExecutionError(
                            f'Node "{node.label}" failed: {result["error"]}',
                            node.id,
                            node.type,
                            recoverable=cause is not None and is_retryable_error(cause),
                        )

                    self.context.node_results[node.id] = result
                    completed_nodes.append(node.id)
                    queue.append(node.id)
                    logger.info(f"Node completed: {node.label}")

            return ExecutionResult(
                success=True,
                execution_id=self.context.execution_id,
                completed_nodes=completed_nodes,
                duration_ms=_elapsed_ms(start),
                result={
                    "message": "Workflow executed successfully",
                    "nodes_executed": len(completed_nodes),
                    "final_output": self.context.node_results,
                },
            )
        except WorkflowExecutionError as exc:
            self.last_error = exc
            logger.error("Workflow execution failed: %s", exc.message)
            return ExecutionResult(
                success=False,
                execution_id=self.context.execution_id,
                completed_nodes=completed_nodes,
                duration_ms=_elapsed_ms(start),
                failed_node=exc.node_id,
                error=exc.message,
                error_code=exc.code,
                recoverable=exc.recoverable,
            )

    def get_execution_order(self, start_node_id: str) -> list[WorkflowNode]:
        """Breadth-first order of every node reachable from `start_node_id`, ignoring branches."""
        visited = {start_node_id}
        order: list[WorkflowNode] = []
        queue: deque[str] = deque([start_node_id])

        while queue:
            current_id = queue.popleft()
            for edge in self.definition.outgoing(current_id):
                if edge.target in visited:
                    continue
                visited.add(edge.target)
                node = self.definition.get_node(edge.target)
                if node:
                    order.append(node)
                    queue.append(edge.target)
        return order

    def _edges_to_follow(self, node_id: str) -> list[WorkflowEdge]:
        edges = self.definition.outgoing(node_id)
        node = self.definition.get_node(node_id)
        if node is None or node.type != "condition":
            return edges

        data = (self.context.node_results.get(node_id) or {}).get("data") or {}
        condition_met = bool(data.get("condition_met"))
        selected = []
        for edge in edges:
            handle = (edge.source_handle or edge.label or "").strip().lower()
            if handle in TRUE_HANDLES and not condition_met:
                continue
            if handle in FALSE_HANDLES and condition_met:
                continue
            selected.append(edge)
        return selected

    async def _run_step(self, node: WorkflowNode) -> dict[str, Any]:
        step_index = self._step_index
        self._step_index += 1
        action_type = node.config.get("actionType") or node.config.get("type") if node.type == "action" else None
        step_type = f"{node.type}:{action_type}" if action_type else node.type

        if self.execution_logger:
            self.execution_logger.start_step(
                self.context.execution_id,
                step_index,
                step_type,
                {"node_id": node.id, "label": node.label, "config": node.config},
                node_id=node.id,
            )

        result = await self.execute_node(node)

        if self.execution_logger:
            if result["success"]:
                self.execution_logger.complete_step(self.context.execution_id, step_index, result.get("data"))
            else:
                self.execution_logger.fail_step(
                    self.context.execution_id,
                    step_index,
                    self._node_errors.get(node.id) or WorkflowExecutionError(result["error"]),
                )
        return result

    async def execute_node(self, node: WorkflowNode) -> dict[str, Any]:
        """Execute a single node based on its type."""
        start = time.monotonic()
        handlers = {
            "action": self.execute_action,
            "condition": self.execute_condition,
            "transform": self.execute_transform,
            "loop": self.execute_loop,
        }
        try:
            handler = handlers.get(node.type)
            if handler is None:
                raise NodeExecutionError(f"Unknown node type: {node.type}", node.id, node.type)

            retry = node.config.get("retry")
            if retry:
                data = await self.retry_manager.execute_with_retry(
                    lambda: handler(node), node.id, RetryConfig.from_dict(retry)
                )
            else:
                data = await handler(node)

            return {
                "success": True,
                "data": data,
                "duration_ms": _elapsed_ms(start),
                "timestamp": _now_iso(),
            }
        except Exception as exc:
            self._node_errors[node.id] = exc
            return {
                "success": False,
                "error": str(exc),
                "duration_ms": _elapsed_ms(start),
                "timestamp": _now_iso(),
            }

    # Actions

    async def execute_action(self, node: WorkflowNode) -> Any:
        config = node.config
        action_type = config.get("actionType") or config.get("type")
        logger.debug("Action type: %s", action_type)

        if action_type == "http_request":
            return await self._http_request(config)
        if action_type == "database_query":
            return self._database_query(config)
        if action_type == "send_email":
            return await self._send_email(config)
        if action_type == "slack_message":
            return await self._slack_message(config)
        if action_type == "log_message":
            return self._log_message(config)

        return {
            "success": True,
            "message": f"Executed action: {action_type}",
            "config": config,
            "output": self.resolve_variables(config.get("output", {})),
        }

    async def _http_request(self, config: dict[str, Any]) -> dict[str, Any]:
        url = self.resolve_variables(config.get("url"))
        if not url:
            raise ValidationError("http_request requires a url")
        method = str(config.get("method") or "GET").upper()
        headers = httpx.Headers({"Content-Type": "application/json"})
        headers.update({k: _stringify(v) for k, v in (self.resolve_variables(config.get("headers") or {})).items()})
        body = self.resolve_variables(config.get("body"))
        timeout = float(config.get("timeout") or settings.http_timeout_seconds)

        logger.info(f"HTTP {method} {url}")
        client = self.http_client or httpx.AsyncClient(timeout=timeout)
        try:
            response = await client.request(
                method,
                str(url),
                headers=headers,
                content=json.dumps(body, default=str) if body else None,
                timeout=timeout,
            )
        finally:
            if self.http_client is None:
                await client.aclose()

        try:
            data = response.json()
        except ValueError:
            data = response.text

        if config.get("raise_for_status") and response.status_code >= 400:
            raise IntegrationError(
                f"HTTP {response.status_code} {response.reason_phrase} from {url}",
                integration="http",
                recoverable=response.status_code >= 500 or response.status_code == 429,
            )

        return {
            "status": response.status_code,
            "status_text": response.reason_phrase,
            "data": data,
        }

    def _database_query(self, config: dict[str, Any]) -> dict[str, Any]:
        if self.db is None:
            raise WorkflowExecutionError("Database session is not configured for this execution")
        table_name = str(config.get("table") or "")
        if not TABLE_NAME_PATTERN.match(table_name):
            raise ValidationError(f"Invalid table name: {table_name!r}")
        if table_name.lower() in {name.lower() for name in Base.metadata.tables}:
            raise ValidationError(f"Table {table_name!r} is not available to workflows")
        allowlist = settings.database_query_allowlist
        if allowlist and table_name.lower() not in allowlist:
            raise ValidationError(f"Table {table_name!r} is not in DATABASE_QUERY_TABLES")
        operation = config.get("operation") or "select"
        filters = self.resolve_variables(config.get("filters") or {})

        logger.info(f"Database {operation} on {table_name}")

        if operation == "select":
            stmt = select(literal_column("*")).select_from(table(table_name))
            for key, value in filters.items():
                stmt = stmt.where(column(key) == value)
            records = [dict(row) for row in self.db.execute(stmt).mappings().all()]
            return {"records": records, "count": len(records)}

        if operation == "insert":
            data = self.resolve_variables(config.get("data"))
            rows = data if isinstance(data, list) else [data]
            if not rows or not all(isinstance(row, dict) and row for row in rows):
                raise ValidationError("insert requires a non-empty object or list of objects")
            keys = sorted({key for row in rows for key in row})
            target = table(table_name, *[column(key) for key in keys])
            self.db.execute(insert(target), rows)
            self.db.commit()
            return {"inserted": rows, "count": len(rows)}

        if operation == "update":
            data = self.resolve_variables(config.get("data"))
            if not isinstance(data, dict) or not data:
                raise ValidationError("update requires a non-empty data object")
            if not filters:
                raise ValidationError("update requires filters")
            target = table(table_name, *[column(key) for key in {*data, *filters}])
            stmt = update(target).values(**data)
            for key, value in filters.items():
                stmt = stmt.where(target.c[key] == value)
            result = self.db.execute(stmt)
            self.db.commit()
            return {"updated": result.rowcount}

        raise ValidationError(f"Unknown database operation: {operation}")

    async def _send_email(self, config: dict[str, Any]) -> dict[str, Any]:
        to = self.resolve_variables(config.get("to"))
        subject = self.resolve_variables(config.get("subject") or "")
        html = self.resolve_variables(config.get("html") or config.get("body"))
        text = self.resolve_variables(config.get("text") or config.get("body"))

        logger.info(f"Sending email to {to}")
        try:
            result = await self.email_service.send_email(
                to=to,
                subject=subject,
                html_content=html,
                text_content=text,
                template_id=config.get("templateId") or config.get("template_id"),
            )
        except IntegrationError as exc:
            raise IntegrationError(
                f"Failed to send email: {exc.message}", integration="email", recoverable=exc.recoverable
            ) from exc

        return {
            "sent": True,
            "to": to,
            "subject": subject,
            "message_id": result.get("message_id"),
            "provider": result.get("provider", self.email_service.provider),
        }

    async def _slack_message(self, config: dict[str, Any]) -> dict[str, Any]:
        channel = self.resolve_variables(config.get("channel") or "#general")
        message = self.resolve_variables(config.get("message") or "")
        logger.info(f"Sending Slack message to {channel}")
        return await self.slack_client.send_message(str(channel), _stringify(message))

    def _log_message(self, config: dict[str, Any]) -> dict[str, Any]:
        message = self.resolve_variables(config.get("message") or "Log message")
        logger.info(f"Log: {message}")
        return {"logged": True, "message": message, "timestamp": _now_iso()}

    # Conditions

    async def execute_condition(self, node: WorkflowNode) -> dict[str, Any]:
        condition = node.config.get("condition")
        if condition is None or condition == "":
            condition = "true"
        if isinstance(condition, dict):
            met = self.evaluate_structured_condition(condition)
            resolved: Any = condition
        else:
            resolved = self.resolve_variables(str(condition))
            met = self.evaluate_condition(resolved) if isinstance(resolved, str) else bool(resolved)

        return {
            "condition_met": met,
            "condition": resolved,
            "message": "Condition passed" if met else "Condition failed",
        }

    def evaluate_condition(self, condition: str) -> bool:
        """Evaluate `left OP right`; anything unparseable or incomparable is False."""
        condition = condition.strip()
        if condition == "true":
            return True
        if condition == "false":
            return False

        match = CONDITION_PATTERN.match(condition)
        if not match:
            return False
        left_raw, operator, right_raw = match.groups()
        left = parse_value(left_raw)
        right = parse_value(right_raw)

        try:
            if operator == "==":
                return left == right
            if operator == "!=":
                return left != right
            if operator == ">":
                return left > right
            if operator == "<":
                return left < right
            if operator == ">=":
                return left >= right
            if operator == "<=":
                return left <= right
        except TypeError:
            logger.debug("Incomparable condition operands: %r %s %r", left, operator, right)
        return False

    def evaluate_structured_condition(self, condition: Mapping[str, Any]) -> bool:
        """Evaluate `{field, operator, value}` or `{all|any: [...]}` conditions."""
        if "all" in condition:
            return all(self.evaluate_structured_condition(c) for c in condition["all"])
        if "any" in condition:
            return any(self.evaluate_structured_condition(c) for c in condition["any"])

        field_value = self.lookup(str(condition.get("field", "")))
        if field_value is _MISSING:
            field_value = None
        operator = condition.get("operator")
        expected = self.resolve_variables(condition.get("value"))

        if operator == "equals":
            return field_value == expected
        if operator == "not_equals":
            return field_value != expected

        if operator in STRING_OPERATORS:
            text = _stringify(field_value) if field_value is not None else ""
            needle = _stringify(expected) if expected is not None else ""
            if operator == "contains":
                return field_value is not None and needle in text
            if operator == "not_contains":
                return needle not in text
            if operator == "starts_with":
                return text.startswith(needle)
            if operator == "ends_with":
                return text.endswith(needle)
            try:
                return re.search(needle, text) is not None
            except re.error:
                logger.debug("Invalid regex in condition: %r", needle)
                return False

        if operator in NUMERIC_OPERATORS:
            left, right = _to_number(field_value), _to_number(expected)
            if left is None or right is None:
                return False
            return NUMERIC_OPERATORS[operator](left, right)
        if operator in ("between", "not_between"):
            inside = False
            if isinstance(expected, list) and len(expected) == 2:
                value, low, high = _to_number(field_value), _to_number(expected[0]), _to_number(expected[1])
                inside = None not in (value, low, high) and low <= value <= high
            return inside if operator == "between" else not inside

        if operator == "exists":
            return field_value is not None
        if operator == "not_exists":
            return field_value is None
        if operator == "is_null":
            return field_value is None
        if operator == "is_not_null":
            return field_value is not None
        if operator in ("is_empty", "is_not_empty"):
            empty = field_value is None or (isinstance(field_value, (str, list, dict)) and len(field_value) == 0)
            return empty if operator == "is_empty" else not empty
        if operator == "in":
            return isinstance(expected, list) and field_value in expected
        if operator == "not_in":
            return not (isinstance(expected, list) and field_value in expected)

        if operator in TYPE_OPERATORS:
            if operator == "is_number":
                return _is_number(field_value)
            return isinstance(field_value, TYPE_OPERATORS[operator])

        if operator in ("includes_any", "includes_all"):
            if not isinstance(field_value, list):
                return False
            wanted = expected if isinstance(expected, list) else [expected]
            check = any if operator == "includes_any" else all
            return check(item in field_value for item in wanted)
        if operator in ("array_length_equals", "array_length_greater_than", "array_length_less_than"):
            length, target = (len(field_value) if isinstance(field_value, list) else None), _to_number(expected)
            if length is None or target is None:
                return False
            if operator == "array_length_equals":
                return length == target
            return length > target if operator == "array_length_greater_than" else length < target

        if operator in ("date_equals", "date_after", "date_before"):
            left_date, right_date = _to_datetime(field_value), _to_datetime(expected)
            if left_date is None or right_date is None:
                return False
            if operator == "date_equals":
                return left_date == right_date
            return left_date > right_date if operator == "date_after" else left_date < right_date
        return False

    # Transforms and loops

    async def execute_transform(self, node: WorkflowNode) -> Any:
        config = node.config
        transform_type = config.get("transformType") or config.get("transform_type") or "map"
        input_data = self.get_input_data(node)

        if transform_type == "map":
            return self._transform_map(input_data, config)
        if transform_type == "filter":
            return self._transform_filter(input_data, config)
        if transform_type == "reduce":
            return self._transform_reduce(input_data, config)
        return input_data

    async def execute_loop(self, node: WorkflowNode) -> dict[str, Any]:
        config = node.config
        items = self.resolve_variables(config.get("items", []))
        if isinstance(items, str):
            try:
                items = json.loads(items)
            except ValueError:
                raise ValidationError("Loop items must resolve to a list") from None
        if not isinstance(items, list):
            raise ValidationError("Loop items must resolve to a list")

        max_iterations = int(config.get("max_iterations") or DEFAULT_MAX_LOOP_ITERATIONS)
        mapping = config.get("mapping")
        results = []
        for index, item in enumerate(items[:max_iterations]):
            entry: dict[str, Any] = {"item": item, "index": index, "processed": True, "timestamp": _now_iso()}
            if mapping:
                with self._scoped_variables(item=item, index=index):
                    entry["output"] = self.resolve_variables(mapping)
            results.append(entry)

        return {
            "iterations": len(results),
            "truncated": len(items) > max_iterations,
            "results": results,
        }

    def get_input_data(self, node: WorkflowNode) -> Any:
        """Data of the first predecessor, or the trigger data for unconnected nodes."""
        incoming = self.definition.incoming(node.id)
        if not incoming:
            return self.context.trigger_data
        previous = self.context.node_results.get(incoming[0].source) or {}
        data = previous.get("data")
        return {} if data is None else data

    def _transform_map(self, data: Any, config: dict[str, Any]) -> list[Any]:
        items = data if isinstance(data, list) else [data]
        mapping = config.get("mapping") or {}
        mapped = []
        for index, item in enumerate(items):
            with self._scoped_variables(item=item, index=index):
                mapped.append({key: self.resolve_variables(value) for key, value in mapping.items()})
        return mapped

    def _transform_filter(self, data: Any, config: dict[str, Any]) -> list[Any]:
        items = data if isinstance(data, list) else [data]
        condition = config.get("filter") or "true"
        kept = []
        for index, item in enumerate(items):
            with self._scoped_variables(item=item, index=index):
                if isinstance(condition, dict):
                    keep = self.evaluate_structured_condition(condition)
                else:
                    resolved = self.resolve_variables(str(condition))
                    keep = self.evaluate_condition(resolved) if isinstance(resolved, str) else bool(resolved)
            if keep:
                kept.append(item)
        return kept

    def _transform_reduce(self, data: Any, config: dict[str, Any]) -> Any:
        items = data if isinstance(data, list) else [data]
        operation = config.get("operation") or "sum"
        field_name = config.get("field")

        def _value(item: Any) -> float:
            raw = item.get(field_name) if isinstance(item, Mapping) and field_name else item
            return _to_number(raw) or 0.0

        if operation == "sum":
            return sum(_value(item) for item in items)
        if operation == "count":
            return len(items)
        if operation == "average":
            return sum(_value(item) for item in items) / len(items) if items else 0
        return items

    # Variables

    @contextmanager
    def _scoped_variables(self, **values: Any) -> Iterator[None]:
        original = self.context.variables
        self.context.variables = {**original, **values}
        try:
            yield
        finally:
            self.context.variables = original

    def lookup(self, path: str) -> Any:
        """Resolve a dotted path against the context; unknown roots fall back to variables."""
        parts = [p for p in path.strip().split(".") if p]
        if not parts:
            return _MISSING
        roots = self.context.as_lookup()
        current: Any = roots if parts[0] in roots else self.context.variables

        for key in parts:
            if isinstance(current, Mapping):
                current = current.get(key, _MISSING)
            elif isinstance(current, list) and key.lstrip("-").isdigit() and -len(current) <= int(key) < len(current):
                current = current[int(key)]
            else:
                current = _MISSING
            if current is _MISSING:
                break
        return current

    def resolve_variables(self, value: Any) -> Any:
        """Replace `{{path}}` placeholders recursively; unresolvable ones are left verbatim."""
        if isinstance(value, str):
            whole = VARIABLE_PATTERN.fullmatch(value)
            if whole:
                resolved = self.lookup(whole.group(1))
                return value if resolved is _MISSING else resolved

            def _replace(match: re.Match[str]) -> str:
                resolved = self.lookup(match.group(1))
                return match.group(0) if resolved is _MISSING else _stringify(resolved)

            return VARIABLE_PATTERN.sub(_replace, value)

        if isinstance(value, list):
            return [self.resolve_variables(item) for item in value]

        if isinstance(value, Mapping):
            return {key: self.resolve_variables(val) for key, val in value.items()}

        return value


async def execute_workflow(
    workflow: Any,
    workflow_id: str,
    execution_id: str,
    organization_id: str,
    user_id: str | None = None,
    trigger_data: Any = None,
    **engine_options: Any,
) -> ExecutionResult:
    """
    Build a full context from a workflow record (ORM row or dict) and run it.
    """
    if isinstance(workflow, Mapping):
        raw_definition = workflow.get("definition") or {
            "nodes": workflow.get("nodes") or [],
            "edges": workflow.get("edges") or [],
        }
        variables = workflow.get("variables") or {}
    else:
        raw_definition = workflow.definition or {}
        variables = workflow.variables or {}

    context = ExecutionContext(
        workflow_id=workflow_id,
        execution_id=execution_id,
        organization_id=organization_id,
        user_id=user_id,
        trigger_data=trigger_data if trigger_data is not None else {},
        variables=dict(variables),
        node_results={},
    )
    definition = WorkflowDefinition.model_validate(raw_definition)
    engine = WorkflowExecutionEngine(definition, context, **engine_options)
    return await engine.execute()
