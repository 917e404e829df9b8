"""
Workflow-level error normalisation and recovery.
"""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Awaitable, Callable, Optional

from automation_platform.core.exceptions import WorkflowExecutionError

logger = logging.getLogger(__name__)


@dataclass
class ErrorRecoveryStrategy:
    max_retries: int
    retry_delay: float  # seconds
    backoff_multiplier: float
    fallback_action: Optional[Callable[[], Awaitable[Any]]] = None


@dataclass
class ErrorRecord:
    timestamp: datetime
    error: WorkflowExecutionError
    workflow_id: str
    execution_id: str


class WorkflowErrorHandler:
    def __init__(self, sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep, max_records: int = 500):
        self._sleep = sleep
        self.max_records = max_records
        self.error_log: list[ErrorRecord] = []

    async def handle_error(
        self,
        error: BaseException,
        workflow_id: str,
        execution_id: str,
        strategy: ErrorRecoveryStrategy | None = None,
    ) -> dict[str, Any]:
        """Record the error and attempt recovery when it is recoverable and a strategy is given."""
        workflow_error = self.normalize_error(error)
        self.error_log.append(ErrorRecord(datetime.utcnow(), workflow_error, workflow_id, execution_id))
        if len(self.error_log) > self.max_records:
            del self.error_log[: len(self.error_log) - self.max_records]

        logger.error(
            "Workflow execution error: code=%s node=%s recoverable=%s message=%s",
            workflow_error.code,
            workflow_error.node_id,
            workflow_error.recoverable,
            workflow_error.message,
        )

        if workflow_error.recoverable and strategy and strategy.fallback_action:
            return await self._attempt_recovery(workflow_error, strategy)
        return {"recovered": False, "final_error": workflow_error}

    @staticmethod
    def normalize_error(error: BaseException) -> WorkflowExecutionError:
        if isinstance(error, WorkflowExecutionError):
            return error
        return WorkflowExecutionError(
            str(error),
            "UNKNOWN_ERROR",
            recoverable=False,
            context={"original_error": type(error).__name__},
        )

    async def _attempt_recovery(
        self,
        error: WorkflowExecutionError,
        strategy: ErrorRecoveryStrategy,
    ) -> dict[str, Any]:
        last_error = error
        delay = strategy.retry_delay

        for attempt in range(1, strategy.max_retries + 1):
            logger.info("Recovery attempt %s/%s", attempt, strategy.max_retries)
            await self._sleep(delay)
            try:
                result = await strategy.fallback_action()
                logger.info("Recovery successful via fallback action")
                return {"recovered": True, "result": result, "attempts": attempt}
            except Exception as retry_error:
                last_error = self.normalize_error(retry_error)
                logger.error("Recovery attempt %s failed: %s", attempt, last_error.message)
                delay *= strategy.backoff_multiplier

        logger.error("All recovery attempts exhausted")
        return {"recovered": False, "final_error": last_error, "attempts": strategy.max_retries}

    def get_recent_errors(self, workflow_id: str, limit: int = 10) -> list[ErrorRecord]:
        return [r for r in self.error_log if r.workflow_id == workflow_id][-limit:]

    def clear_error_log(self, workflow_id: str | None = None) -> None:
        if workflow_id:
            self.error_log = [r for r in self.error_log if r.workflow_id != workflow_id]
        else:
            self.error_log = []


DEFAULT_RECOVERY_STRATEGIES: dict[str, dict[str, float]] = {
    "integration": {"max_retries": 3, "retry_delay": 1.0, "backoff_multiplier": 2.0},
    "ai_agent": {"max_retries": 2, "retry_delay": 2.0, "backoff_multiplier": 1.5},
    "network": {"max_retries": 5, "retry_delay": 0.5, "backoff_multiplier": 2.0},
}


def build_strategy(
    name: str | None,
    fallback_action: Callable[[], Awaitable[Any]],
) -> ErrorRecoveryStrategy | None:
    """Return the named default strategy bound to `fallback_action`, or None for unknown names."""
    params = DEFAULT_RECOVERY_STRATEGIES.get(name or "")
    if params is None:
        return None
    return ErrorRecoveryStrategy(
        max_retries=int(params["max_retries"]),
        retry_delay=params["retry_delay"],
        backoff_multiplier=params["backoff_multiplier"],
        fallback_action=fallback_action,
    )


workflow_error_handler = WorkflowErrorHandler()
