"""Custom exception types for domain and API layers."""
from __future__ import annotations

from typing import Any


class AppError(Exception):
    """Base app exception."""


class ValidationError(AppError):
    """Validation failure for user input or workflow definitions."""


class NotFoundError(AppError):
    """Requested record does not exist."""


class WorkflowExecutionError(AppError):
    """Failure while running a workflow."""

    def __init__(
        self,
        message: str,
        code: str = "WORKFLOW_EXECUTION_ERROR",
        node_id: str | None = None,
        recoverable: bool = False,
        context: dict[str, Any] | None = None,
    ):
        super().__init__(message)
        self.message = message
        self.code = code
        self.node_id = node_id
        self.recoverable = recoverable
        self.context = context or {}

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": type(self).__name__,
            "code": self.code,
            "message": self.message,
            "node_id": self.node_id,
            "recoverable": self.recoverable,
        }


class NodeExecutionError(WorkflowExecutionError):
    """A single node failed."""

    def __init__(
        self,
        message: str,
        node_id: str,
        node_type: str,
        recoverable: bool = False,
        context: dict[str, Any] | None = None,
    ):
        super().__init__(message, "NODE_EXECUTION_ERROR", node_id, recoverable, context)
        self.node_type = node_type


class IntegrationError(WorkflowExecutionError):
    """External integration call failure."""

    def __init__(
        self,
        message: str,
        integration: str,
        recoverable: bool = True,
        context: dict[str, Any] | None = None,
    ):
        super().__init__(message, "INTEGRATION_ERROR", None, recoverable, context)
        self.integration = integration
