"""
SQLAlchemy models for the automation platform.
"""
from __future__ import annotations

import uuid

from sqlalchemy import JSON, Boolean, Column, DateTime, ForeignKey, Integer, String, Text, UniqueConstraint, Uuid
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import declarative_base
from sqlalchemy.sql import func

Base = declarative_base()

# JSONB on PostgreSQL, plain JSON everywhere else.
JSONType = JSON().with_variant(JSONB(), "postgresql")

WORKFLOW_STATUSES = ("draft", "active", "paused", "archived")


class Workflow(Base):
    __tablename__ = "workflows"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    organization_id = Column(Text, nullable=False, index=True)
    created_by = Column(Text)
    name = Column(String(255), nullable=False)
    description = Column(Text)
    status = Column(String(20), nullable=False, default="draft")
    definition = Column(JSONType, nullable=False, default=dict)
    variables = Column(JSONType, default=dict)
    error_handling = Column(JSONType, default=dict)
    webhook_enabled = Column(Boolean, default=False)
    webhook_secret = Column(Text)
    webhook_auth_type = Column(String(20), default="none")
    version = Column(Integer, default=1)
    tags = Column(JSONType, default=list)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())


class ExecutionLog(Base):
    __tablename__ = "execution_logs"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    workflow_id = Column(Uuid(as_uuid=True), ForeignKey("workflows.id", ondelete="CASCADE"), nullable=False, index=True)
    organization_id = Column(Text, nullable=False, index=True)
    triggered_by = Column(Text)
    status = Column(String(20), nullable=False, default="pending", index=True)
    trigger_data = Column(JSONType, default=dict)
    execution_data = Column(JSONType, default=dict)
    error_details = Column(JSONType)
    logs = Column(JSONType, default=list)
    retry_count = Column(Integer, default=0)
    parent_execution_id = Column(Uuid(as_uuid=True), ForeignKey("execution_logs.id"))
    started_at = Column(DateTime(timezone=True))
    completed_at = Column(DateTime(timezone=True))
    duration_ms = Column(Integer)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), index=True)


class ExecutionStep(Base):
    __tablename__ = "execution_steps"
    __table_args__ = (UniqueConstraint("execution_id", "step_index", name="uq_execution_steps_index"),)

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    execution_id = Column(
        Uuid(as_uuid=True), ForeignKey("execution_logs.id", ondelete="CASCADE"), nullable=False, index=True
    )
    step_index = Column(Integer, nullable=False)
    node_id = Column(Text)
    action_type = Column(String(100), nullable=False)
    status = Column(String(20), nullable=False, default="pending")
    input_data = Column(JSONType, default=dict)
    output_data = Column(JSONType, default=dict)
    error_message = Column(Text)
    started_at = Column(DateTime(timezone=True))
    completed_at = Column(DateTime(timezone=True))
    duration_ms = Column(Integer)


class WorkflowSchedule(Base):
    __tablename__ = "workflow_schedules"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    workflow_id = Column(
        Uuid(as_uuid=True), ForeignKey("workflows.id", ondelete="CASCADE"), nullable=False, unique=True
    )
    organization_id = Column(Text, nullable=False, index=True)
    created_by = Column(Text)
    name = Column(String(255))
    description = Column(Text)
    cron_expression = Column(String(100), nullable=False)
    timezone = Column(String(50), nullable=False, default="UTC")
    enabled = Column(Boolean, nullable=False, default=True, index=True)
    last_run_at = Column(DateTime(timezone=True))
    next_run_at = Column(DateTime(timezone=True), index=True)
    total_runs = Column(Integer, default=0)
    successful_runs = Column(Integer, default=0)
    failed_runs = Column(Integer, default=0)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())


class WebhookRequest(Base):
    __tablename__ = "webhook_requests"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    workflow_id = Column(Text, nullable=False, index=True)
    organization_id = Column(Text)
    method = Column(String(10))
    headers = Column(JSONType, default=dict)
    query = Column(JSONType, default=dict)
    body = Column(JSONType)
    source_ip = Column(Text)
    status_code = Column(Integer)
    success = Column(Boolean, default=False)
    error_message = Column(Text)
    execution_id = Column(Text)
    duration_ms = Column(Integer)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
