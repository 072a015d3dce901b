"""
SQLAlchemy table definitions
"""
from sqlalchemy import (
    Column, String, Text, Boolean, Integer, Float, DateTime, JSON,
    ForeignKeyConstraint, PrimaryKeyConstraint, CheckConstraint, Index,
)
from sqlalchemy.orm import declarative_base


Base = declarative_base()

EXECUTION_STATUSES = (
    "'pending', 'running', 'waiting_approval', 'waiting_timer', "
    "'completed', 'failed', 'cancelled'"
)


class WorkflowRow(Base):
    """One version of a workflow definition"""
    __tablename__ = 'workflows'

    id = Column(String(64), nullable=False)
    version = Column(Integer, nullable=False)
    name = Column(String(255), nullable=False)
    description = Column(Text, default="")
    status = Column(String(20), nullable=False, default="draft")
    trigger_kind = Column(String(20), nullable=False, default="manual")
    variables = Column(JSON, default=dict)
    settings = Column(JSON, default=dict)
    tags = Column(JSON, default=list)
    owner_id = Column(String(255))
    created_at = Column(DateTime, nullable=False)
    updated_at = Column(DateTime, nullable=False)

    __table_args__ = (
        PrimaryKeyConstraint('id', 'version', name='pk_workflows'),
        CheckConstraint("status IN ('draft', 'active', 'archived')", name='check_workflow_status'),
        Index('idx_workflows_status', 'status'),
        Index('idx_workflows_owner', 'owner_id'),
    )


class WorkflowStepRow(Base):
    """Step of a workflow version"""
    __tablename__ = 'workflow_steps'

    workflow_id = Column(String(64), nullable=False)
    workflow_version = Column(Integer, nullable=False)
    step_id = Column(String(255), nullable=False)
    position = Column(Integer, nullable=False)
    kind = Column(String(40), nullable=False)
    definition = Column(JSON, nullable=False)

    __table_args__ = (
        PrimaryKeyConstraint('workflow_id', 'workflow_version', 'step_id', name='pk_workflow_steps'),
        ForeignKeyConstraint(
            ['workflow_id', 'workflow_version'], ['workflows.id', 'workflows.version'],
            ondelete='CASCADE',
        ),
    )


class WorkflowStatsRow(Base):
    """Aggregated statistics per workflow id"""
    __tablename__ = 'workflow_stats'

    workflow_id = Column(String(64), primary_key=True)
    execution_count = Column(Integer, nullable=False, default=0)
    success_count = Column(Integer, nullable=False, default=0)
    failure_count = Column(Integer, nullable=False, default=0)
    average_duration_ms = Column(Float, nullable=False, default=0.0)
    last_executed_at = Column(DateTime)


class ExecutionColumns:
    """Columns shared by live and archived executions"""
    id = Column(String(64), primary_key=True)
    workflow_id = Column(String(64), nullable=False)
    workflow_version = Column(Integer, nullable=False)
    status = Column(String(20), nullable=False)
    trigger_kind = Column(String(20), nullable=False)
    trigger_data = Column(JSON, default=dict)
    input_data = Column(JSON, default=dict)
    context = Column(JSON, default=dict)
    current_step_id = Column(String(255))
    completed_step_ids = Column(JSON, default=list)
    failed_step_ids = Column(JSON, default=list)
    step_results = Column(JSON, default=dict)
    retry_count = Column(Integer, default=0)
    step_retries = Column(JSON, default=dict)
    iteration_count = Column(Integer, default=0)
    priority = Column(Integer, default=5)
    initiator = Column(String(255))
    parent_execution_id = Column(String(64))
    labels = Column(JSON, default=list)
    # ",a,b," so a label filter is a portable LIKE
    labels_text = Column(Text, default=",")
    dry_run = Column(Boolean, default=False)
    started_at = Column(DateTime)
    completed_at = Column(DateTime)
    duration_ms = Column(Integer)
    error = Column(JSON)
    cancelled_by = Column(String(255))
    lease_owner = Column(String(255))
    lease_until = Column(DateTime)
    created_at = Column(DateTime, nullable=False)
    updated_at = Column(DateTime, nullable=False)


class ExecutionRow(ExecutionColumns, Base):
    __tablename__ = 'workflow_executions'

    __table_args__ = (
        CheckConstraint(f"status IN ({EXECUTION_STATUSES})", name='check_execution_status'),
        Index('idx_executions_workflow', 'workflow_id'),
        Index('idx_executions_status', 'status'),
        Index('idx_executions_created', 'created_at', 'id'),
        Index('idx_executions_parent', 'parent_execution_id'),
    )


class ExecutionArchiveRow(ExecutionColumns, Base):
    __tablename__ = 'workflow_executions_archive'


class LogColumns:
    id = Column(Integer, primary_key=True, autoincrement=True)
    execution_id = Column(String(64), nullable=False)
    workflow_id = Column(String(64), nullable=False)
    step_id = Column(String(255))
    level = Column(String(10), nullable=False)
    message = Column(Text, nullable=False)
    data = Column(JSON, default=dict)
    timestamp = Column(DateTime, nullable=False)


class LogRow(LogColumns, Base):
    __tablename__ = 'workflow_logs'

    __table_args__ = (
        Index('idx_logs_execution', 'execution_id', 'id'),
        Index('idx_logs_timestamp', 'timestamp'),
    )


class LogArchiveRow(LogColumns, Base):
    __tablename__ = 'workflow_logs_archive'


class ScheduleRow(Base):
    __tablename__ = 'workflow_schedules'

    id = Column(String(64), primary_key=True)
    workflow_id = Column(String(64), nullable=False)
    name = Column(String(255), default="")
    cron_expr = Column(String(120), nullable=False)
    timezone = Column(String(64), nullable=False, default="UTC")
    preset = Column(String(64))
    enabled = Column(Boolean, nullable=False, default=True)
    next_fire_at = Column(DateTime)
    last_fire_at = Column(DateTime)
    input_data = Column(JSON, default=dict)
    created_by = Column(String(255))
    created_at = Column(DateTime, nullable=False)
    updated_at = Column(DateTime, nullable=False)

    __table_args__ = (
        Index('idx_schedules_due', 'enabled', 'next_fire_at'),
        Index('idx_schedules_workflow', 'workflow_id'),
    )


class WebhookRow(Base):
    __tablename__ = 'workflow_webhooks'

    workflow_id = Column(String(64), primary_key=True)
    secret = Column(String(255))
    require_signature = Column(Boolean, nullable=False, default=True)
    enabled = Column(Boolean, nullable=False, default=True)
    allowed_ips = Column(JSON, default=list)
    allowed_origins = Column(JSON, default=list)
    rate_limit_max = Column(Integer)
    rate_limit_window_ms = Column(Integer)
    input_mapping = Column(JSON, default=dict)
    required_headers = Column(JSON, default=list)
    created_at = Column(DateTime, nullable=False)


class AuditColumns:
    id = Column(Integer, primary_key=True, autoincrement=True)
    kind = Column(String(40), nullable=False)
    actor = Column(String(255))
    workflow_id = Column(String(64))
    execution_id = Column(String(64))
    step_id = Column(String(255))
    success = Column(Boolean, nullable=False, default=True)
    data = Column(JSON, default=dict)
    timestamp = Column(DateTime, nullable=False)


class AuditRow(AuditColumns, Base):
    __tablename__ = 'workflow_audit'

    __table_args__ = (
        Index('idx_audit_kind', 'kind'),
        Index('idx_audit_execution', 'execution_id'),
        Index('idx_audit_timestamp', 'timestamp'),
    )


class AuditArchiveRow(AuditColumns, Base):
    __tablename__ = 'workflow_audit_archive'
