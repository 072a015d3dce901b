"""
Durable state store
"""
from .repository import (
    StateStore, ExecutionFilter, AuditFilter,
    WorkflowRepository, ExecutionRepository, ScheduleRepository, WebhookRepository, AuditRepository,
    create_in_memory_store,
)

__all__ = [
    "StateStore", "ExecutionFilter", "AuditFilter",
    "WorkflowRepository", "ExecutionRepository", "ScheduleRepository",
    "WebhookRepository", "AuditRepository", "create_in_memory_store",
]
