"""Audit sink writing typed, append-only entries."""
from __future__ import annotations

import logging
from typing import Any, List, Optional

from ..models import AuditEntry, AuditEventKind
from ..storage.repository import AuditFilter, AuditRepository


class AuditSink:
    """Writes audit entries to the store and mirrors them to the log."""

    def __init__(self, repository: AuditRepository) -> None:
        self.repository = repository
        self.logger = logging.getLogger("process_engine.audit")

    async def record(
        self,
        kind: AuditEventKind,
        actor: Optional[str] = None,
        workflow_id: Optional[str] = None,
        execution_id: Optional[str] = None,
        step_id: Optional[str] = None,
        success: bool = True,
        **data: Any,
    ) -> AuditEntry:
        entry = AuditEntry(
            kind=kind,
            actor=actor,
            workflow_id=workflow_id,
            execution_id=execution_id,
            step_id=step_id,
            success=success,
            data=data,
        )
        stored = await self.repository.append(entry)
        self.logger.info(
            kind.value,
            extra={"executionId": execution_id, "stepId": step_id, "workflowId": workflow_id},
        )
        return stored

    async def entries(self, filters: Optional[AuditFilter] = None, offset: int = 0,
                      limit: int = 100) -> List[AuditEntry]:
        return await self.repository.list(filters, offset, limit)

    async def count(self, **filters: Any) -> int:
        entries = await self.repository.list(AuditFilter(**filters), 0, 100000)
        return len(entries)
