"""
Audit event model
"""
from dataclasses import dataclass, field
from typing import Dict, Any, Optional
from enum import Enum
from datetime import datetime

from .common import utcnow, to_iso


class AuditEventKind(Enum):
    """Closed set of audited events"""
    WORKFLOW_CREATE = "workflow.create"
    WORKFLOW_UPDATE = "workflow.update"
    WORKFLOW_DELETE = "workflow.delete"
    WORKFLOW_CLONE = "workflow.clone"
    WORKFLOW_EXECUTE = "workflow.execute"
    WORKFLOW_CANCEL = "workflow.cancel"
    WORKFLOW_EXPORT = "workflow.export"
    WORKFLOW_IMPORT = "workflow.import"
    EXECUTION_START = "execution.start"
    EXECUTION_COMPLETE = "execution.complete"
    EXECUTION_FAIL = "execution.fail"
    EXECUTION_CANCEL = "execution.cancel"
    EXECUTION_RETRY = "execution.retry"
    STEP_EXECUTE = "step.execute"
    STEP_FAIL = "step.fail"
    PERMISSION_GRANT = "permission.grant"
    PERMISSION_REVOKE = "permission.revoke"
    CONFIG_CHANGE = "config.change"


@dataclass
class AuditEntry:
    """Append-only audit row"""
    kind: AuditEventKind
    actor: Optional[str] = None
    workflow_id: Optional[str] = None
    execution_id: Optional[str] = None
    step_id: Optional[str] = None
    success: bool = True
    data: Dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=utcnow)
    id: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "kind": self.kind.value,
            "actor": self.actor,
            "workflow_id": self.workflow_id,
            "execution_id": self.execution_id,
            "step_id": self.step_id,
            "success": self.success,
            "data": self.data,
            "timestamp": to_iso(self.timestamp),
        }
