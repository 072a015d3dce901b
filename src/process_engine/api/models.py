"""
API request and response models
"""
from enum import Enum
from typing import Any, Dict, List, Optional, Union

from pydantic import BaseModel, Field


class ExecutionStatusEnum(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    WAITING_APPROVAL = "waiting_approval"
    WAITING_TIMER = "waiting_timer"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class ImportConflictEnum(str, Enum):
    RENAME = "rename"
    SKIP = "skip"


# Executions

class ExecutionStartRequest(BaseModel):
    workflow_id: str = Field(..., description="Workflow to run")
    input_data: Dict[str, Any] = Field(default_factory=dict, description="Input variables")
    priority: int = Field(5, ge=0, le=10, description="Higher runs first")
    labels: List[str] = Field(default_factory=list, description="Free-form labels")
    wait: bool = Field(False, description="Return only after the walk stops")


class CancelRequest(BaseModel):
    reason: Optional[str] = Field(None, description="Why the execution is cancelled")


class ApprovalRequest(BaseModel):
    comments: Optional[str] = Field(None, description="Approval comments")
    wait: bool = Field(False, description="Return only after the resumed walk stops")


class RejectionRequest(BaseModel):
    reason: Optional[str] = Field(None, description="Rejection reason")
    wait: bool = Field(False, description="Return only after the execution settles")


class RetryRequest(BaseModel):
    wait: bool = Field(False, description="Return only after the new walk stops")


class TestExecutionRequest(BaseModel):
    workflow_id: Optional[str] = Field(None, description="Stored workflow to dry-run")
    definition: Optional[Union[Dict[str, Any], str]] = Field(
        None, description="Inline definition (dict, JSON or YAML) to dry-run"
    )
    test_data: Dict[str, Any] = Field(default_factory=dict, description="Input variables")


# Workflows

class WorkflowCreateRequest(BaseModel):
    definition: Union[Dict[str, Any], str] = Field(..., description="Workflow definition")


class WorkflowUpdateRequest(BaseModel):
    changes: Dict[str, Any] = Field(..., description="Top-level definition fields to replace")


class WorkflowValidateRequest(BaseModel):
    definition: Union[Dict[str, Any], str] = Field(..., description="Workflow definition")


class WorkflowCloneRequest(BaseModel):
    name: Optional[str] = Field(None, description="Name of the copy")


class WorkflowImportRequest(BaseModel):
    data: Dict[str, Any] = Field(..., description="Output of the export endpoint")
    conflict: ImportConflictEnum = Field(ImportConflictEnum.RENAME, description="Name clash policy")


class WebhookConfigRequest(BaseModel):
    secret: Optional[str] = Field(None, description="Shared HMAC secret; generated when omitted")
    require_signature: bool = True
    enabled: bool = True
    allowed_ips: List[str] = Field(default_factory=list, description="CIDR allow-list")
    allowed_origins: List[str] = Field(default_factory=list)
    rate_limit_max: Optional[int] = Field(None, ge=1)
    rate_limit_window_ms: Optional[int] = Field(None, ge=1)
    input_mapping: Dict[str, str] = Field(default_factory=dict, description="Payload path to variable")
    required_headers: List[str] = Field(default_factory=list)


# Schedules

class ScheduleCreateRequest(BaseModel):
    workflow_id: str
    cron_expr: Optional[str] = Field(None, description="5-field cron expression")
    preset: Optional[Union[str, Dict[str, Any]]] = Field(None, description="Preset id or parametrised preset")
    timezone: str = Field("UTC", description="IANA timezone")
    name: str = ""
    input_data: Dict[str, Any] = Field(default_factory=dict)
    enabled: bool = True


class ScheduleValidateRequest(BaseModel):
    cron_expr: str
    timezone: str = "UTC"
    count: int = Field(5, ge=1, le=50)


# Common

class PaginatedResponse(BaseModel):
    total: int
    offset: int
    limit: int
    items: List[Dict[str, Any]]


class SuccessResponse(BaseModel):
    success: bool = True
    message: Optional[str] = None
