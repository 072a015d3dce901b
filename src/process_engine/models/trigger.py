"""
Schedule and webhook trigger configuration
"""
from dataclasses import dataclass, field
from typing import Dict, Any, Optional, List
from datetime import datetime

from .common import utcnow, new_id, to_iso


@dataclass
class Schedule:
    """Cron schedule bound to a workflow"""
    workflow_id: str
    cron_expr: str
    timezone: str = "UTC"
    enabled: bool = True
    next_fire_at: Optional[datetime] = None
    last_fire_at: Optional[datetime] = None
    input_data: Dict[str, Any] = field(default_factory=dict)
    name: str = ""
    preset: Optional[str] = None
    created_by: Optional[str] = None
    id: str = field(default_factory=new_id)
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "workflow_id": self.workflow_id,
            "name": self.name,
            "cron_expr": self.cron_expr,
            "timezone": self.timezone,
            "preset": self.preset,
            "enabled": self.enabled,
            "next_fire_at": to_iso(self.next_fire_at),
            "last_fire_at": to_iso(self.last_fire_at),
            "input_data": self.input_data,
            "created_by": self.created_by,
            "created_at": to_iso(self.created_at),
        }


@dataclass
class WebhookConfig:
    """Inbound webhook settings for a workflow"""
    workflow_id: str
    secret: Optional[str] = None
    require_signature: bool = True
    enabled: bool = True
    allowed_ips: List[str] = field(default_factory=list)
    allowed_origins: List[str] = field(default_factory=list)
    rate_limit_max: Optional[int] = None
    rate_limit_window_ms: Optional[int] = None
    # payload path -> input variable name
    input_mapping: Dict[str, str] = field(default_factory=dict)
    required_headers: List[str] = field(default_factory=list)
    created_at: datetime = field(default_factory=utcnow)

    def to_dict(self, include_secret: bool = False) -> Dict[str, Any]:
        data = {
            "workflow_id": self.workflow_id,
            "require_signature": self.require_signature,
            "enabled": self.enabled,
            "allowed_ips": list(self.allowed_ips),
            "allowed_origins": list(self.allowed_origins),
            "rate_limit": {"max": self.rate_limit_max, "window_ms": self.rate_limit_window_ms},
            "input_mapping": dict(self.input_mapping),
            "required_headers": list(self.required_headers),
        }
        if include_secret:
            data["secret"] = self.secret
        return data
