"""
API routers
"""
from . import executions, monitoring, schedules, webhooks, workflows

__all__ = ["executions", "monitoring", "schedules", "webhooks", "workflows"]
