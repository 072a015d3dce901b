"""Audit and metrics sink."""
from .audit import AuditSink
from .metrics import MetricsRecorder

__all__ = ["AuditSink", "MetricsRecorder"]
