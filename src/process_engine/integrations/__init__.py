"""
Integrations with collaborators outside the engine
"""
from .event_bus import EventBus, Event, EXECUTION_UPDATE, EXECUTION_COMPLETE, STEP_UPDATE
from .action_registry import ActionRegistry, ActionDefinition, ActionContext, ActionResponse
from .collaborators import (
    Principal, TokenValidator, JWTTokenValidator,
    HttpResponse, HttpClient, HttpxClient,
    Notifier, HttpNotifier,
    CrudResult, LowCodeCRUD, InMemoryLowCodeCRUD,
    ChangeRecorder, RecordingHttpClient, RecordingNotifier, RecordingCRUD,
)

__all__ = [
    "EventBus", "Event", "EXECUTION_UPDATE", "EXECUTION_COMPLETE", "STEP_UPDATE",
    "ActionRegistry", "ActionDefinition", "ActionContext", "ActionResponse",
    "Principal", "TokenValidator", "JWTTokenValidator",
    "HttpResponse", "HttpClient", "HttpxClient",
    "Notifier", "HttpNotifier",
    "CrudResult", "LowCodeCRUD", "InMemoryLowCodeCRUD",
    "ChangeRecorder", "RecordingHttpClient", "RecordingNotifier", "RecordingCRUD",
]
