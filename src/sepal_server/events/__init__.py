from sepal_server.events.event_types import (
    EVENT_KINDS,
    CanonicalEvent,
    EventEnvelope,
    LastError,
    MessageCompleted,
    MessageCreated,
    MessageDelta,
    RunCompleted,
    RunEvent,
    RunFailed,
    RunInProgress,
    RunRequiresAction,
    RunStepCreated,
    RunStepDelta,
    ToolCallDelta,
    UnknownEventError,
    parse_event,
)
from sepal_server.events.formatters import RunsFormatter

__all__ = [
    "CanonicalEvent",
    "EVENT_KINDS",
    "EventEnvelope",
    "LastError",
    "MessageCompleted",
    "MessageCreated",
    "MessageDelta",
    "RunCompleted",
    "RunEvent",
    "RunFailed",
    "RunInProgress",
    "RunRequiresAction",
    "RunStepCreated",
    "RunStepDelta",
    "RunsFormatter",
    "ToolCallDelta",
    "UnknownEventError",
    "parse_event",
]
