"""Canonical run lifecycle events.

Every run, whatever backend produced it, is described to the caller by the
same closed set of events. Each event carries what the persistence layer
needs to apply it; the wire payload the caller sees is built from the
applied record by ``RunsFormatter``.
"""

import json
import time
from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter
from sse_starlette import ServerSentEvent


class RunEvent(BaseModel):
    model_config = ConfigDict(frozen=True)

    event: str


class LastError(BaseModel):
    code: Literal["server_error", "rate_limit_exceeded", "invalid_prompt"] = "server_error"
    message: str


class RunInProgress(RunEvent):
    event: Literal["run.in_progress"] = "run.in_progress"
    run_id: str


class RunFailed(RunEvent):
    event: Literal["run.failed"] = "run.failed"
    run_id: str
    last_error: LastError
    failed_at: int = Field(default_factory=lambda: int(time.time()))


class RunCompleted(RunEvent):
    event: Literal["run.completed"] = "run.completed"
    run_id: str
    completed_at: int = Field(default_factory=lambda: int(time.time()))


class RunRequiresAction(RunEvent):
    event: Literal["run.requires_action"] = "run.requires_action"
    run_id: str
    tool_calls: List[Dict[str, Any]]

    @property
    def required_action(self) -> Dict[str, Any]:
        return {
            "type": "submit_tool_outputs",
            "submit_tool_outputs": {"tool_calls": self.tool_calls},
        }


class RunStepCreated(RunEvent):
    event: Literal["run.step.created"] = "run.step.created"
    run_id: str
    thread_id: str
    assistant_id: Optional[str] = None
    type: Literal["message_creation", "tool_calls"]
    status: Literal["in_progress", "completed"] = "in_progress"
    step_details: Dict[str, Any]


class ToolCallDelta(BaseModel):
    model_config = ConfigDict(frozen=True)

    index: int
    id: str
    type: str = "function"
    name: Optional[str] = None
    arguments: str = ""
    offset: int = Field(default=0, ge=0, description="Length of the arguments string before this fragment")

    def to_dict(self) -> Dict[str, Any]:
        function: Dict[str, Any] = {"arguments": self.arguments}
        if self.name is not None:
            function["name"] = self.name
        return {"index": self.index, "id": self.id, "type": self.type, "function": function}


class RunStepDelta(RunEvent):
    event: Literal["run.step.delta"] = "run.step.delta"
    run_id: str
    step_id: str
    tool_call: ToolCallDelta


class MessageCreated(RunEvent):
    event: Literal["message.created"] = "message.created"
    thread_id: str
    run_id: str
    assistant_id: Optional[str] = None
    role: Literal["assistant"] = "assistant"


class MessageDelta(RunEvent):
    event: Literal["message.delta"] = "message.delta"
    message_id: str
    value: str
    index: int = 0
    offset: int = Field(default=0, ge=0, description="Length of the message text before this fragment")


class MessageCompleted(RunEvent):
    event: Literal["message.completed"] = "message.completed"
    message_id: str
    text: str
    tool_calls: List[Dict[str, Any]] = Field(default_factory=list)


CanonicalEvent = Annotated[
    Union[
        RunInProgress,
        RunFailed,
        RunCompleted,
        RunRequiresAction,
        RunStepCreated,
        RunStepDelta,
        MessageCreated,
        MessageDelta,
        MessageCompleted,
    ],
    Field(discriminator="event"),
]

_canonical_event_adapter: TypeAdapter[CanonicalEvent] = TypeAdapter(CanonicalEvent)

EVENT_KINDS = frozenset(
    {
        "run.in_progress",
        "run.failed",
        "run.completed",
        "run.requires_action",
        "run.step.created",
        "run.step.delta",
        "message.created",
        "message.delta",
        "message.completed",
    }
)


class UnknownEventError(ValueError):
    def __init__(self, kind: Any) -> None:
        super().__init__(f"Unknown event kind: {kind!r}")
        self.kind = kind


def parse_event(payload: Dict[str, Any]) -> CanonicalEvent:
    """Parse a stored or replayed event payload.

    Raises ``UnknownEventError`` for kinds outside the protocol and
    ``pydantic.ValidationError`` for known kinds with a bad shape.
    """
    kind = payload.get("event")
    if kind not in EVENT_KINDS:
        raise UnknownEventError(kind)
    return _canonical_event_adapter.validate_python(payload)


class EventEnvelope(BaseModel):
    """What the caller receives for each applied event."""

    event: str
    data: Dict[str, Any]

    def to_sse(self) -> ServerSentEvent:
        return ServerSentEvent(data=json.dumps(self.model_dump()), event=self.event)


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
    "ToolCallDelta",
    "UnknownEventError",
    "parse_event",
]
