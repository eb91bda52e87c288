"""Formatter for run lifecycle events to the Assistants-style wire envelope."""

from typing import Any, Dict

from sepal_server.entities.messages import Message
from sepal_server.entities.run_steps import RunStep
from sepal_server.entities.runs import Run
from sepal_server.events.event_types import (
    CanonicalEvent,
    EventEnvelope,
    MessageDelta,
    RunStepDelta,
)
from sepal_server.schemas.messages import MessageResponse
from sepal_server.schemas.runs import RunResponse, RunStepResponse


class RunsFormatter:
    """Build the caller-visible envelope for an applied event.

    The payload always comes from the persisted record the event produced,
    so what the caller sees matches what a later GET returns. Deltas are the
    exception: they carry only the fragment that was appended.
    """

    def format_event(self, event: CanonicalEvent, record: Any) -> EventEnvelope:
        if isinstance(event, RunStepDelta):
            return EventEnvelope(event=event.event, data=self.step_delta(event))
        if isinstance(event, MessageDelta):
            return EventEnvelope(event=event.event, data=self.message_delta(event))
        if isinstance(record, Run):
            return EventEnvelope(event=event.event, data=self.run(record))
        if isinstance(record, RunStep):
            return EventEnvelope(event=event.event, data=self.step(record))
        if isinstance(record, Message):
            return EventEnvelope(event=event.event, data=self.message(record))
        raise TypeError(f"Cannot format {event.event} from {type(record).__name__}")

    @staticmethod
    def run(run: Run) -> Dict[str, Any]:
        return RunResponse.model_validate(run).model_dump()

    @staticmethod
    def step(step: RunStep) -> Dict[str, Any]:
        return RunStepResponse.model_validate(step).model_dump()

    @staticmethod
    def message(message: Message) -> Dict[str, Any]:
        return MessageResponse.model_validate(message).model_dump()

    @staticmethod
    def step_delta(event: RunStepDelta) -> Dict[str, Any]:
        return {
            "id": event.step_id,
            "object": "thread.run.step.delta",
            "run_id": event.run_id,
            "delta": {
                "step_details": {
                    "type": "tool_calls",
                    "tool_calls": [event.tool_call.to_dict()],
                }
            },
        }

    @staticmethod
    def message_delta(event: MessageDelta) -> Dict[str, Any]:
        return {
            "id": event.message_id,
            "object": "thread.message.delta",
            "delta": {
                "content": [
                    {
                        "index": event.index,
                        "type": "text",
                        "text": {"value": event.value, "annotations": []},
                    }
                ]
            },
        }
