"""Apply canonical run events to persisted state.

Each event is applied in its own transaction and every handler is safe to
replay: applying an event twice leaves the same rows behind as applying it
once. The applied record is returned so callers can build the wire payload
only after the write has committed.
"""

import copy
import logging
import time
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Set, Union

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from sepal_server.database import get_session
from sepal_server.entities.messages import Message
from sepal_server.entities.run_steps import RunStep
from sepal_server.entities.runs import Run
from sepal_server.events.event_types import (
    CanonicalEvent,
    MessageCompleted,
    MessageCreated,
    MessageDelta,
    RunCompleted,
    RunFailed,
    RunInProgress,
    RunRequiresAction,
    RunStepCreated,
    RunStepDelta,
    UnknownEventError,
    parse_event,
)
from sepal_server.messages.store import (
    create_message,
    get_in_progress_assistant_message,
    get_latest_assistant_message,
    text_content,
)
from sepal_server.runs.errors import RecordNotFoundError, RunNotFoundError
from sepal_server.runs.statuses import MessageStatus, RunStatus, RunStepStatus, RunStepType
from sepal_server.runs.steps.store import (
    create_run_step,
    get_in_progress_tool_step,
    get_message_creation_step,
    get_run_step,
    list_run_steps,
    set_step_status,
)
from sepal_server.runs.store import set_run_status

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RunApplied:
    run: Run


@dataclass(frozen=True)
class MessageApplied:
    message: Message


@dataclass(frozen=True)
class StepApplied:
    step: RunStep


AppliedEventResult = Union[RunApplied, MessageApplied, StepApplied]


def merge_tool_calls(existing: List[Dict[str, Any]], finalized: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    """Finalized tool calls, keeping any outputs already attached by id."""
    outputs = {
        tool_call["id"]: tool_call["function"]["output"]
        for tool_call in existing
        if "output" in tool_call.get("function", {})
    }
    merged = []
    for tool_call in finalized:
        tool_call = copy.deepcopy(tool_call)
        if tool_call["id"] in outputs:
            tool_call.setdefault("function", {})["output"] = outputs[tool_call["id"]]
        merged.append(tool_call)
    return merged


class EventApplier:
    def __init__(self, session_maker: async_sessionmaker[AsyncSession]) -> None:
        self._session_maker = session_maker

    async def apply_payload(self, payload: Dict[str, Any]) -> Optional[AppliedEventResult]:
        """Apply a raw event payload. Unknown kinds are logged and skipped."""
        try:
            event = parse_event(payload)
        except UnknownEventError as e:
            logger.warning(f"Ignoring event: {e}")
            return None
        return await self.apply(event)

    async def apply(self, event: CanonicalEvent) -> Optional[AppliedEventResult]:
        """Apply one event in one transaction.

        Returns None when the event was ignored, for example a delta aimed at
        a step that is no longer in progress.
        """
        async with get_session(self._session_maker) as session:
            if isinstance(event, RunInProgress):
                return await self._run_in_progress(session, event)
            if isinstance(event, RunFailed):
                return await self._run_failed(session, event)
            if isinstance(event, RunCompleted):
                return await self._run_completed(session, event)
            if isinstance(event, RunRequiresAction):
                return await self._run_requires_action(session, event)
            if isinstance(event, RunStepCreated):
                return await self._step_created(session, event)
            if isinstance(event, RunStepDelta):
                return await self._step_delta(session, event)
            if isinstance(event, MessageCreated):
                return await self._message_created(session, event)
            if isinstance(event, MessageDelta):
                return await self._message_delta(session, event)
            if isinstance(event, MessageCompleted):
                return await self._message_completed(session, event)
        raise TypeError(f"Unhandled event type: {type(event).__name__}")

    async def _get_run(self, session: AsyncSession, run_id: str) -> Run:
        run = await session.get(Run, run_id)
        if run is None:
            raise RunNotFoundError(run_id)
        return run

    async def _run_in_progress(self, session: AsyncSession, event: RunInProgress) -> RunApplied:
        run = await self._get_run(session, event.run_id)
        set_run_status(run, RunStatus.IN_PROGRESS)
        session.add(run)
        return RunApplied(run)

    async def _run_failed(self, session: AsyncSession, event: RunFailed) -> RunApplied:
        run = await self._get_run(session, event.run_id)
        if run.status == RunStatus.FAILED:
            return RunApplied(run)

        set_run_status(run, RunStatus.FAILED, at=event.failed_at)
        run.last_error = event.last_error.model_dump()
        run.required_action = None
        session.add(run)

        for step in await list_run_steps(session, run.id, limit=100):
            if step.status == RunStepStatus.IN_PROGRESS:
                set_step_status(step, RunStepStatus.FAILED, at=event.failed_at)
                step.last_error = event.last_error.model_dump()
                session.add(step)

        message = await get_in_progress_assistant_message(session, run.id)
        if message is not None:
            message.status = MessageStatus.INCOMPLETE.value
            message.incomplete_at = event.failed_at
            message.incomplete_details = {"reason": "run_failed"}
            session.add(message)

        return RunApplied(run)

    async def _run_completed(self, session: AsyncSession, event: RunCompleted) -> RunApplied:
        run = await self._get_run(session, event.run_id)
        set_run_status(run, RunStatus.COMPLETED, at=event.completed_at)
        session.add(run)
        return RunApplied(run)

    async def _run_requires_action(self, session: AsyncSession, event: RunRequiresAction) -> RunApplied:
        run = await self._get_run(session, event.run_id)
        set_run_status(run, RunStatus.REQUIRES_ACTION)
        run.required_action = event.required_action
        session.add(run)
        return RunApplied(run)

    async def _step_created(self, session: AsyncSession, event: RunStepCreated) -> StepApplied:
        run = await self._get_run(session, event.run_id)

        if event.type == RunStepType.TOOL_CALLS:
            existing = await get_in_progress_tool_step(session, run.id)
            if existing is not None:
                return StepApplied(existing)
            step_details = {"type": "tool_calls", "tool_calls": [], **event.step_details}
        else:
            message_id = event.step_details.get("message_creation", {}).get("message_id")
            if message_id is None:
                raise ValueError("message_creation step requires a message_id")
            existing = await get_message_creation_step(session, run.id, message_id)
            if existing is not None:
                return StepApplied(existing)
            step_details = {"type": "message_creation", "message_creation": {"message_id": message_id}}

        step = RunStep(
            run_id=run.id,
            thread_id=event.thread_id,
            assistant_id=event.assistant_id,
            type=event.type,
            step_details=step_details,
        )
        set_step_status(step, event.status)
        await create_run_step(session, step)
        logger.debug(f"Created {step.type} step {step.id} for run {run.id}")
        return StepApplied(step)

    async def _step_delta(self, session: AsyncSession, event: RunStepDelta) -> Optional[StepApplied]:
        step = await get_run_step(session, event.run_id, event.step_id)
        if step is None:
            raise RecordNotFoundError(f"Step {event.step_id} not found for run {event.run_id}")
        if step.status != RunStepStatus.IN_PROGRESS:
            logger.warning(f"Ignoring delta for step {step.id} with status '{step.status}'")
            return None

        delta = event.tool_call
        tool_calls = copy.deepcopy(step.step_details.get("tool_calls", []))
        tool_call = next((tc for tc in tool_calls if tc["id"] == delta.id), None)
        if tool_call is None:
            tool_call = {
                "id": delta.id,
                "index": delta.index,
                "type": delta.type,
                "function": {"name": "", "arguments": ""},
            }
            tool_calls.append(tool_call)

        function = tool_call["function"]
        if delta.name and not function.get("name"):
            function["name"] = delta.name
        arguments = function.get("arguments", "")
        if len(arguments) < delta.offset:
            logger.warning(
                f"Delta for tool call {delta.id} starts at {delta.offset} but only {len(arguments)} chars are stored"
            )
        function["arguments"] = arguments[: delta.offset] + delta.arguments

        step.step_details = {**step.step_details, "tool_calls": tool_calls}
        session.add(step)
        return StepApplied(step)

    async def _resolved_tool_call_ids(self, session: AsyncSession, run_id: str) -> Set[str]:
        resolved: Set[str] = set()
        for step in await list_run_steps(session, run_id, limit=100):
            if step.type != RunStepType.TOOL_CALLS or step.status != RunStepStatus.COMPLETED:
                continue
            for tool_call in step.step_details.get("tool_calls", []):
                if "output" in tool_call.get("function", {}):
                    resolved.add(tool_call["id"])
        return resolved

    async def _message_created(self, session: AsyncSession, event: MessageCreated) -> MessageApplied:
        # The latest assistant message belongs to the current pass unless its
        # tool calls have since been resolved, which is what starts a new pass.
        existing = await get_latest_assistant_message(session, event.run_id)
        if existing is not None:
            pending = {tool_call["id"] for tool_call in existing.tool_calls}
            if existing.status != MessageStatus.COMPLETED or not pending:
                return MessageApplied(existing)
            if not pending <= await self._resolved_tool_call_ids(session, event.run_id):
                return MessageApplied(existing)

        message = Message(
            thread_id=event.thread_id,
            run_id=event.run_id,
            assistant_id=event.assistant_id,
            role=event.role,
            content=[],
            status=MessageStatus.IN_PROGRESS.value,
        )
        await create_message(session, message)
        logger.debug(f"Created message {message.id} for run {event.run_id}")
        return MessageApplied(message)

    async def _get_message(self, session: AsyncSession, message_id: str) -> Message:
        message = await session.get(Message, message_id)
        if message is None:
            raise RecordNotFoundError(f"Message {message_id} not found")
        return message

    async def _message_delta(self, session: AsyncSession, event: MessageDelta) -> Optional[MessageApplied]:
        message = await self._get_message(session, event.message_id)
        if message.status != MessageStatus.IN_PROGRESS:
            logger.warning(f"Ignoring delta for message {message.id} with status '{message.status}'")
            return None

        content = copy.deepcopy(message.content)
        while len(content) <= event.index:
            content.extend(text_content(""))
        text = content[event.index]["text"]
        text["value"] = text["value"][: event.offset] + event.value

        message.content = content
        session.add(message)
        return MessageApplied(message)

    async def _message_completed(self, session: AsyncSession, event: MessageCompleted) -> MessageApplied:
        message = await self._get_message(session, event.message_id)
        if message.status != MessageStatus.IN_PROGRESS:
            logger.debug(f"Message {message.id} is already '{message.status}', not completing again")
            return MessageApplied(message)
        completed_at = int(time.time())

        message.content = text_content(event.text)
        message.meta = {**message.meta, "tool_calls": event.tool_calls}
        message.status = MessageStatus.COMPLETED.value
        if not message.completed_at:
            message.completed_at = completed_at
        session.add(message)

        if event.tool_calls and message.run_id:
            tool_step = await get_in_progress_tool_step(session, message.run_id)
            if tool_step is not None:
                tool_calls = merge_tool_calls(tool_step.step_details.get("tool_calls", []), event.tool_calls)
                tool_step.step_details = {**tool_step.step_details, "tool_calls": tool_calls}
                session.add(tool_step)

        if message.run_id:
            creation_step = await get_message_creation_step(session, message.run_id, message.id)
            if creation_step is not None and creation_step.status == RunStepStatus.IN_PROGRESS:
                set_step_status(creation_step, RunStepStatus.COMPLETED, at=completed_at)
                session.add(creation_step)

        return MessageApplied(message)
