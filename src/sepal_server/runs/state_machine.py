"""Decide the canonical event sequence for one pass of a run.

A pass starts from a queued run and ends in exactly one of ``run.completed``,
``run.requires_action`` or ``run.failed``. Nothing here touches the database:
every event goes through ``on_event``, which applies it and returns the
applied record, so ids allocated by persistence flow back into later events.
"""

import logging
from typing import Any, Awaitable, Callable, Dict, List, Optional

from sepal_server.entities.runs import Run
from sepal_server.events.event_types import (
    CanonicalEvent,
    LastError,
    MessageCompleted,
    MessageCreated,
    MessageDelta,
    RunCompleted,
    RunFailed,
    RunInProgress,
    RunRequiresAction,
    RunStepCreated,
    RunStepDelta,
    ToolCallDelta,
)
from sepal_server.providers.base import ProviderClient, ProviderError, ProviderStatusError
from sepal_server.runs.accumulator import (
    AccumulatorUpdate,
    DeltaAccumulator,
    TextAppended,
    ToolCallArgumentsAppended,
    ToolCallOpened,
)
from sepal_server.runs.applier import AppliedEventResult, MessageApplied, StepApplied
from sepal_server.runs.prompt_builder import PromptBuildError, build_chat_request
from sepal_server.runs.statuses import RunStatus

logger = logging.getLogger(__name__)

OnEvent = Callable[[CanonicalEvent], Awaitable[Optional[AppliedEventResult]]]
GetMessages = Callable[[Run], Awaitable[List[Dict[str, Any]]]]

MAX_ERROR_MESSAGE_LENGTH = 1000


def last_error_for(error: Exception) -> LastError:
    """Normalize a failure into the run's ``last_error``."""
    if isinstance(error, PromptBuildError):
        return LastError(code="invalid_prompt", message=str(error))
    if isinstance(error, ProviderStatusError):
        code = "rate_limit_exceeded" if error.status_code == 429 else "server_error"
        message = f"{error} {error.text}".strip()
        return LastError(code=code, message=message[:MAX_ERROR_MESSAGE_LENGTH])
    return LastError(code="server_error", message=str(error)[:MAX_ERROR_MESSAGE_LENGTH] or type(error).__name__)


class RunPass:
    """One pass of a run: owns its accumulator and the ids it has been handed."""

    def __init__(self, run: Run, on_event: OnEvent) -> None:
        self.run = run
        self.on_event = on_event
        self.accumulator = DeltaAccumulator()
        self.message_id: Optional[str] = None
        self.tool_step_id: Optional[str] = None

    async def fail(self, error: Exception) -> None:
        await self.on_event(RunFailed(run_id=self.run.id, last_error=last_error_for(error)))

    async def open_message(self) -> None:
        applied = await self.on_event(
            MessageCreated(thread_id=self.run.thread_id, run_id=self.run.id, assistant_id=self.run.assistant_id)
        )
        if not isinstance(applied, MessageApplied):
            raise RuntimeError(f"message.created for run {self.run.id} did not produce a message")
        self.message_id = applied.message.id

        await self.on_event(
            RunStepCreated(
                run_id=self.run.id,
                thread_id=self.run.thread_id,
                assistant_id=self.run.assistant_id,
                type="message_creation",
                step_details={"message_creation": {"message_id": self.message_id}},
            )
        )

    async def open_tool_step(self) -> str:
        if self.tool_step_id is None:
            applied = await self.on_event(
                RunStepCreated(
                    run_id=self.run.id,
                    thread_id=self.run.thread_id,
                    assistant_id=self.run.assistant_id,
                    type="tool_calls",
                    step_details={"type": "tool_calls", "tool_calls": []},
                )
            )
            if not isinstance(applied, StepApplied):
                raise RuntimeError(f"run.step.created for run {self.run.id} did not produce a step")
            self.tool_step_id = applied.step.id
        return self.tool_step_id

    def require_message_id(self) -> str:
        if self.message_id is None:
            raise RuntimeError(f"Run {self.run.id} has no open message")
        return self.message_id

    async def emit(self, update: AccumulatorUpdate) -> None:
        if isinstance(update, TextAppended):
            await self.on_event(
                MessageDelta(
                    message_id=self.require_message_id(),
                    value=update.value,
                    index=update.index,
                    offset=update.offset,
                )
            )
        elif isinstance(update, ToolCallOpened):
            step_id = await self.open_tool_step()
            tool_call = update.tool_call
            delta = ToolCallDelta(
                index=tool_call.index,
                id=tool_call.id,
                type=tool_call.type,
                name=tool_call.name,
                arguments=tool_call.arguments,
                offset=0,
            )
            await self.on_event(RunStepDelta(run_id=self.run.id, step_id=step_id, tool_call=delta))
        elif isinstance(update, ToolCallArgumentsAppended):
            step_id = await self.open_tool_step()
            delta = ToolCallDelta(
                index=update.index,
                id=update.id,
                name=update.name,
                arguments=update.arguments,
                offset=update.offset,
            )
            await self.on_event(RunStepDelta(run_id=self.run.id, step_id=step_id, tool_call=delta))
        else:
            raise TypeError(f"Unhandled accumulator update: {type(update).__name__}")

    async def finish(self) -> None:
        message_id = self.require_message_id()
        snapshot = self.accumulator.finalize()
        tool_calls = snapshot.tool_calls_as_dicts()

        await self.on_event(MessageCompleted(message_id=message_id, text=snapshot.text, tool_calls=tool_calls))

        if tool_calls:
            await self.on_event(RunRequiresAction(run_id=self.run.id, tool_calls=tool_calls))
        else:
            await self.on_event(RunCompleted(run_id=self.run.id))


async def handle_run(
    run: Run,
    on_event: OnEvent,
    get_messages: GetMessages,
    provider: ProviderClient,
    *,
    stream: bool = True,
) -> None:
    """Drive one pass of ``run`` against ``provider``.

    Backend failures end the pass with ``run.failed``. Errors raised by
    ``on_event`` propagate unchanged, so a persistence failure aborts the pass
    without emitting anything further.
    """
    if run.status != RunStatus.QUEUED:
        logger.info(f"Run {run.id} is '{run.status}', not queued; skipping")
        return

    run_pass = RunPass(run, on_event)
    await on_event(RunInProgress(run_id=run.id))

    try:
        history = await get_messages(run)
        request = build_chat_request(run, history, stream=stream)
    except PromptBuildError as e:
        logger.warning(f"Run {run.id}: could not build request: {e}")
        await run_pass.fail(e)
        return

    try:
        fragments = await provider.create(request)
    except ProviderError as e:
        logger.exception(f"Run {run.id}: backend request failed")
        await run_pass.fail(e)
        return

    try:
        await run_pass.open_message()
        async for fragment in fragments:
            for update in run_pass.accumulator.feed(fragment):
                await run_pass.emit(update)
    except ProviderError as e:
        logger.exception(f"Run {run.id}: backend stream failed")
        await run_pass.fail(e)
        return
    finally:
        await fragments.aclose()

    await run_pass.finish()
