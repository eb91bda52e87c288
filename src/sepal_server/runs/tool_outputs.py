"""Tool output submission for runs waiting on the caller."""

import copy
import logging
from collections import Counter
from typing import Iterable, List, Tuple

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from sepal_server.database import get_session
from sepal_server.entities.run_steps import RunStep
from sepal_server.entities.runs import Run
from sepal_server.runs.errors import (
    DuplicateToolOutputError,
    MissingToolOutputsError,
    RunNotAwaitingToolOutputsError,
    RunNotFoundError,
    UnknownToolCallError,
)
from sepal_server.runs.statuses import RunStatus, RunStepStatus
from sepal_server.runs.steps.store import get_in_progress_tool_step, set_step_status
from sepal_server.runs.store import get_run, set_run_status
from sepal_server.schemas.runs import ToolOutput

logger = logging.getLogger(__name__)


async def _pending_tool_step(session: AsyncSession, run_id: str, thread_id: str) -> Tuple[Run, RunStep]:
    run = await get_run(session, run_id, thread_id)
    if run is None:
        raise RunNotFoundError(run_id)
    if run.status != RunStatus.REQUIRES_ACTION:
        raise RunNotAwaitingToolOutputsError(run_id, run.status)

    step = await get_in_progress_tool_step(session, run_id)
    if step is None:
        raise RunNotAwaitingToolOutputsError(run_id, run.status)
    return run, step


def check_tool_outputs(run_id: str, pending_ids: Iterable[str], tool_outputs: List[ToolOutput]) -> None:
    """Every pending tool call gets exactly one output and nothing else does."""
    pending = set(pending_ids)
    counts = Counter(output.tool_call_id for output in tool_outputs)

    duplicates = {tool_call_id for tool_call_id, count in counts.items() if count > 1}
    if duplicates:
        raise DuplicateToolOutputError(run_id, duplicates)

    unknown = set(counts) - pending
    if unknown:
        raise UnknownToolCallError(run_id, unknown)

    missing = pending - set(counts)
    if missing:
        raise MissingToolOutputsError(run_id, missing)


async def submit_tool_outputs(
    session_maker: async_sessionmaker[AsyncSession],
    run_id: str,
    thread_id: str,
    tool_outputs: List[ToolOutput],
) -> Run:
    """Attach outputs to the pending tool calls and put the run back in the queue.

    Validation happens before anything is written; the write itself is one
    transaction covering the step and the run.
    """
    async with get_session(session_maker) as session:
        run, step = await _pending_tool_step(session, run_id, thread_id)
        tool_calls = copy.deepcopy(step.step_details.get("tool_calls", []))
        check_tool_outputs(run_id, (tool_call["id"] for tool_call in tool_calls), tool_outputs)

        outputs = {output.tool_call_id: output.output for output in tool_outputs}
        for tool_call in tool_calls:
            tool_call.setdefault("function", {})["output"] = outputs[tool_call["id"]]

        step.step_details = {**step.step_details, "tool_calls": tool_calls}
        set_step_status(step, RunStepStatus.COMPLETED)
        session.add(step)

        run.required_action = None
        set_run_status(run, RunStatus.QUEUED)
        session.add(run)

    logger.info(f"Run {run_id} received {len(tool_outputs)} tool outputs, requeued")
    return run
