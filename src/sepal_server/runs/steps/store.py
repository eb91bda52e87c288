"""Database storage for run steps."""

import logging
import time
from typing import Any, Dict, List, Optional

from sqlalchemy.ext.asyncio import AsyncSession
from sqlmodel import col, select

from sepal_server.database import insertion_order
from sepal_server.entities.run_steps import RunStep
from sepal_server.runs.statuses import RunStepStatus, RunStepType

logger = logging.getLogger(__name__)


async def create_run_step(session: AsyncSession, step: RunStep) -> RunStep:
    """Create a new run step."""
    session.add(step)
    await session.flush()
    return step


async def get_run_step(session: AsyncSession, run_id: str, step_id: str) -> Optional[RunStep]:
    """Get a specific run step."""
    step = await session.get(RunStep, step_id)
    if step and step.run_id == run_id:
        return step
    return None


async def list_run_steps(session: AsyncSession, run_id: str, limit: int = 20, order: str = "desc") -> List[RunStep]:
    """List steps for a run."""
    statement = select(RunStep).where(col(RunStep.run_id) == run_id)

    if order == "desc":
        statement = statement.order_by(col(RunStep.created_at).desc(), insertion_order(RunStep).desc())
    else:
        statement = statement.order_by(col(RunStep.created_at).asc(), insertion_order(RunStep).asc())

    statement = statement.limit(limit)
    steps = (await session.execute(statement)).scalars().all()
    return list(steps)


async def get_in_progress_tool_step(session: AsyncSession, run_id: str) -> Optional[RunStep]:
    """The run's open tool_calls step, if any."""
    statement = (
        select(RunStep)
        .where(col(RunStep.run_id) == run_id)
        .where(col(RunStep.type) == RunStepType.TOOL_CALLS.value)
        .where(col(RunStep.status) == RunStepStatus.IN_PROGRESS.value)
        .order_by(col(RunStep.created_at).desc(), insertion_order(RunStep).desc())
        .limit(1)
    )
    return (await session.execute(statement)).scalar_one_or_none()



async def get_message_creation_step(session: AsyncSession, run_id: str, message_id: str) -> Optional[RunStep]:
    statement = (
        select(RunStep)
        .where(col(RunStep.run_id) == run_id)
        .where(col(RunStep.type) == RunStepType.MESSAGE_CREATION.value)
        .order_by(insertion_order(RunStep).desc())
    )
    for step in (await session.execute(statement)).scalars():
        if step.step_details.get("message_creation", {}).get("message_id") == message_id:
            return step
    return None


async def list_tool_steps_for_thread(session: AsyncSession, thread_id: str) -> List[RunStep]:
    """All tool_calls steps of a thread, oldest first."""
    statement = (
        select(RunStep)
        .where(col(RunStep.thread_id) == thread_id)
        .where(col(RunStep.type) == RunStepType.TOOL_CALLS.value)
        .order_by(col(RunStep.created_at).asc(), insertion_order(RunStep).asc())
    )
    return list((await session.execute(statement)).scalars().all())


def set_step_status(step: RunStep, status: str, *, at: Optional[int] = None) -> None:
    status = RunStepStatus(status).value
    step.status = status
    current_time = at or int(time.time())
    if status == RunStepStatus.COMPLETED and not step.completed_at:
        step.completed_at = current_time
    elif status == RunStepStatus.FAILED and not step.failed_at:
        step.failed_at = current_time
    elif status == RunStepStatus.CANCELLED and not step.cancelled_at:
        step.cancelled_at = current_time

