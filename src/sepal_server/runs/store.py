"""Database storage for runs."""

import logging
import time
from typing import Any, Dict, List, Optional

from sqlalchemy.ext.asyncio import AsyncSession
from sqlmodel import col, select

from sepal_server.database import insertion_order
from sepal_server.entities.runs import Run
from sepal_server.runs.statuses import RunStatus, RunStepStatus, check_transition
from sepal_server.runs.steps.store import list_run_steps, set_step_status

logger = logging.getLogger(__name__)


async def create_run(
    session: AsyncSession,
    *,
    thread_id: str,
    model: str,
    assistant_id: Optional[str] = None,
    instructions: Optional[str] = None,
    tools: Optional[List[Dict[str, Any]]] = None,
    metadata: Optional[Dict[str, Any]] = None,
    temperature: Optional[float] = None,
    top_p: Optional[float] = None,
    truncation_strategy: Optional[Dict[str, Any]] = None,
    response_format: Optional[Dict[str, Any]] = None,
    expires_after: Optional[int] = None,
) -> Run:
    """Create a new run in the queued state."""
    run = Run(
        thread_id=thread_id,
        assistant_id=assistant_id,
        model=model,
        instructions=instructions,
        tools=tools or [],
        meta=metadata or {},
        temperature=temperature,
        top_p=top_p,
        truncation_strategy=truncation_strategy or {"type": "auto"},
        response_format=response_format,
    )
    if expires_after:
        run.expires_at = run.created_at + expires_after
    session.add(run)
    await session.flush()

    logger.info(f"Created run {run.id} for thread {run.thread_id}")
    return run


async def get_run(session: AsyncSession, run_id: str, thread_id: Optional[str] = None) -> Optional[Run]:
    """Get a run by ID, optionally scoped to a thread."""
    run = await session.get(Run, run_id)
    if run and thread_id is not None and run.thread_id != thread_id:
        return None
    return run


async def list_runs(session: AsyncSession, thread_id: str, limit: int = 20, order: str = "desc") -> List[Run]:
    """List runs for a thread."""
    statement = select(Run).where(col(Run.thread_id) == thread_id)

    if order == "desc":
        statement = statement.order_by(col(Run.created_at).desc(), insertion_order(Run).desc())
    else:
        statement = statement.order_by(col(Run.created_at).asc(), insertion_order(Run).asc())

    statement = statement.limit(limit)
    runs = (await session.execute(statement)).scalars().all()
    return list(runs)


def set_run_status(run: Run, status: str, *, at: Optional[int] = None) -> None:
    """Move a run along the status graph and stamp the matching timestamp."""
    status = RunStatus(status).value
    check_transition(run.id, run.status, status)
    if run.status != status:
        logger.info(f"Run {run.id}: {run.status} -> {status}")
    run.status = status

    current_time = at or int(time.time())
    if status == RunStatus.IN_PROGRESS and not run.started_at:
        run.started_at = current_time
    elif status == RunStatus.COMPLETED and not run.completed_at:
        run.completed_at = current_time
    elif status == RunStatus.FAILED and not run.failed_at:
        run.failed_at = current_time
    elif status == RunStatus.CANCELLED and not run.cancelled_at:
        run.cancelled_at = current_time


async def cancel_run(session: AsyncSession, run_id: str, thread_id: Optional[str] = None) -> Optional[Run]:
    """Cancel a run and any steps it left open.

    Cancelling an already cancelled run is a no-op.
    """
    run = await get_run(session, run_id, thread_id)
    if not run:
        return None
    set_run_status(run, RunStatus.CANCELLED)
    run.required_action = None
    session.add(run)

    for step in await list_run_steps(session, run.id, limit=100):
        if step.status == RunStepStatus.IN_PROGRESS:
            set_step_status(step, RunStepStatus.CANCELLED, at=run.cancelled_at)
            session.add(step)
    await session.flush()
    return run
