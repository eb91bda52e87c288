import json
import logging
from typing import Any, AsyncIterator, Union

from fastapi import APIRouter, Body, Depends, HTTPException, Query
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sse_starlette.event import ServerSentEvent
from sse_starlette.sse import EventSourceResponse

from sepal_server.database import get_session
from sepal_server.dependencies import get_readonly_db_session, get_run_driver, get_session_maker, get_settings
from sepal_server.events.event_types import EventEnvelope
from sepal_server.runs.driver import RunDriver
from sepal_server.runs.errors import RunNotFoundError
from sepal_server.runs.steps.store import get_run_step, list_run_steps
from sepal_server.runs.store import cancel_run, create_run, get_run, list_runs
from sepal_server.runs.tool_outputs import submit_tool_outputs
from sepal_server.schemas.runs import (
    CreateRunRequest,
    RunListResponse,
    RunResponse,
    RunStepListResponse,
    RunStepResponse,
    SubmitToolOutputsRequest,
)
from sepal_server.settings import Settings
from sepal_server.threads.store import get_thread

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/v1/threads/{thread_id}/runs", tags=["runs"])


async def to_sse(run_id: str, envelopes: AsyncIterator[EventEnvelope]) -> AsyncIterator[ServerSentEvent]:
    try:
        async for envelope in envelopes:
            yield envelope.to_sse()
    except Exception as e:
        logger.exception(f"Run {run_id} stream failed")
        yield ServerSentEvent(event="error", data=json.dumps({"detail": str(e)}))
        return
    yield ServerSentEvent(event="done", data="[DONE]")


async def respond(run_id: str, driver: RunDriver, stream: bool) -> Union[RunResponse, EventSourceResponse]:
    if stream:
        return EventSourceResponse(
            to_sse(run_id, driver.stream(run_id)),
            headers={
                "Cache-Control": "no-cache",
                "X-Accel-Buffering": "no",
            },
        )
    run = await driver.run(run_id)
    if run is None:
        raise RunNotFoundError(run_id)
    return RunResponse.model_validate(run)


@router.post("", response_model=None)
async def create(
    thread_id: str,
    request: CreateRunRequest = Body(...),
    session_maker: async_sessionmaker[AsyncSession] = Depends(get_session_maker),
    driver: RunDriver = Depends(get_run_driver),
    settings: Settings = Depends(get_settings),
) -> Union[RunResponse, EventSourceResponse]:
    """Create a run and drive it, streaming events when asked to."""
    async with get_session(session_maker) as session:
        if not await get_thread(session, thread_id):
            raise HTTPException(status_code=404, detail="Thread not found")
        run = await create_run(
            session,
            thread_id=thread_id,
            assistant_id=request.assistant_id,
            model=request.model,
            instructions=request.instructions,
            tools=[tool.model_dump(exclude_none=True) for tool in request.tools],
            metadata=request.metadata,
            temperature=request.temperature,
            top_p=request.top_p,
            truncation_strategy=request.truncation_strategy.model_dump(exclude_none=True),
            response_format=request.response_format,
            expires_after=settings.run_expires_after,
        )

    return await respond(run.id, driver, bool(request.stream))


@router.get("", response_model=RunListResponse)
async def index(
    thread_id: str,
    limit: int = Query(default=20, ge=1, le=100, description="Number of runs to retrieve"),
    order: str = Query(default="desc", pattern="^(asc|desc)$", description="Sort order (asc or desc)"),
    session: AsyncSession = Depends(get_readonly_db_session),
) -> RunListResponse:
    if not await get_thread(session, thread_id):
        raise HTTPException(status_code=404, detail="Thread not found")
    runs = await list_runs(session, thread_id, limit=limit, order=order)
    data = [RunResponse.model_validate(run) for run in runs]
    return RunListResponse(
        data=data,
        first_id=data[0].id if data else None,
        last_id=data[-1].id if data else None,
    )


@router.get("/{run_id}", response_model=RunResponse)
async def get(
    thread_id: str,
    run_id: str,
    session: AsyncSession = Depends(get_readonly_db_session),
) -> RunResponse:
    run = await get_run(session, run_id, thread_id)
    if not run:
        raise HTTPException(status_code=404, detail="Run not found")
    return RunResponse.model_validate(run)


@router.post("/{run_id}/cancel", response_model=RunResponse)
async def cancel(
    thread_id: str,
    run_id: str,
    session_maker: async_sessionmaker[AsyncSession] = Depends(get_session_maker),
) -> RunResponse:
    """Cancel a run. A pass in flight stops before its next event."""
    async with get_session(session_maker) as session:
        run = await cancel_run(session, run_id, thread_id)
        if not run:
            raise HTTPException(status_code=404, detail="Run not found")
    logger.info(f"Cancelled run {run_id}")
    return RunResponse.model_validate(run)


@router.post("/{run_id}/submit_tool_outputs", response_model=None)
async def submit(
    thread_id: str,
    run_id: str,
    request: SubmitToolOutputsRequest = Body(...),
    session_maker: async_sessionmaker[AsyncSession] = Depends(get_session_maker),
    driver: RunDriver = Depends(get_run_driver),
) -> Union[RunResponse, EventSourceResponse]:
    """Resolve a run's pending tool calls and continue it."""
    await submit_tool_outputs(session_maker, run_id, thread_id, request.tool_outputs)
    return await respond(run_id, driver, bool(request.stream))


@router.get("/{run_id}/steps", response_model=RunStepListResponse)
async def list_steps(
    thread_id: str,
    run_id: str,
    limit: int = Query(default=20, ge=1, le=100, description="Number of steps to retrieve"),
    order: str = Query(default="desc", pattern="^(asc|desc)$", description="Sort order (asc or desc)"),
    session: AsyncSession = Depends(get_readonly_db_session),
) -> RunStepListResponse:
    if not await get_run(session, run_id, thread_id):
        raise HTTPException(status_code=404, detail="Run not found")
    steps = await list_run_steps(session, run_id, limit=limit, order=order)
    data = [RunStepResponse.model_validate(step) for step in steps]
    return RunStepListResponse(
        data=data,
        first_id=data[0].id if data else None,
        last_id=data[-1].id if data else None,
    )


@router.get("/{run_id}/steps/{step_id}", response_model=RunStepResponse)
async def get_step(
    thread_id: str,
    run_id: str,
    step_id: str,
    session: AsyncSession = Depends(get_readonly_db_session),
) -> Any:
    if not await get_run(session, run_id, thread_id):
        raise HTTPException(status_code=404, detail="Run not found")
    step = await get_run_step(session, run_id, step_id)
    if not step:
        raise HTTPException(status_code=404, detail="Run step not found")
    return RunStepResponse.model_validate(step)
