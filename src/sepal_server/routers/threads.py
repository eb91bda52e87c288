import logging
from typing import Optional

from fastapi import APIRouter, Body, Depends, HTTPException
from sqlalchemy.ext.asyncio import AsyncSession

from sepal_server.dependencies import get_db_session, get_readonly_db_session
from sepal_server.entities.messages import Message
from sepal_server.messages.store import create_message
from sepal_server.schemas.threads import ThreadCreateRequest, ThreadResponse
from sepal_server.threads.store import create_thread, get_thread

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/v1/threads", tags=["threads"])


@router.post("", response_model=ThreadResponse)
async def create(
    request: Optional[ThreadCreateRequest] = Body(default=None),
    session: AsyncSession = Depends(get_db_session),
) -> ThreadResponse:
    """Create a new conversation thread, optionally seeded with messages."""
    request = request or ThreadCreateRequest()
    thread = await create_thread(session, request.metadata)
    for message in request.messages:
        await create_message(
            session,
            Message(
                thread_id=thread.id,
                role=message.role,
                content=message.content_blocks(),
                meta=message.metadata,
                completed_at=thread.created_at,
            ),
        )
    return ThreadResponse.model_validate(thread)


@router.get("/{thread_id}", response_model=ThreadResponse)
async def get(
    thread_id: str,
    session: AsyncSession = Depends(get_readonly_db_session),
) -> ThreadResponse:
    thread = await get_thread(session, thread_id)
    if not thread:
        raise HTTPException(status_code=404, detail="Thread not found")
    return ThreadResponse.model_validate(thread)
