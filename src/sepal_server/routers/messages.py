import logging

from fastapi import APIRouter, Body, Depends, HTTPException, Query
from sqlalchemy.ext.asyncio import AsyncSession

from sepal_server.database import current_timestamp
from sepal_server.dependencies import get_db_session, get_readonly_db_session
from sepal_server.entities.messages import Message
from sepal_server.messages.store import create_message, get_message, list_messages
from sepal_server.schemas.messages import MessageCreateRequest, MessageListResponse, MessageResponse
from sepal_server.threads.store import get_thread

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/v1/threads/{thread_id}/messages", tags=["messages"])


@router.post("", response_model=MessageResponse)
async def create(
    thread_id: str,
    request: MessageCreateRequest = Body(...),
    session: AsyncSession = Depends(get_db_session),
) -> MessageResponse:
    """Append a message to a thread."""
    if not await get_thread(session, thread_id):
        raise HTTPException(status_code=404, detail="Thread not found")

    message = await create_message(
        session,
        Message(
            thread_id=thread_id,
            role=request.role,
            content=request.content_blocks(),
            meta=request.metadata,
            completed_at=current_timestamp(),
        ),
    )
    return MessageResponse.model_validate(message)


@router.get("", response_model=MessageListResponse)
async def index(
    thread_id: str,
    limit: int = Query(default=20, ge=1, le=100, description="Number of messages to retrieve"),
    order: str = Query(default="desc", pattern="^(asc|desc)$", description="Sort order (asc or desc)"),
    session: AsyncSession = Depends(get_readonly_db_session),
) -> MessageListResponse:
    if not await get_thread(session, thread_id):
        raise HTTPException(status_code=404, detail="Thread not found")

    messages = await list_messages(session, thread_id, limit=limit, order=order)
    data = [MessageResponse.model_validate(message) for message in messages]
    return MessageListResponse(
        data=data,
        first_id=data[0].id if data else None,
        last_id=data[-1].id if data else None,
    )


@router.get("/{message_id}", response_model=MessageResponse)
async def get(
    thread_id: str,
    message_id: str,
    session: AsyncSession = Depends(get_readonly_db_session),
) -> MessageResponse:
    message = await get_message(session, thread_id, message_id)
    if not message:
        raise HTTPException(status_code=404, detail="Message not found")
    return MessageResponse.model_validate(message)
