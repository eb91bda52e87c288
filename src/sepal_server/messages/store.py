"""Database storage for thread messages."""

import logging
from typing import Any, Dict, List, Optional

from sqlalchemy.ext.asyncio import AsyncSession
from sqlmodel import col, select

from sepal_server.database import insertion_order
from sepal_server.entities.messages import Message

logger = logging.getLogger(__name__)


def text_content(value: str) -> List[Dict[str, Any]]:
    return [{"type": "text", "text": {"value": value, "annotations": []}}]


async def create_message(session: AsyncSession, message: Message) -> Message:
    """Create a new message in a thread."""
    session.add(message)
    await session.flush()
    return message


async def get_message(session: AsyncSession, thread_id: str, message_id: str) -> Optional[Message]:
    message = await session.get(Message, message_id)
    if message and message.thread_id == thread_id:
        return message
    return None


async def list_messages(
    session: AsyncSession,
    thread_id: str,
    limit: Optional[int] = None,
    order: str = "asc",
) -> List[Message]:
    """List messages for a thread in insertion order."""
    statement = select(Message).where(col(Message.thread_id) == thread_id)
    if order == "desc":
        statement = statement.order_by(col(Message.created_at).desc(), insertion_order(Message).desc())
    else:
        statement = statement.order_by(col(Message.created_at), insertion_order(Message))
    if limit is not None:
        statement = statement.limit(limit)
    messages = (await session.execute(statement)).scalars().all()
    return list(messages)


async def get_in_progress_assistant_message(session: AsyncSession, run_id: str) -> Optional[Message]:
    statement = (
        select(Message)
        .where(col(Message.run_id) == run_id)
        .where(col(Message.role) == "assistant")
        .where(col(Message.status) == "in_progress")
        .order_by(insertion_order(Message).desc())
        .limit(1)
    )
    return (await session.execute(statement)).scalar_one_or_none()


async def get_latest_assistant_message(session: AsyncSession, run_id: str) -> Optional[Message]:
    statement = (
        select(Message)
        .where(col(Message.run_id) == run_id)
        .where(col(Message.role) == "assistant")
        .order_by(insertion_order(Message).desc())
        .limit(1)
    )
    return (await session.execute(statement)).scalar_one_or_none()
