"""Database storage for threads."""

import logging
from typing import Any, Dict, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from sepal_server.entities.threads import Thread

logger = logging.getLogger(__name__)


async def create_thread(session: AsyncSession, metadata: Optional[Dict[str, Any]] = None) -> Thread:
    """Create a new thread."""
    thread = Thread(meta=metadata or {})
    session.add(thread)
    await session.flush()
    logger.info(f"Created thread {thread.id}")
    return thread


async def get_thread(session: AsyncSession, thread_id: str) -> Optional[Thread]:
    return await session.get(Thread, thread_id)
