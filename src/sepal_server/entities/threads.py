"""Thread database entity."""

import time
import uuid
from typing import Any, Dict

from sqlalchemy import JSON, Index
from sqlmodel import Field, SQLModel


class Thread(SQLModel, table=True):
    """Thread model for database storage."""

    __tablename__: str = "threads"
    id: str = Field(primary_key=True, default_factory=lambda: f"thread_{uuid.uuid4().hex[:16]}")
    object: str = Field(default="thread")
    created_at: int = Field(default_factory=lambda: int(time.time()))
    meta: Dict[str, Any] = Field(default_factory=dict, sa_type=JSON)
    __table_args__ = (Index("idx_threads_created", "created_at"),)
