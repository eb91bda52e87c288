"""Message database entity."""

import time
import uuid
from typing import Any, Dict, List, Optional

from sqlalchemy import JSON, Index
from sqlmodel import Field, SQLModel


class Message(SQLModel, table=True):
    """Message model for database storage."""

    __tablename__ = "messages"

    id: str = Field(primary_key=True, default_factory=lambda: f"msg_{uuid.uuid4().hex[:24]}")
    object: str = Field(default="thread.message")
    created_at: int = Field(default_factory=lambda: int(time.time()))
    thread_id: str = Field(foreign_key="threads.id")
    role: str
    content: List[Dict[str, Any]] = Field(default_factory=list, sa_type=JSON)
    assistant_id: Optional[str] = None
    run_id: Optional[str] = None
    attachments: List[Dict[str, Any]] = Field(default_factory=list, sa_type=JSON)
    meta: Dict[str, Any] = Field(default_factory=dict, sa_type=JSON)
    status: str = Field(default="completed")  # in_progress, completed, incomplete
    incomplete_details: Optional[Dict[str, Any]] = Field(default=None, sa_type=JSON)
    incomplete_at: Optional[int] = None
    completed_at: Optional[int] = None

    __table_args__ = (
        Index("idx_messages_thread", "thread_id"),
        Index("idx_messages_run", "run_id"),
        Index("idx_messages_created", "created_at"),
    )

    @property
    def text(self) -> str:
        """Concatenated value of the text content blocks."""
        return "\n".join(block["text"]["value"] for block in self.content if block.get("type") == "text")

    @property
    def tool_calls(self) -> List[Dict[str, Any]]:
        return list(self.meta.get("tool_calls") or [])
