"""Schema definitions for threads."""

from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field

from sepal_server.schemas.messages import MessageCreateRequest


class ThreadCreateRequest(BaseModel):
    model_config = ConfigDict(extra="ignore")

    messages: List[MessageCreateRequest] = Field(default_factory=list)
    metadata: Dict[str, Any] = Field(default_factory=dict)


class ThreadResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True, populate_by_name=True)

    id: str
    object: str = "thread"
    created_at: int
    metadata: Dict[str, Any] = Field(default_factory=dict, validation_alias="meta")
    tool_resources: Optional[Dict[str, Any]] = None
