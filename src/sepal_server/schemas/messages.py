"""Schema definitions for thread messages."""

from typing import Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator


class MessageCreateRequest(BaseModel):
    role: Literal["user", "assistant"] = "user"
    content: Union[str, List[Dict[str, Any]]]
    metadata: Dict[str, Any] = Field(default_factory=dict)

    @field_validator("content")
    @classmethod
    def validate_content(cls, value: Union[str, List[Dict[str, Any]]]) -> Union[str, List[Dict[str, Any]]]:
        if isinstance(value, list):
            for block in value:
                if block.get("type") != "text":
                    raise ValueError("Only text content blocks are supported")
        return value

    def content_blocks(self) -> List[Dict[str, Any]]:
        if isinstance(self.content, str):
            return [{"type": "text", "text": {"value": self.content, "annotations": []}}]
        return [
            {
                "type": "text",
                "text": {
                    "value": block.get("text", {}).get("value", "")
                    if isinstance(block.get("text"), dict)
                    else str(block.get("text", "")),
                    "annotations": [],
                },
            }
            for block in self.content
        ]


class MessageResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True, populate_by_name=True)

    id: str
    object: str = "thread.message"
    created_at: int
    thread_id: str
    role: str
    content: List[Dict[str, Any]] = Field(default_factory=list)
    assistant_id: Optional[str] = None
    run_id: Optional[str] = None
    attachments: List[Dict[str, Any]] = Field(default_factory=list)
    metadata: Dict[str, Any] = Field(default_factory=dict, validation_alias="meta")
    status: str = "completed"
    incomplete_details: Optional[Dict[str, Any]] = None
    incomplete_at: Optional[int] = None
    completed_at: Optional[int] = None
    tool_calls: List[Dict[str, Any]] = Field(default_factory=list)


class MessageListResponse(BaseModel):
    object: str = "list"
    data: List[MessageResponse]
    first_id: Optional[str] = None
    last_id: Optional[str] = None
    has_more: bool = False
