"""Schema definitions for runs and run steps."""

from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


class TruncationStrategy(BaseModel):
    """How much thread history a run sends to the backend."""

    type: Literal["auto", "last_messages", "disabled"] = "auto"
    last_messages: Optional[int] = Field(default=None, ge=1, description="Number of most recent messages to send")

    @model_validator(mode="after")
    def check_last_messages(self) -> "TruncationStrategy":
        if self.type == "last_messages" and self.last_messages is None:
            raise ValueError("last_messages is required when type is 'last_messages'")
        return self


class FunctionDefinition(BaseModel):
    model_config = ConfigDict(extra="allow")

    name: str
    description: Optional[str] = None
    parameters: Optional[Dict[str, Any]] = None


class FunctionTool(BaseModel):
    type: Literal["function"] = "function"
    function: FunctionDefinition


class RunResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True, populate_by_name=True)

    id: str = Field(description="Unique identifier for the run")
    object: str = Field(default="thread.run", description="Object type")
    created_at: int = Field(description="Unix timestamp when the run was created")
    thread_id: str = Field(description="ID of the thread this run belongs to")
    assistant_id: Optional[str] = Field(default=None, description="ID of the assistant used for this run")
    status: Literal[
        "queued",
        "in_progress",
        "requires_action",
        "cancelled",
        "failed",
        "completed",
    ] = Field(description="Status of the run")
    required_action: Optional[Dict[str, Any]] = Field(default=None, description="Details on action required from user")
    last_error: Optional[Dict[str, Any]] = Field(default=None, description="Last error encountered during run")
    expires_at: Optional[int] = Field(default=None, description="Unix timestamp when the run expires")
    started_at: Optional[int] = Field(default=None, description="Unix timestamp when the run started")
    cancelled_at: Optional[int] = Field(default=None, description="Unix timestamp when the run was cancelled")
    failed_at: Optional[int] = Field(default=None, description="Unix timestamp when the run failed")
    completed_at: Optional[int] = Field(default=None, description="Unix timestamp when the run completed")
    model: str = Field(description="Model used for the run")
    instructions: Optional[str] = Field(default=None, description="Instructions used for the run")
    tools: List[Dict[str, Any]] = Field(default_factory=list, description="Tools used for the run")
    metadata: Dict[str, Any] = Field(
        default_factory=dict, validation_alias="meta", description="Set of key-value pairs for metadata"
    )
    usage: Optional[Dict[str, Any]] = Field(default=None, description="Usage statistics for the run")
    temperature: Optional[float] = Field(default=None, description="Sampling temperature used")
    top_p: Optional[float] = Field(default=None, description="Nucleus sampling parameter used")
    truncation_strategy: Optional[Dict[str, Any]] = Field(default=None, description="Truncation strategy")
    response_format: Optional[Dict[str, Any]] = Field(default=None, description="Response format specification")


class RunStepResponse(BaseModel):
    """Represents a step in a run execution."""

    model_config = ConfigDict(from_attributes=True)

    id: str = Field(description="Unique identifier for the step")
    object: str = Field(default="thread.run.step", description="Object type")
    created_at: int = Field(description="Unix timestamp when the step was created")
    run_id: str = Field(description="ID of the run this step belongs to")
    assistant_id: Optional[str] = Field(default=None, description="ID of the assistant")
    thread_id: str = Field(description="ID of the thread")
    type: Literal["message_creation", "tool_calls"] = Field(description="Type of run step")
    status: str = Field(description="Status of the step: in_progress, completed, failed, cancelled")
    step_details: Dict[str, Any] = Field(description="Details specific to the step type")
    last_error: Optional[Dict[str, Any]] = Field(default=None, description="Last error if failed")
    completed_at: Optional[int] = Field(default=None, description="When the step completed")
    failed_at: Optional[int] = Field(default=None, description="When the step failed")
    cancelled_at: Optional[int] = Field(default=None, description="When the step was cancelled")
    usage: Optional[Dict[str, Any]] = Field(default=None, description="Usage for this step")


class CreateRunRequest(BaseModel):
    assistant_id: Optional[str] = Field(default=None, description="ID of the assistant to use")
    model: str = Field(description="Model passed to the completion backend")
    instructions: Optional[str] = Field(default=None, description="System instructions for the run")
    tools: List[FunctionTool] = Field(default_factory=list, description="Function tools the model may call")
    metadata: Dict[str, Any] = Field(default_factory=dict, description="Set of key-value pairs for metadata")
    temperature: Optional[float] = Field(default=None, ge=0.0, le=2.0, description="Sampling temperature")
    top_p: Optional[float] = Field(default=None, ge=0.0, le=1.0, description="Nucleus sampling parameter")
    truncation_strategy: TruncationStrategy = Field(
        default_factory=TruncationStrategy, description="Truncation strategy"
    )
    response_format: Optional[Dict[str, Any]] = Field(default=None, description="Response format specification")
    stream: Optional[bool] = Field(default=False, description="Whether to stream the response")

    @field_validator("model")
    @classmethod
    def validate_model(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("model cannot be empty")
        return value.strip()


class ToolOutput(BaseModel):
    tool_call_id: str
    output: str = ""


class SubmitToolOutputsRequest(BaseModel):
    tool_outputs: List[ToolOutput]
    stream: Optional[bool] = Field(default=False, description="Whether to stream the response")


class RunListResponse(BaseModel):
    object: str = "list"
    data: List[RunResponse]
    first_id: Optional[str] = None
    last_id: Optional[str] = None
    has_more: bool = False


class RunStepListResponse(BaseModel):
    object: str = "list"
    data: List[RunStepResponse]
    first_id: Optional[str] = None
    last_id: Optional[str] = None
    has_more: bool = False
