"""Client for OpenAI-compatible chat completion backends."""

import json
import logging
from typing import Any, Dict, List, Optional, Tuple

import httpx
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from sepal_server.providers.base import (
    FragmentStream,
    ProviderInvalidResponseError,
    ProviderMissingChoicesError,
    ProviderStatusError,
    ProviderUnavailableError,
)
from sepal_server.runs.accumulator import Fragment, ToolCallFragment

logger = logging.getLogger(__name__)

DONE = "[DONE]"


class FunctionChunk(BaseModel):
    model_config = ConfigDict(extra="ignore")

    name: Optional[str] = None
    arguments: Optional[str] = None


class ToolCallChunk(BaseModel):
    model_config = ConfigDict(extra="ignore")

    index: Optional[int] = None
    id: Optional[str] = None
    type: Optional[str] = None
    function: Optional[FunctionChunk] = None


class ChunkDelta(BaseModel):
    model_config = ConfigDict(extra="ignore")

    content: Optional[str] = None
    tool_calls: List[ToolCallChunk] = Field(default_factory=list)

    @field_validator("tool_calls", mode="before")
    @classmethod
    def none_as_empty(cls, value: Any) -> Any:
        return [] if value is None else value


class ChunkChoice(BaseModel):
    model_config = ConfigDict(extra="ignore")

    index: int = 0
    delta: ChunkDelta = Field(default_factory=ChunkDelta)
    finish_reason: Any = None


class CompletionChunk(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: Optional[str] = None
    choices: List[ChunkChoice] = Field(default_factory=list)

    @field_validator("choices", mode="before")
    @classmethod
    def none_as_empty(cls, value: Any) -> Any:
        return [] if value is None else value


class CompletionMessage(BaseModel):
    model_config = ConfigDict(extra="ignore")

    content: Optional[str] = None
    tool_calls: List[ToolCallChunk] = Field(default_factory=list)

    @field_validator("tool_calls", mode="before")
    @classmethod
    def none_as_empty(cls, value: Any) -> Any:
        return [] if value is None else value


class CompletionChoice(BaseModel):
    model_config = ConfigDict(extra="ignore")

    index: int = 0
    message: CompletionMessage
    finish_reason: Any = None


class CompletionResponse(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: Optional[str] = None
    choices: List[CompletionChoice] = Field(default_factory=list)
    model: Optional[str] = None
    usage: Optional[Dict[str, Any]] = None


def to_tool_call_fragments(tool_calls: List[ToolCallChunk]) -> Tuple[ToolCallFragment, ...]:
    fragments = []
    for position, tool_call in enumerate(tool_calls):
        function = tool_call.function or FunctionChunk()
        fragments.append(
            ToolCallFragment(
                index=tool_call.index if tool_call.index is not None else position,
                id=tool_call.id,
                type=tool_call.type,
                name=function.name,
                arguments=function.arguments,
            )
        )
    return tuple(fragments)


def parse_chunk(data: str) -> Optional[Fragment]:
    """Turn one SSE ``data:`` payload into a fragment, or None if it carries nothing."""
    try:
        payload = json.loads(data)
    except ValueError as e:
        raise ProviderInvalidResponseError(f"Invalid JSON in stream: {data[:200]}") from e

    if not isinstance(payload, dict):
        raise ProviderInvalidResponseError("Expected object JSON chunk")
    if "error" in payload:
        error = payload["error"]
        message = error.get("message") if isinstance(error, dict) else str(error)
        raise ProviderInvalidResponseError(f"Backend reported an error: {message}")

    try:
        chunk = CompletionChunk.model_validate(payload)
    except ValidationError as e:
        raise ProviderInvalidResponseError("Invalid completion chunk shape") from e

    if not chunk.choices:
        return None

    choice = chunk.choices[0]
    fragment = Fragment(
        index=choice.index,
        text=choice.delta.content or None,
        tool_calls=to_tool_call_fragments(choice.delta.tool_calls),
    )
    if fragment.text is None and not fragment.tool_calls:
        return None
    return fragment


def parse_completion(data: Dict[str, Any]) -> Fragment:
    """A whole completion is a single fragment carrying everything."""
    try:
        completion = CompletionResponse.model_validate(data)
    except ValidationError as e:
        raise ProviderInvalidResponseError("Invalid completion response shape") from e

    if not completion.choices:
        raise ProviderMissingChoicesError("Completion missing choices")

    choice = completion.choices[0]
    return Fragment(
        index=choice.index,
        text=choice.message.content or None,
        tool_calls=to_tool_call_fragments(choice.message.tool_calls),
    )


class ChatCompletionsClient:
    """Talks to ``{base_url}/chat/completions`` with a shared httpx client."""

    def __init__(self, client: httpx.AsyncClient) -> None:
        self._client = client

    async def create(self, request: Dict[str, Any]) -> FragmentStream:
        stream = bool(request.get("stream"))
        http_request = self._client.build_request("POST", "chat/completions", json=request)
        try:
            response = await self._client.send(http_request, stream=True)
        except httpx.RequestError as e:
            raise ProviderUnavailableError(str(e)) from e

        if response.status_code >= 400:
            try:
                await response.aread()
                text = response.text
            except httpx.HTTPError as e:
                logger.warning(f"Could not read error body for HTTP {response.status_code}: {e}")
                text = ""
            finally:
                await response.aclose()
            raise ProviderStatusError(response.status_code, text)

        if not stream:
            try:
                await response.aread()
            except httpx.HTTPError as e:
                raise ProviderUnavailableError(str(e)) from e
            finally:
                await response.aclose()
            try:
                data = response.json()
            except ValueError as e:
                raise ProviderInvalidResponseError(f"Invalid JSON response: {response.text[:200]}") from e
            if not isinstance(data, dict):
                raise ProviderInvalidResponseError("Expected object JSON response")
            return self._single(parse_completion(data))

        return self._stream(response)

    @staticmethod
    async def _single(fragment: Fragment) -> FragmentStream:
        yield fragment

    @staticmethod
    async def _stream(response: httpx.Response) -> FragmentStream:
        try:
            async for line in response.aiter_lines():
                line = line.strip()
                if not line or not line.startswith("data:"):
                    continue
                data = line[len("data:") :].strip()
                if data == DONE:
                    break
                fragment = parse_chunk(data)
                if fragment is not None:
                    yield fragment
        except httpx.HTTPError as e:
            raise ProviderUnavailableError(f"Stream interrupted: {e}") from e
        finally:
            await response.aclose()
