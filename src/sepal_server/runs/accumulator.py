"""Fold streamed completion fragments into message text and tool calls.

Streaming backends deliver a response as many partial fragments. A
non-streaming backend is treated as a single fragment carrying the whole
text and the complete tool-call array, so both go through ``feed``.

Tool calls are addressed by the backend's ``index`` while they are being
assembled. The first fragment seen for an index allocates the call's id,
which stays stable for every later fragment of that index.
"""

import dataclasses
import logging
import uuid
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Tuple, Union

logger = logging.getLogger(__name__)


def generate_tool_call_id() -> str:
    return f"call_{uuid.uuid4().hex[:24]}"


@dataclass(frozen=True)
class ToolCallFragment:
    index: int
    id: Optional[str] = None
    type: Optional[str] = None
    name: Optional[str] = None
    arguments: Optional[str] = None


@dataclass(frozen=True)
class Fragment:
    """One partial piece of a completion."""

    index: int = 0
    text: Optional[str] = None
    tool_calls: Tuple[ToolCallFragment, ...] = ()


@dataclass(frozen=True)
class ToolCall:
    id: str
    index: int
    name: str = ""
    arguments: str = ""
    type: str = "function"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "index": self.index,
            "type": self.type,
            "function": {"name": self.name, "arguments": self.arguments},
        }


@dataclass(frozen=True)
class TextAppended:
    value: str
    offset: int
    index: int = 0


@dataclass(frozen=True)
class ToolCallOpened:
    tool_call: ToolCall


@dataclass(frozen=True)
class ToolCallArgumentsAppended:
    id: str
    index: int
    arguments: str
    offset: int
    name: Optional[str] = None


AccumulatorUpdate = Union[TextAppended, ToolCallOpened, ToolCallArgumentsAppended]


@dataclass(frozen=True)
class Snapshot:
    text: str = ""
    tool_calls: Tuple[ToolCall, ...] = field(default_factory=tuple)

    def tool_calls_as_dicts(self) -> List[Dict[str, Any]]:
        return [tool_call.to_dict() for tool_call in self.tool_calls]


class AccumulatorClosedError(RuntimeError):
    pass


class DeltaAccumulator:
    """Accumulates one assistant turn. Owned by a single run pass."""

    def __init__(self, id_factory: Callable[[], str] = generate_tool_call_id) -> None:
        self._id_factory = id_factory
        self._text = ""
        self._tool_calls: Dict[int, ToolCall] = {}
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def feed(self, fragment: Fragment) -> List[AccumulatorUpdate]:
        """Apply a fragment and return what changed, in the order it changed."""
        if self._closed:
            raise AccumulatorClosedError("Accumulator already finalized")

        updates: List[AccumulatorUpdate] = []

        if fragment.text:
            updates.append(TextAppended(value=fragment.text, offset=len(self._text), index=fragment.index))
            self._text += fragment.text

        for tool_fragment in fragment.tool_calls:
            update = self._feed_tool_call(tool_fragment)
            if update is not None:
                updates.append(update)

        return updates

    def _feed_tool_call(self, fragment: ToolCallFragment) -> Optional[AccumulatorUpdate]:
        existing = self._tool_calls.get(fragment.index)

        if existing is None:
            tool_call = ToolCall(
                id=self._allocate_id(fragment.id),
                index=fragment.index,
                name=fragment.name or "",
                arguments=fragment.arguments or "",
                type=fragment.type or "function",
            )
            self._tool_calls[fragment.index] = tool_call
            return ToolCallOpened(tool_call=tool_call)

        new_name = None
        if fragment.name and not existing.name:
            new_name = fragment.name

        arguments = fragment.arguments or ""
        if not arguments and new_name is None:
            return None

        self._tool_calls[fragment.index] = dataclasses.replace(
            existing,
            name=new_name if new_name is not None else existing.name,
            arguments=existing.arguments + arguments,
        )
        return ToolCallArgumentsAppended(
            id=existing.id,
            index=existing.index,
            arguments=arguments,
            offset=len(existing.arguments),
            name=new_name,
        )

    def _allocate_id(self, backend_id: Optional[str]) -> str:
        taken = {tool_call.id for tool_call in self._tool_calls.values()}
        if backend_id and backend_id not in taken:
            return backend_id
        if backend_id:
            logger.debug(f"Backend reused tool call id {backend_id}, allocating a new one")
        new_id = self._id_factory()
        while new_id in taken:
            new_id = self._id_factory()
        return new_id

    def snapshot(self) -> Snapshot:
        ordered = tuple(self._tool_calls[index] for index in sorted(self._tool_calls))
        return Snapshot(text=self._text, tool_calls=ordered)

    def finalize(self) -> Snapshot:
        """Close the accumulator; later fragments are rejected."""
        self._closed = True
        return self.snapshot()
