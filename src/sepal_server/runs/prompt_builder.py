import logging
from typing import Any, Dict, List, Optional

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from sepal_server.database import get_session
from sepal_server.entities.messages import Message
from sepal_server.entities.run_steps import RunStep
from sepal_server.entities.runs import Run
from sepal_server.messages.store import list_messages
from sepal_server.runs.steps.store import list_tool_steps_for_thread

logger = logging.getLogger(__name__)

EMPTY_CONTENT = "-"


class PromptBuildError(ValueError):
    """The backend request cannot be built from the run's configuration."""


def truncate_messages(messages: List[Message], truncation_strategy: Optional[Dict[str, Any]]) -> List[Message]:
    strategy = truncation_strategy or {"type": "auto"}
    kind = strategy.get("type")
    if kind in ("auto", "disabled"):
        return messages
    if kind == "last_messages":
        count = strategy.get("last_messages")
        if not isinstance(count, int) or isinstance(count, bool) or count < 1:
            raise PromptBuildError(f"Invalid last_messages value: {count!r}")
        return messages[-count:]
    raise PromptBuildError(f"Unsupported truncation strategy: {kind!r}")


def serialize_tool_call(tool_call: Dict[str, Any]) -> Dict[str, Any]:
    function = tool_call.get("function", {})
    return {
        "id": tool_call["id"],
        "type": tool_call.get("type", "function"),
        "function": {"name": function.get("name", ""), "arguments": function.get("arguments", "")},
    }


def serialize_message(message: Message, tool_outputs: Dict[str, str]) -> List[Dict[str, Any]]:
    """One history message, followed by a tool message per tool call it made."""
    serialized: Dict[str, Any] = {"role": message.role, "content": message.text}
    tool_calls = message.tool_calls
    if tool_calls:
        serialized["tool_calls"] = [serialize_tool_call(tool_call) for tool_call in tool_calls]

    result = [serialized]
    for tool_call in tool_calls:
        result.append(
            {
                "role": "tool",
                "tool_call_id": tool_call["id"],
                "name": tool_call.get("function", {}).get("name", ""),
                "content": tool_outputs.get(tool_call["id"], ""),
            }
        )
    return result


def collect_tool_outputs(steps: List[RunStep]) -> Dict[str, str]:
    outputs: Dict[str, str] = {}
    for step in steps:
        for tool_call in step.step_details.get("tool_calls", []):
            output = tool_call.get("function", {}).get("output")
            if output is not None:
                outputs[tool_call["id"]] = output
    return outputs


def non_empty_messages(messages: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    """Replace blank content, which some backends reject, with a placeholder."""
    result = []
    for message in messages:
        content = message.get("content")
        if content is None or (isinstance(content, str) and not content.strip()):
            message = {**message, "content": EMPTY_CONTENT}
        result.append(message)
    return result


def build_history(
    run: Run,
    messages: List[Message],
    tool_steps: List[RunStep],
) -> List[Dict[str, Any]]:
    """Chat messages for a run: instructions, then the truncated thread history."""
    history: List[Dict[str, Any]] = []
    if run.instructions:
        history.append({"role": "system", "content": run.instructions})

    tool_outputs = collect_tool_outputs(tool_steps)
    for message in truncate_messages(messages, run.truncation_strategy):
        # The in-progress assistant turn of this run is being generated, not replayed.
        if message.status == "in_progress":
            continue
        history.extend(serialize_message(message, tool_outputs))

    return non_empty_messages(history)


def build_chat_request(run: Run, messages: List[Dict[str, Any]], *, stream: bool) -> Dict[str, Any]:
    request: Dict[str, Any] = {
        "model": run.model,
        "messages": messages,
        "stream": stream,
    }
    tools = [tool for tool in run.tools if tool.get("type") == "function"]
    if tools:
        request["tools"] = tools
    if run.response_format:
        request["response_format"] = run.response_format
    if run.temperature is not None:
        request["temperature"] = run.temperature
    if run.top_p is not None:
        request["top_p"] = run.top_p
    return request


class HistoryLoader:
    """Supplies a run's serialized history from the database."""

    def __init__(self, session_maker: async_sessionmaker[AsyncSession]) -> None:
        self._session_maker = session_maker

    async def __call__(self, run: Run) -> List[Dict[str, Any]]:
        async with get_session(self._session_maker, read_only=True) as session:
            messages = await list_messages(session, run.thread_id)
            tool_steps = await list_tool_steps_for_thread(session, run.thread_id)
        history = build_history(run, messages, tool_steps)
        logger.debug(f"Built history of {len(history)} messages for run {run.id}")
        return history
