"""Errors raised while executing or resuming a run."""

from typing import Iterable


class RunError(Exception):
    """Base class for run protocol errors."""


class RunNotFoundError(RunError):
    def __init__(self, run_id: str) -> None:
        super().__init__(f"Run {run_id} not found")
        self.run_id = run_id


class RunNotAwaitingToolOutputsError(RunError):
    def __init__(self, run_id: str, status: str) -> None:
        super().__init__(f"Run {run_id} is '{status}', not awaiting tool outputs")
        self.run_id = run_id
        self.status = status


class UnknownToolCallError(RunError):
    reason = "has no pending tool calls with ids"

    def __init__(self, run_id: str, tool_call_ids: Iterable[str]) -> None:
        self.tool_call_ids = sorted(tool_call_ids)
        super().__init__(f"Run {run_id} {self.reason}: {', '.join(self.tool_call_ids)}")
        self.run_id = run_id


class DuplicateToolOutputError(UnknownToolCallError):
    reason = "received more than one output for tool calls"


class MissingToolOutputsError(RunError):
    def __init__(self, run_id: str, tool_call_ids: Iterable[str]) -> None:
        self.tool_call_ids = sorted(tool_call_ids)
        super().__init__(f"Run {run_id} is missing tool outputs for: {', '.join(self.tool_call_ids)}")
        self.run_id = run_id


class RecordNotFoundError(RunError):
    """An event referenced a message or step that does not exist."""
