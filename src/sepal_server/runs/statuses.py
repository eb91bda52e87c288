"""Run and step status values and the legal run status graph."""

from enum import Enum
from typing import Dict, FrozenSet


class RunStatus(str, Enum):
    QUEUED = "queued"
    IN_PROGRESS = "in_progress"
    REQUIRES_ACTION = "requires_action"
    CANCELLED = "cancelled"
    FAILED = "failed"
    COMPLETED = "completed"


class RunStepStatus(str, Enum):
    IN_PROGRESS = "in_progress"
    CANCELLED = "cancelled"
    FAILED = "failed"
    COMPLETED = "completed"


class RunStepType(str, Enum):
    MESSAGE_CREATION = "message_creation"
    TOOL_CALLS = "tool_calls"


class MessageStatus(str, Enum):
    IN_PROGRESS = "in_progress"
    INCOMPLETE = "incomplete"
    COMPLETED = "completed"


TRANSITIONS: Dict[RunStatus, FrozenSet[RunStatus]] = {
    RunStatus.QUEUED: frozenset({RunStatus.IN_PROGRESS, RunStatus.CANCELLED}),
    RunStatus.IN_PROGRESS: frozenset(
        {RunStatus.COMPLETED, RunStatus.FAILED, RunStatus.REQUIRES_ACTION, RunStatus.CANCELLED}
    ),
    RunStatus.REQUIRES_ACTION: frozenset({RunStatus.QUEUED, RunStatus.CANCELLED}),
    RunStatus.CANCELLED: frozenset(),
    RunStatus.FAILED: frozenset(),
    RunStatus.COMPLETED: frozenset(),
}

TERMINAL_STATUSES = frozenset(status for status, targets in TRANSITIONS.items() if not targets)


class InvalidRunTransitionError(ValueError):
    def __init__(self, run_id: str, current: str, target: str) -> None:
        super().__init__(f"Run {run_id} cannot move from '{current}' to '{target}'")
        self.run_id = run_id
        self.current = current
        self.target = target


def can_transition(current: str, target: str) -> bool:
    """Whether a run may move from ``current`` to ``target``.

    Staying in the same status is always allowed so that replayed events are no-ops.
    """
    if current == target:
        return True
    return RunStatus(target) in TRANSITIONS[RunStatus(current)]


def check_transition(run_id: str, current: str, target: str) -> None:
    if not can_transition(current, target):
        raise InvalidRunTransitionError(run_id, current, target)


def is_terminal(status: str) -> bool:
    return RunStatus(status) in TERMINAL_STATUSES
