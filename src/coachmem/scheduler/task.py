"""Background task definitions.

Task lifecycle::

    queued -> running -> completed
                      -> failed
                      -> retried -> (re-queued after backoff) -> running ...
    queued -> dropped (queue full)
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

from coachmem.types.memory import new_id, utcnow

__all__ = ["Task", "TaskKind", "TaskStatus"]


class TaskStatus(str, Enum):
    """Status of a background task."""

    QUEUED = "queued"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    RETRIED = "retried"
    DROPPED = "dropped"

    @property
    def is_terminal(self) -> bool:
        return self in (TaskStatus.COMPLETED, TaskStatus.FAILED, TaskStatus.DROPPED)


class TaskKind(str, Enum):
    """Kinds of background work.

    - DETECT: classify a message and enqueue a store task when worthy
    - STORE: validate, deduplicate and persist a candidate memory
    - ENRICH: extract atomic facts and relationships, then consolidate
    - CONSOLIDATE: full consolidation sweep for a user
    """

    DETECT = "detect"
    STORE = "store"
    ENRICH = "enrich"
    CONSOLIDATE = "consolidate"


@dataclass(slots=True)
class Task:
    """Tracking structure for one unit of background work.

    Attributes:
        kind: What the task does
        user_id: User whose memories the task touches
        payload: Kind-specific arguments
        task_id: Unique task identifier
        status: Current status
        attempts: Number of times the task has started running
        error: Last error message
        created_at: When the task was submitted
        started_at: When the last attempt started
        completed_at: When the task reached a terminal state
        result: Handler return value (completed tasks)
    """

    kind: TaskKind
    user_id: str
    payload: dict[str, Any] = field(default_factory=dict)
    task_id: str = field(default_factory=new_id)
    status: TaskStatus = TaskStatus.QUEUED
    attempts: int = 0
    error: str | None = None
    created_at: datetime = field(default_factory=utcnow)
    started_at: datetime | None = None
    completed_at: datetime | None = None
    result: Any = None

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        data: dict[str, Any] = {
            "task_id": self.task_id,
            "kind": self.kind.value,
            "user_id": self.user_id,
            "status": self.status.value,
            "attempts": self.attempts,
            "created_at": self.created_at.isoformat(),
        }
        if self.completed_at:
            data["completed_at"] = self.completed_at.isoformat()
        if self.error:
            data["error"] = self.error
        return data

    def mark_running(self) -> None:
        self.status = TaskStatus.RUNNING
        self.attempts += 1
        self.started_at = utcnow()

    def mark_completed(self, result: Any = None) -> None:
        self.status = TaskStatus.COMPLETED
        self.result = result
        self.error = None
        self.completed_at = utcnow()

    def mark_retried(self, error: str) -> None:
        self.status = TaskStatus.RETRIED
        self.error = error

    def mark_requeued(self) -> None:
        self.status = TaskStatus.QUEUED

    def mark_failed(self, error: str) -> None:
        self.status = TaskStatus.FAILED
        self.error = error
        self.completed_at = utcnow()

    def mark_dropped(self, reason: str) -> None:
        self.status = TaskStatus.DROPPED
        self.error = reason
        self.completed_at = utcnow()
