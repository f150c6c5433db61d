"""Background processing for Coachmem.

Detection, storage, enrichment and consolidation run as tasks on a bounded
queue consumed by a fixed worker pool, off the caller's path.
"""

from coachmem.scheduler.task import Task, TaskKind, TaskStatus
from coachmem.scheduler.worker import RETRYABLE_ERRORS, BackgroundScheduler, TaskHandler

__all__ = [
    "BackgroundScheduler",
    "RETRYABLE_ERRORS",
    "Task",
    "TaskHandler",
    "TaskKind",
    "TaskStatus",
]
