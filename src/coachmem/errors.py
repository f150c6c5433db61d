"""Exception taxonomy for Coachmem.

Background failures are contained by the scheduler and retrieval degrades
instead of raising, so only manual operations (manual creation, explicit
deletion) let these reach a caller.
"""


class CoachmemError(Exception):
    """Base class for all Coachmem errors."""

    pass


class ProviderUnavailable(CoachmemError):
    """Classification or embedding capability is down or timed out."""

    pass


class ValidationRejected(CoachmemError):
    """Candidate content failed the content validator.

    Attributes:
        rule: Name of the validation rule that rejected the content
        content: The rejected content
    """

    def __init__(self, rule: str, content: str):
        self.rule = rule
        self.content = content
        super().__init__(f"Content rejected by rule '{rule}': {content!r}")


class StorageFailure(CoachmemError):
    """A read or write against the store failed."""

    pass


class MemoryNotFoundError(CoachmemError):
    """No memory with the given id exists for the user."""

    def __init__(self, memory_id: str, user_id: str | None = None):
        self.memory_id = memory_id
        self.user_id = user_id
        owner = f" for user {user_id}" if user_id else ""
        super().__init__(f"Memory {memory_id} not found{owner}")


class ConsolidationConflict(CoachmemError):
    """Two consolidation rules would act on the same memory.

    The higher-confidence relationship wins. Instances describe the discarded
    alternative and are collected in the consolidation report rather than
    raised.

    Attributes:
        memory_ids: Memories both actions would have touched
        kept_relationship_id: Relationship whose action was applied
        discarded_relationship_id: Relationship whose action was dropped
        discarded_action: Consolidation type of the dropped action
    """

    def __init__(
        self,
        memory_ids: list[str],
        kept_relationship_id: str,
        discarded_relationship_id: str,
        discarded_action: str,
    ):
        self.memory_ids = memory_ids
        self.kept_relationship_id = kept_relationship_id
        self.discarded_relationship_id = discarded_relationship_id
        self.discarded_action = discarded_action
        super().__init__(
            f"Discarded {discarded_action} from relationship "
            f"{discarded_relationship_id}: memories {', '.join(memory_ids)} "
            f"already claimed by relationship {kept_relationship_id}"
        )

    def to_dict(self) -> dict[str, object]:
        """Convert to dictionary for JSON serialization."""
        return {
            "memory_ids": self.memory_ids,
            "kept_relationship_id": self.kept_relationship_id,
            "discarded_relationship_id": self.discarded_relationship_id,
            "discarded_action": self.discarded_action,
        }
