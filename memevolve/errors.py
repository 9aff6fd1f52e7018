"""
Error taxonomy for the evolution engine.

Every failure a maintenance run can hit falls into one of these buckets,
and each bucket has a fixed handling rule in the scheduler:

- TransientStoreError: abort the current step, retry next tick
- ExternalServiceError: skip the affected item, leave it queued
- InvariantViolation: skip the offending operation, keep the run going
- ConcurrentModificationError: a compare-and-swap lost a race, reread and retry
"""


class EvolutionError(Exception):
    """Base class for all engine errors."""


class TransientStoreError(EvolutionError):
    """The store timed out or was unavailable."""


class ExternalServiceError(EvolutionError):
    """The text-understanding service failed or is unavailable."""


class InvariantViolation(EvolutionError):
    """An operation would break a lifecycle or data-model invariant."""

    def __init__(self, message: str, memory_id: str | None = None):
        super().__init__(message)
        self.memory_id = memory_id


class ConcurrentModificationError(EvolutionError):
    """A versioned write found a different version than it expected."""

    def __init__(self, record_id: str, expected: int, actual: int | None):
        super().__init__(
            f"{record_id}: expected version {expected}, found {actual}"
        )
        self.record_id = record_id
        self.expected = expected
        self.actual = actual
