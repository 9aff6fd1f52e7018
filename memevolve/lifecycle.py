"""
Lifecycle State Machine - Where is a memory in its life?

    created -> active -> consolidated | archived -> forgotten

Status only moves forward. Guards are evaluated after a score recompute,
never eagerly:

- created -> active        first access
- active  -> consolidated  strength < 0.3 and access_count >= 2, but only via
                           the consolidation queue (evaluate() just asks for
                           a queue item)
- active  -> archived      strength < 0.1 and access_count < 2
- archived/consolidated -> forgotten   strength < 0.01 (content and
                           embedding are dropped, id and history kept)

A created memory that was never accessed can also decay straight to
archived. Re-accessing an archived or consolidated memory recomputes its
scores but does not change its status.
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from memevolve.config import EvolutionConfig
from memevolve.errors import InvariantViolation
from memevolve.models import (
    Memory,
    MemoryStatus,
    QueueReason,
    StatusChange,
    STATUS_RANK,
)
from memevolve.scoring import memory_strength

ALLOWED_TRANSITIONS = {
    MemoryStatus.CREATED: {
        MemoryStatus.ACTIVE,
        MemoryStatus.CONSOLIDATED,
        MemoryStatus.ARCHIVED,
        MemoryStatus.FORGOTTEN,
    },
    MemoryStatus.ACTIVE: {
        MemoryStatus.CONSOLIDATED,
        MemoryStatus.ARCHIVED,
        MemoryStatus.FORGOTTEN,
    },
    MemoryStatus.CONSOLIDATED: {MemoryStatus.FORGOTTEN},
    MemoryStatus.ARCHIVED: {MemoryStatus.FORGOTTEN},
    MemoryStatus.FORGOTTEN: set(),
}


@dataclass
class LifecycleDecision:
    """What the guards say should happen to a memory."""
    memory_id: str
    strength: float
    target: Optional[MemoryStatus] = None
    enqueue: Optional[QueueReason] = None
    reason: str = ""


def can_transition(current: MemoryStatus, target: MemoryStatus) -> bool:
    return (
        target in ALLOWED_TRANSITIONS[current]
        and STATUS_RANK[target] > STATUS_RANK[current]
    )


def is_monotonic(history: list) -> bool:
    """True if a status history never moves backwards."""
    ranks = [STATUS_RANK[MemoryStatus(h.to_status)] for h in history]
    return all(a <= b for a, b in zip(ranks, ranks[1:]))


def evaluate(
    memory: Memory,
    now: Optional[datetime] = None,
    config: Optional[EvolutionConfig] = None,
) -> LifecycleDecision:
    """Apply the transition guards to one memory without mutating it."""
    config = config or EvolutionConfig()
    strength = memory_strength(memory, now)
    decision = LifecycleDecision(memory_id=memory.id, strength=strength)
    rarely_used = memory.access_count < config.min_access_for_consolidation

    if memory.status == MemoryStatus.CREATED:
        if memory.access_count > 0:
            decision.target = MemoryStatus.ACTIVE
            decision.reason = "first access"
        elif strength < config.archive_strength:
            decision.target = MemoryStatus.ARCHIVED
            decision.reason = f"never accessed, strength {strength:.4f}"

    elif memory.status == MemoryStatus.ACTIVE:
        if strength < config.archive_strength and rarely_used:
            decision.target = MemoryStatus.ARCHIVED
            decision.reason = f"weak and rarely used, strength {strength:.4f}"
        elif strength < config.consolidate_strength and not rarely_used:
            decision.enqueue = QueueReason.STRENGTH_DECAY
            decision.reason = f"strength decayed to {strength:.4f}"

    elif memory.status in (MemoryStatus.ARCHIVED, MemoryStatus.CONSOLIDATED):
        if strength < config.forget_strength:
            decision.target = MemoryStatus.FORGOTTEN
            decision.reason = f"strength {strength:.4f} below forget threshold"

    return decision


def transition(
    memory: Memory,
    target: MemoryStatus,
    reason: str = "",
    now: Optional[datetime] = None,
) -> StatusChange:
    """Move a memory to a new status, recording the change.

    Raises InvariantViolation for any move the state machine forbids.
    """
    now = now or datetime.now()
    target = MemoryStatus(target)
    if not can_transition(memory.status, target):
        raise InvariantViolation(
            f"illegal transition {memory.status.value} -> {target.value}",
            memory_id=memory.id,
        )

    change = StatusChange(
        to_status=target.value,
        at=now.isoformat(),
        from_status=memory.status.value,
        reason=reason,
    )
    memory.status_history.append(change)
    memory.status = target

    if target == MemoryStatus.FORGOTTEN:
        # Reclaim space; id, scope and history stay for auditability
        memory.content = ""
        memory.embedding = None
        memory.metadata["forgotten_at"] = now.isoformat()

    return change


def advance(
    memory: Memory,
    now: Optional[datetime] = None,
    config: Optional[EvolutionConfig] = None,
) -> tuple[list, Optional[QueueReason]]:
    """Evaluate the guards once and apply the result.

    At most one transition per call: a memory moves one step per
    maintenance pass. Returns (status changes applied, queue reason or None).
    """
    decision = evaluate(memory, now, config)
    if decision.target is None:
        return [], decision.enqueue
    return [transition(memory, decision.target, decision.reason, now)], None
