"""
Scoring - How strong is a memory right now?

All functions here are pure: they read a Memory snapshot and a clock value
and return numbers. Derived values (recency, frequency, strength) are
computed at read time and never stored.

The formulas:
- recency    = exp(-0.1 * days since update)
- frequency  = min(1, access_count / 10)
- importance = weighted blend of six components + a type bonus, clamped to [0, 1]
- strength   = importance * 0.5 ^ (days since access / effective half-life)

Each access stretches the half-life by 20%, so memories that keep getting
used decay more slowly.
"""

import math
from datetime import datetime
from typing import Optional

from memevolve.models import Memory, MemoryType

RECENCY_RATE = 0.1
FREQUENCY_SATURATION = 10.0
HALF_LIFE_EXTENSION_PER_ACCESS = 0.2

# Weights of the importance blend (sum to 1.0)
IMPORTANCE_WEIGHTS = {
    "recency": 0.25,
    "frequency": 0.20,
    "relevance": 0.20,
    "confidence": 0.15,
    "outcome_impact": 0.10,
    "user_feedback": 0.10,
}

DEFAULT_HALF_LIFE_DAYS = 3.0


def clamp01(value: float) -> float:
    return max(0.0, min(1.0, value))


def days_since(moment: Optional[datetime], now: Optional[datetime] = None) -> float:
    """Elapsed days, never negative (clock skew counts as zero)."""
    if moment is None:
        return 0.0
    now = now or datetime.now()
    return max(0.0, (now - moment).total_seconds() / 86400.0)


def base_half_life(memory_type) -> float:
    """Half-life in days for a memory type."""
    if memory_type == MemoryType.EPISODIC:
        return 1.0
    if memory_type == MemoryType.SEMANTIC:
        return 7.0
    if memory_type == MemoryType.PROCEDURAL:
        return 30.0
    if memory_type == MemoryType.WORKING:
        return 1.0 / 24.0
    return DEFAULT_HALF_LIFE_DAYS


def type_bonus(memory_type) -> float:
    if memory_type == MemoryType.PROCEDURAL:
        return 0.10
    if memory_type == MemoryType.SEMANTIC:
        return 0.05
    return 0.0


def recency_score(memory: Memory, now: Optional[datetime] = None) -> float:
    return math.exp(-RECENCY_RATE * days_since(memory.updated_at, now))


def frequency_score(memory: Memory) -> float:
    return min(1.0, memory.access_count / FREQUENCY_SATURATION)


def compute_importance(memory: Memory, now: Optional[datetime] = None) -> float:
    """Composite 0-1 importance from the memory's component scores."""
    w = IMPORTANCE_WEIGHTS
    raw = (
        w["recency"] * recency_score(memory, now)
        + w["frequency"] * frequency_score(memory)
        + w["relevance"] * memory.relevance_score
        + w["confidence"] * memory.confidence
        + w["outcome_impact"] * memory.outcome_impact
        + w["user_feedback"] * memory.user_feedback
        + type_bonus(memory.memory_type)
    )
    return clamp01(raw)


def effective_half_life(memory: Memory) -> float:
    return base_half_life(memory.memory_type) * (
        1 + memory.access_count * HALF_LIFE_EXTENSION_PER_ACCESS
    )


def memory_strength(memory: Memory, now: Optional[datetime] = None) -> float:
    """Importance decayed exponentially since the last access."""
    elapsed = days_since(memory.last_accessed_at, now)
    decay = math.exp(-math.log(2) * elapsed / effective_half_life(memory))
    return clamp01(memory.importance) * decay


def strengthen_on_access(memory: Memory, now: Optional[datetime] = None) -> Memory:
    """Record one logical retrieval of a memory.

    Call exactly once per retrieval. Batching accesses would undercount
    frequency and overstate decay.
    """
    now = now or datetime.now()
    memory.access_count += 1
    memory.last_accessed_at = now
    memory.importance = compute_importance(memory, now)
    return memory


def score_breakdown(memory: Memory, now: Optional[datetime] = None) -> dict:
    """All derived scores of a memory at one instant."""
    now = now or datetime.now()
    return {
        "recency_score": recency_score(memory, now),
        "frequency_score": frequency_score(memory),
        "importance": memory.importance,
        "computed_importance": compute_importance(memory, now),
        "effective_half_life_days": effective_half_life(memory),
        "memory_strength": memory_strength(memory, now),
    }
