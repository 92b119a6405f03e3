"""Numeric primitives shared by selection, clustering and the tuners."""

from __future__ import annotations

import math
from collections.abc import Sequence
from datetime import datetime

import numpy as np
import structlog

log = structlog.get_logger(__name__)

TIER_BREAKING = 0.8
TIER_NOTABLE = 0.6
TIER_STANDARD = 0.4


def cosine_similarity(a: Sequence[float], b: Sequence[float]) -> float:
    """
    Cosine similarity of two embedding vectors.

    Returns 0.0 when either vector is empty, the lengths differ, or either
    norm is zero.
    """
    if len(a) == 0 or len(b) == 0:
        return 0.0
    if len(a) != len(b):
        log.debug("embedding_length_mismatch", left=len(a), right=len(b))
        return 0.0

    va = np.asarray(a, dtype=float)
    vb = np.asarray(b, dtype=float)
    norm = float(np.linalg.norm(va)) * float(np.linalg.norm(vb))
    if norm == 0.0:
        return 0.0
    return float(np.dot(va, vb) / norm)


def clamp(value: float, lower: float, upper: float) -> float:
    return max(lower, min(upper, value))


def clamp01(value: float) -> float:
    return clamp(value, 0.0, 1.0)


def decay_weight(age_days: float, half_life_days: float) -> float:
    """Exponential half-life weight ``exp(-age * ln2 / half_life)``; 1.0 when half-life <= 0."""
    if half_life_days <= 0:
        return 1.0
    return math.exp(-age_days * math.log(2) / half_life_days)


def freshness_decay(
    score: float,
    published_at: datetime | None,
    now: datetime,
    decay_hours: float,
    floor: float,
) -> float:
    """
    Decay an importance score by message age.

    Args:
        score: Importance score before decay
        published_at: Message timestamp (no decay when missing)
        now: Reference time
        decay_hours: Half-life in hours; <= 0 disables decay
        floor: Minimum result, clamped to [0, 1]

    Returns:
        ``max(floor, score * exp(-age_h * ln2 / decay_hours))``
    """
    if decay_hours <= 0 or published_at is None:
        return score

    age_hours = max(0.0, (now - published_at).total_seconds() / 3600)
    decayed = score * math.exp(-age_hours * math.log(2) / decay_hours)
    return max(clamp01(floor), decayed)


def importance_tier(score: float) -> str:
    if score >= TIER_BREAKING:
        return "breaking"
    if score >= TIER_NOTABLE:
        return "notable"
    if score >= TIER_STANDARD:
        return "standard"
    return "minor"
