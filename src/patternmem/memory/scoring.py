"""Decay scoring and confidence.

``score`` is a pure function of (pattern, now, decay config). The default
hybrid model mixes exponential recency, logarithmic frequency and success
rate with configurable weights:

    score = 0.5 ** (days / half_life) * w_recency
          + log2(frequency + 1)        * w_frequency
          + success_rate               * w_success

The frequency term is not normalized. With the default weights the score
ranges roughly from 0.4 to 2.9 for frequencies 1 to 50.
"""

from __future__ import annotations

import math
from collections.abc import Iterable
from datetime import datetime

from patternmem.core.config import DecayConfig

from .models import Pattern

SECONDS_PER_DAY = 86_400.0

# Upper bound of the hybrid score for frequency <= 100 under default weights.
HYBRID_SCORE_CEILING = 5.0


def days_since(moment: datetime, now: datetime) -> float:
    """Whole and fractional days from ``moment`` to ``now``, never negative."""
    return max(0.0, (now - moment).total_seconds() / SECONDS_PER_DAY)


def recency_factor(pattern: Pattern, now: datetime, half_life_days: float) -> float:
    return 0.5 ** (days_since(pattern.last_seen, now) / half_life_days)


def hybrid_score(pattern: Pattern, now: datetime, config: DecayConfig) -> float:
    weights = config.weights
    recency = recency_factor(pattern, now, config.half_life_days)
    frequency = math.log2(pattern.frequency + 1)
    return (
        recency * weights.recency
        + frequency * weights.frequency
        + pattern.success_rate * weights.success_rate
    )


def exponential_score(pattern: Pattern, now: datetime, config: DecayConfig) -> float:
    decay = recency_factor(pattern, now, config.half_life_days)
    return pattern.frequency * decay * pattern.success_rate


def linear_score(pattern: Pattern, now: datetime, config: DecayConfig) -> float:
    # Reaches zero at twice the half-life.
    max_age = config.half_life_days * 2
    decay = max(0.0, 1.0 - days_since(pattern.last_seen, now) / max_age)
    return pattern.frequency * decay * pattern.success_rate


def score(pattern: Pattern, now: datetime, config: DecayConfig) -> float:
    """Decay score of a pattern under the configured algorithm."""
    match config.algorithm:
        case "exponential":
            return exponential_score(pattern, now, config)
        case "linear":
            return linear_score(pattern, now, config)
        case _:
            return hybrid_score(pattern, now, config)


def rescore(patterns: Iterable[Pattern], now: datetime, config: DecayConfig) -> None:
    """Recompute ``decay_score`` in place for every pattern."""
    for pattern in patterns:
        pattern.decay_score = score(pattern, now, config)


def confidence(pattern: Pattern, now: datetime) -> float:
    """How much a pattern can be relied on, from frequency and recency.

    70% comes from frequency (saturating at 10 occurrences), 30% from a
    stepped recency bucket.
    """
    frequency_part = min(pattern.frequency / 10.0, 1.0)
    age = days_since(pattern.last_seen, now)
    if age < 7:
        recency_part = 1.0
    elif age < 30:
        recency_part = 0.8
    elif age < 90:
        recency_part = 0.5
    else:
        recency_part = 0.3
    return frequency_part * 0.7 + recency_part * 0.3


__all__ = [
    "HYBRID_SCORE_CEILING",
    "confidence",
    "days_since",
    "exponential_score",
    "hybrid_score",
    "linear_score",
    "recency_factor",
    "rescore",
    "score",
]
