"""Heuristic importance, sentiment and recency scoring."""

import math
from datetime import datetime
from typing import Iterable, Optional

# Keyword families scanned by the importance scorer, with per-hit weight
TASK_KEYWORDS = ["deadline", "assignment", "due", "schedule", "plan"]
SELF_REFERENCE_PHRASES = ["i think", "i feel", "i am", "personally"]
AUTHORITY_KEYWORDS = ["teacher", "professor", "rubric", "grading"]
NOVELTY_KEYWORDS = ["new", "learned", "discovered", "research", "study"]

TASK_WEIGHT = 0.15
SELF_REFERENCE_WEIGHT = 0.10
AUTHORITY_WEIGHT = 0.10
NOVELTY_WEIGHT = 0.05

IMPORTANT_TAGS = frozenset({"school", "assignment", "study"})
IMPORTANT_TAG_WEIGHT = 0.10

# Logistic squashing: 1 / (1 + e^(-steepness * (s - midpoint)))
LOGISTIC_STEEPNESS = 4.0
LOGISTIC_MIDPOINT = 0.35

NEGATIVE_WORDS = ["frustrated", "angry", "sad", "upset", "worried", "stress"]
POSITIVE_WORDS = ["excited", "happy", "glad", "proud", "satisfied"]
NEGATIVE_SENTIMENT = -0.6
POSITIVE_SENTIMENT = 0.6

SECONDS_PER_DAY = 24 * 60 * 60


def clamp(value: float, lower: float = 0.0, upper: float = 1.0) -> float:
    """Clamp ``value`` to [lower, upper]."""
    return max(lower, min(upper, value))


class ImportanceScorer:
    """
    Keyword-driven importance score in [0, 1].

    Each keyword counts once per text (substring match on the lower-cased
    text). The raw sum goes through a logistic curve so that a handful of
    discrete hits still produces a smooth score.
    """

    def raw_score(self, text: str, tags: Iterable[str] = ()) -> float:
        """Accumulated keyword score before squashing."""
        lowered = text.lower()
        score = 0.0
        score += TASK_WEIGHT * sum(1 for k in TASK_KEYWORDS if k in lowered)
        score += SELF_REFERENCE_WEIGHT * sum(1 for k in SELF_REFERENCE_PHRASES if k in lowered)
        score += AUTHORITY_WEIGHT * sum(1 for k in AUTHORITY_KEYWORDS if k in lowered)
        score += NOVELTY_WEIGHT * sum(1 for k in NOVELTY_KEYWORDS if k in lowered)
        if any(tag.lower() in IMPORTANT_TAGS for tag in tags):
            score += IMPORTANT_TAG_WEIGHT
        return score

    def score(self, text: str, tags: Iterable[str] = ()) -> float:
        s = self.raw_score(text, tags)
        logistic = 1.0 / (1.0 + math.exp(-LOGISTIC_STEEPNESS * (s - LOGISTIC_MIDPOINT)))
        return clamp(logistic)


class SentimentScorer:
    """Lexicon sentiment: negative words win over positive ones."""

    def sentiment(self, text: str) -> float:
        lowered = text.lower()
        if any(word in lowered for word in NEGATIVE_WORDS):
            return NEGATIVE_SENTIMENT
        if any(word in lowered for word in POSITIVE_WORDS):
            return POSITIVE_SENTIMENT
        return 0.0


class RecencyBiasCalculator:
    """
    Exponential freshness score parameterized by a half-life in days.

    ``recency_bias = exp(-age_seconds / tau)`` with
    ``tau = half_life_days * 86400 / ln(2)``, so a memory exactly one
    half-life old scores 0.5.
    """

    def __init__(self, half_life_days: float):
        self.half_life_days = half_life_days

    @property
    def tau(self) -> float:
        return self.half_life_days * SECONDS_PER_DAY / math.log(2)

    def recency_bias(self, created_at: datetime, reference: Optional[datetime] = None) -> float:
        """
        Freshness of ``created_at`` relative to ``reference``.

        Returns 1.0 for non-positive half-lives and for timestamps at or
        after the reference (including future timestamps).
        """
        reference = reference or datetime.now()
        tau = self.tau
        age_seconds = reference.timestamp() - created_at.timestamp()
        if tau <= 0 or age_seconds <= 0:
            return 1.0
        return math.exp(-age_seconds / tau)
