from __future__ import annotations

from typing import Mapping

from .config import ScoringWeights

SEVERITY_BASE: dict[str, int] = {"low": 30, "medium": 50, "high": 80}
SCORE_CAP = 100
SCORE_FLOOR = 0


def clamp_score(score: int, floor: int = SCORE_FLOOR, cap: int = SCORE_CAP) -> int:
    return max(floor, min(cap, int(score)))


def base_priority(severity: str | None, table: Mapping[str, int] | None = None) -> int:
    """Base priority for a severity; unknown or missing severities score as medium."""
    t = table or SEVERITY_BASE
    key = (severity or "medium").lower()
    return int(t.get(key, t["medium"]))


def compute_priority(severity: str | None, vote_count: int, weights: ScoringWeights | None = None) -> int:
    """Final priority: ``min(cap, base[severity] + vote_bonus * votes)``.

    Any AI-suggested score is deliberately not an input here.
    """
    w = weights or ScoringWeights()
    base = base_priority(severity, w.severity_base)
    bonus = max(0, int(vote_count)) * w.vote_bonus
    return clamp_score(base + bonus, floor=w.floor, cap=w.cap)
