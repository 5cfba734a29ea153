"""
Confidence Scoring Module
=========================

Maps detour evidence to a 0-100 score and a low/medium/high label.

Score:
    evidence_term = min(1, evidence_points / saturation_points)
    score = round(100 * (0.5 * evidence_term + 0.5 * overlap_fraction))
            + alert_bonus (when an official detour alert matches)
    clamped to [0, 100]

    Non-decreasing in evidence_points and in overlap_fraction.

Label:
    Ordered boundary lookup over (likely, high):
        score <  likely         -> low
        likely <= score < high  -> medium
        score >= high           -> high
"""

from bisect import bisect_right
from dataclasses import dataclass
from typing import Tuple

from .document import ConfidenceLevel

DEFAULT_SATURATION_POINTS = 20
ALERT_MATCH_BONUS = 8

_LABELS: Tuple[ConfidenceLevel, ...] = (
    ConfidenceLevel.LOW,
    ConfidenceLevel.MEDIUM,
    ConfidenceLevel.HIGH,
)


@dataclass(frozen=True)
class ConfidenceThresholds:
    """
    Score boundaries for confidence labels.

    Attributes:
        likely: Lowest score labelled medium (default: 70)
        high: Lowest score labelled high (default: 85)
    """
    likely: int = 70
    high: int = 85

    def __post_init__(self):
        """Validate boundary ordering."""
        if not 0 <= self.likely <= self.high <= 100:
            raise ValueError(
                f"Confidence thresholds must satisfy 0 <= likely <= high <= 100, "
                f"got likely={self.likely}, high={self.high}"
            )

    @property
    def boundaries(self) -> Tuple[int, int]:
        """Sorted boundaries for bisect lookup."""
        return (self.likely, self.high)


def score_confidence(
    evidence_points: int,
    overlap_fraction: float,
    alert_matched: bool = False,
    saturation_points: int = DEFAULT_SATURATION_POINTS
) -> int:
    """
    Compute the confidence score for a detour.

    Args:
        evidence_points: Off-route points backing the detour
        overlap_fraction: Best overlap between separate observations (0-1)
        alert_matched: True if an official detour-like alert names the route
        saturation_points: Evidence count at which the evidence term maxes out

    Returns:
        Integer score in [0, 100]
    """
    evidence_term = min(1.0, max(0, evidence_points) / max(1, saturation_points))
    overlap_term = min(1.0, max(0.0, overlap_fraction))

    score = round(100 * (0.5 * evidence_term + 0.5 * overlap_term))
    if alert_matched:
        score += ALERT_MATCH_BONUS

    return max(0, min(100, score))


def confidence_label(
    score: int,
    thresholds: ConfidenceThresholds = ConfidenceThresholds()
) -> ConfidenceLevel:
    """
    Label a score via ordered boundary lookup.

    Example:
        >>> confidence_label(69)
        <ConfidenceLevel.LOW: 'low'>
        >>> confidence_label(70)
        <ConfidenceLevel.MEDIUM: 'medium'>
        >>> confidence_label(85)
        <ConfidenceLevel.HIGH: 'high'>
    """
    return _LABELS[bisect_right(thresholds.boundaries, score)]
