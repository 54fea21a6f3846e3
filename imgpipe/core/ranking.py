"""
The single ranking policy shared by every analysis kind.

threshold filter -> stable sort by descending confidence -> truncate to limit.
"""

from dataclasses import dataclass
from typing import Iterable, List, Optional, Protocol, Sequence, Tuple, TypeVar

from .errors import InvalidParameter


class Scored(Protocol):
    confidence: float


S = TypeVar('S', bound=Scored)


def filter_by_confidence(observations: Iterable[S], threshold: float) -> List[S]:
    """Keep observations with ``confidence >= threshold``; 0 keeps everything."""
    return [o for o in observations if o.confidence >= threshold]


def sort_by_confidence(observations: Iterable[S]) -> List[S]:
    """
    Sort by descending confidence.

    ``sorted`` is stable with ``reverse=True`` too, so equal confidences keep
    the order the engine reported them in.
    """
    return sorted(observations, key=lambda o: o.confidence, reverse=True)


def truncate(observations: Sequence[S], limit: Optional[int]) -> List[S]:
    """
    Keep the first ``limit`` observations; None keeps all.

    Raises:
        InvalidParameter: If limit is negative
    """
    if limit is None:
        return list(observations)
    if limit < 0:
        raise InvalidParameter(f"limit must be >= 0, got {limit}")
    return list(observations[:limit])


def rank(observations: Iterable[S], threshold: float = 0.0, limit: Optional[int] = None) -> List[S]:
    """
    Apply the ranking policy.

    Example:
        >>> rank(observations, threshold=0.5, limit=1)
    """
    return truncate(sort_by_confidence(filter_by_confidence(observations, threshold)), limit)


@dataclass(frozen=True)
class RankedObservations:
    """Ranked observations plus how many passed the threshold before the limit."""

    observations: Tuple
    total_count: int

    @property
    def displayed_count(self) -> int:
        return len(self.observations)

    @property
    def truncated(self) -> bool:
        return self.displayed_count < self.total_count


def rank_observations(observations: Iterable[S], threshold: float = 0.0,
                      limit: Optional[int] = None) -> RankedObservations:
    """Rank and keep the post-threshold count for reporting."""
    ordered = sort_by_confidence(filter_by_confidence(observations, threshold))
    return RankedObservations(tuple(truncate(ordered, limit)), len(ordered))
