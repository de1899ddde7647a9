"""
Volume baseline statistics for anomaly detection.

This module computes a population baseline over per-key counts (typically
requests per source IP in one detection batch) and flags keys that exceed
both a statistical threshold and an absolute floor.

Key Safety Features:
    - Not ready with fewer than MIN_KEYS distinct keys (std is 0)
    - Not ready when std is 0 (flat traffic protection)
    - Absolute floor so quiet networks never alert on small counts

Classes:
    BaselineStatus: Snapshot of the computed baseline
    VolumeBaseline: Population mean/std threshold over counts
"""

import math
from dataclasses import dataclass
from typing import Dict, List, Mapping, Sequence, Tuple


def population_mean(values: Sequence[float]) -> float:
    """
    Calculate the population mean.

    Args:
        values: Sample values.

    Returns:
        float: Mean, or 0.0 for an empty sequence.
    """
    if not values:
        return 0.0
    return sum(values) / len(values)


def population_std(values: Sequence[float], mean: float) -> float:
    """
    Calculate the population standard deviation (n in the denominator).

    Args:
        values: Sample values.
        mean: Pre-computed mean.

    Returns:
        float: Standard deviation, or 0.0 for an empty sequence.
    """
    if not values:
        return 0.0
    variance = sum((v - mean) ** 2 for v in values) / len(values)
    return math.sqrt(variance)


@dataclass
class BaselineStatus:
    """
    Snapshot of a computed baseline.

    Attributes:
        keys_observed: Number of distinct keys in the batch.
        mean: Population mean of the counts.
        std: Population standard deviation of the counts.
        threshold: mean + multiplier * std.
        is_ready: True if enough keys and a non-zero spread.
    """

    keys_observed: int
    mean: float
    std: float
    threshold: float
    is_ready: bool


class VolumeBaseline:
    """
    Population baseline over per-key counts.

    Formula:
        threshold = mean + multiplier * std

    A key is an outlier when its count exceeds the threshold AND the floor.

    Example:
        >>> baseline = VolumeBaseline(multiplier=3.0, floor=50)
        >>> baseline.outliers({"a": 10, "b": 10, "c": 10, "d": 60})
        []

    Attributes:
        MIN_KEYS: Minimum distinct keys before a spread exists (2).
    """

    MIN_KEYS: int = 2

    def __init__(self, multiplier: float = 3.0, floor: int = 50) -> None:
        """
        Initialize the baseline.

        Args:
            multiplier: Standard deviations above the mean (k).
            floor: Absolute minimum count for an outlier.

        Raises:
            ValueError: If multiplier or floor is negative.
        """
        if multiplier < 0:
            raise ValueError(f"multiplier must be >= 0, got {multiplier}")
        if floor < 0:
            raise ValueError(f"floor must be >= 0, got {floor}")
        self.multiplier = multiplier
        self.floor = floor

    def compute(self, counts: Mapping[str, int]) -> BaselineStatus:
        """
        Compute the baseline for a set of counts.

        Args:
            counts: Count per key.

        Returns:
            BaselineStatus: The computed statistics.
        """
        values = [float(c) for c in counts.values()]
        mean = population_mean(values)
        std = population_std(values, mean)
        return BaselineStatus(
            keys_observed=len(values),
            mean=mean,
            std=std,
            threshold=mean + self.multiplier * std,
            is_ready=len(values) >= self.MIN_KEYS and std > 0,
        )

    def outliers(
        self,
        counts: Mapping[str, int],
    ) -> List[Tuple[str, int, BaselineStatus]]:
        """
        Find keys whose count exceeds both the threshold and the floor.

        Args:
            counts: Count per key.

        Returns:
            List of (key, count, status) tuples, in input order.
        """
        status = self.compute(counts)
        if not status.is_ready:
            return []

        flagged: List[Tuple[str, int, BaselineStatus]] = []
        for key, count in counts.items():
            if count > status.threshold and count > self.floor:
                flagged.append((key, count, status))
        return flagged

