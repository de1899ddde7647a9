"""
Time window helpers and the sliding-window tracker.

This module provides the small time utilities shared by the detection and
correlation engines (window starts, fixed buckets, epoch stamps, IP
sanitizing) and the SlidingWindowTracker, which remembers keyed
observations across cycles so counts can span more than one batch.

Example:
    >>> tracker = SlidingWindowTracker(window=timedelta(minutes=5))
    >>> tracker.record("203.0.113.10", "evt-1", now)
    >>> tracker.count("203.0.113.10", now)
    1
"""

import re
from collections import OrderedDict
from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional

import structlog

logger = structlog.get_logger(__name__)


DEFAULT_MAX_KEYS = 10_000

_UNSAFE_ID_CHARS = re.compile(r"[^A-Za-z0-9]")


def utc_now() -> datetime:
    """Return the current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


def window_start(now: datetime, window: timedelta) -> datetime:
    """
    Return the inclusive start of a window ending at now.

    Args:
        now: Window end.
        window: Window length.

    Returns:
        datetime: now - window.
    """
    return now - window


def time_bucket(timestamp: datetime, bucket: timedelta) -> datetime:
    """
    Floor a timestamp to a fixed bucket boundary (epoch aligned).

    Args:
        timestamp: Aware timestamp.
        bucket: Bucket size.

    Returns:
        datetime: Bucket start.

    Example:
        >>> ts = datetime(2025, 1, 26, 12, 7, 30, tzinfo=timezone.utc)
        >>> time_bucket(ts, timedelta(minutes=5))
        datetime.datetime(2025, 1, 26, 12, 5, tzinfo=datetime.timezone.utc)
    """
    size = int(bucket.total_seconds())
    if size <= 0:
        raise ValueError(f"bucket must be positive, got {bucket}")
    epoch = int(timestamp.timestamp())
    return datetime.fromtimestamp(epoch - epoch % size, tz=timezone.utc)


def epoch_millis(timestamp: datetime) -> int:
    """Return a timestamp as integer epoch milliseconds."""
    return int(timestamp.timestamp() * 1000)


def sanitize_ip(ip: Optional[str]) -> str:
    """
    Make an IP address safe for use inside an identifier.

    Args:
        ip: IPv4 or IPv6 address.

    Returns:
        str: Address with separators replaced by underscores.

    Example:
        >>> sanitize_ip("203.0.113.10")
        '203_0_113_10'
    """
    if not ip:
        return "unknown"
    return _UNSAFE_ID_CHARS.sub("_", ip)


class SlidingWindowTracker:
    """
    Remembers keyed observations inside a sliding time window.

    Each key (for example a source IP) maps to the ids and timestamps of
    the observations recorded for it. Observations older than the window
    are pruned on access and by sweep(). The number of keys is bounded;
    when full, the least recently updated key is evicted.

    Attributes:
        window: Length of the sliding window.
        max_keys: Maximum number of keys retained.
        _observations: Key to {item_id: timestamp}, in update order.

    Example:
        >>> tracker = SlidingWindowTracker(window=timedelta(minutes=5))
        >>> t0 = datetime(2025, 1, 26, 12, 0, tzinfo=timezone.utc)
        >>> tracker.record("10.0.0.1", "a", t0)
        >>> tracker.record("10.0.0.1", "b", t0 + timedelta(minutes=1))
        >>> tracker.count("10.0.0.1", t0 + timedelta(minutes=2))
        2
        >>> tracker.count("10.0.0.1", t0 + timedelta(minutes=5, seconds=30))
        1
    """

    def __init__(
        self,
        window: timedelta,
        max_keys: int = DEFAULT_MAX_KEYS,
    ) -> None:
        if max_keys < 1:
            raise ValueError(f"max_keys must be >= 1, got {max_keys}")
        self.window = window
        self.max_keys = max_keys
        self._observations: "OrderedDict[str, Dict[str, datetime]]" = OrderedDict()

    def record(self, key: str, item_id: str, timestamp: datetime) -> None:
        """
        Record one observation for a key.

        Recording the same item id twice keeps a single observation.

        Args:
            key: Grouping key.
            item_id: Unique id of the observation.
            timestamp: When it happened.
        """
        items = self._observations.get(key)
        if items is None:
            items = {}
            self._observations[key] = items
            self._evict_overflow()
        items[item_id] = timestamp
        self._observations.move_to_end(key)

    def _evict_overflow(self) -> None:
        while len(self._observations) > self.max_keys:
            evicted, _ = self._observations.popitem(last=False)
            logger.warning(
                "sliding_window_key_evicted",
                key=evicted,
                max_keys=self.max_keys,
            )

    def _prune(self, key: str, now: datetime) -> Dict[str, datetime]:
        items = self._observations.get(key, {})
        cutoff = window_start(now, self.window)
        stale = [item_id for item_id, ts in items.items() if ts < cutoff]
        for item_id in stale:
            del items[item_id]
        if not items and key in self._observations:
            del self._observations[key]
        return items

    def items(self, key: str, now: datetime) -> List[str]:
        """
        Get the in-window observation ids for a key, oldest first.

        Args:
            key: Grouping key.
            now: Window end.

        Returns:
            List[str]: Observation ids.
        """
        items = self._prune(key, now)
        return [item_id for item_id, _ in sorted(items.items(), key=lambda kv: kv[1])]

    def count(self, key: str, now: datetime) -> int:
        """
        Count in-window observations for a key.

        Args:
            key: Grouping key.
            now: Window end.

        Returns:
            int: Number of observations.
        """
        return len(self._prune(key, now))

    def sweep(self, now: datetime) -> int:
        """
        Drop every observation older than the window.

        Args:
            now: Window end.

        Returns:
            int: Number of keys removed entirely.
        """
        before = len(self._observations)
        for key in list(self._observations.keys()):
            self._prune(key, now)
        removed = before - len(self._observations)
        if removed:
            logger.debug(
                "sliding_window_swept",
                keys_removed=removed,
                keys_remaining=len(self._observations),
            )
        return removed

    def __len__(self) -> int:
        return len(self._observations)

    def __contains__(self, key: str) -> bool:
        return key in self._observations
