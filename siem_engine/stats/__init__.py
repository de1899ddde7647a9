"""
Window and statistics utilities shared by the engines.

Components:
    windows: Window math, time buckets and the SlidingWindowTracker
    baseline: Population mean/std volume baseline
"""

from siem_engine.stats.baseline import (
    BaselineStatus,
    VolumeBaseline,
    population_mean,
    population_std,
)
from siem_engine.stats.windows import (
    SlidingWindowTracker,
    epoch_millis,
    sanitize_ip,
    time_bucket,
    utc_now,
    window_start,
)

__all__ = [
    "BaselineStatus",
    "VolumeBaseline",
    "population_mean",
    "population_std",
    "SlidingWindowTracker",
    "epoch_millis",
    "sanitize_ip",
    "time_bucket",
    "utc_now",
    "window_start",
]
