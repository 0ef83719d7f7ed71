"""Configuration models and helpers for the activity tracker."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import timedelta


@dataclass(slots=True)
class TrackerSettings:
    """Runtime configuration for the tracking engine."""

    idle_threshold: timedelta = timedelta(seconds=30)
    checkpoint_interval: timedelta = timedelta(seconds=30)
    idle_poll_interval: timedelta = timedelta(seconds=5)
    badge_refresh_interval: timedelta = timedelta(seconds=1)
    badge_min_elapsed: timedelta = timedelta(seconds=5)
    top_domains_limit: int = 10
    session_stats_days: int = 7
    commit_retries: int = 3
    commit_retry_delay: timedelta = timedelta(milliseconds=50)
    sample_idle: bool = False

    @classmethod
    def from_intervals(
        cls,
        idle_seconds: float,
        checkpoint_seconds: float,
        badge_seconds: float | None = None,
        sample_idle: bool = False,
    ) -> "TrackerSettings":
        badge = badge_seconds if badge_seconds is not None else 1.0
        return cls(
            idle_threshold=timedelta(seconds=idle_seconds),
            checkpoint_interval=timedelta(seconds=checkpoint_seconds),
            idle_poll_interval=timedelta(seconds=max(min(idle_seconds / 6, 5.0), 1.0)),
            badge_refresh_interval=timedelta(seconds=badge),
            sample_idle=sample_idle,
        )

    @property
    def idle_threshold_seconds(self) -> int:
        return int(self.idle_threshold.total_seconds())

    @property
    def badge_min_elapsed_ms(self) -> int:
        return int(self.badge_min_elapsed.total_seconds() * 1000)
