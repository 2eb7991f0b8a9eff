"""
Engine configuration for the unified sync orchestrator.

Kept free of settings imports so tests can build configurations directly.
"""

from dataclasses import dataclass
from enum import StrEnum


class StalenessPolicy(StrEnum):
    """How the per-entity sync timestamps decide whether the cache is stale."""

    PER_ENTITY = "per_entity"  # stale if any kind is missing or expired
    MOST_RECENT = "most_recent"  # stale only if the newest timestamp expired


@dataclass(frozen=True, slots=True)
class SyncConfig:
    weeks_to_load_initially: int = 2
    max_weeks_to_load: int = 26
    cache_timeout_minutes: float = 30.0
    auto_load_older_data: bool = True
    background_throttle_ms: int = 500
    background_start_delay_ms: int = 1000
    cache_refresh_every_weeks: int = 3
    stop_after_empty_weeks: int = 0
    staleness_policy: StalenessPolicy = StalenessPolicy.PER_ENTITY
    timezone: str = "UTC"
    contacts_fetch_cap: int = 200
    people_fetch_cap: int = 100
    users_fetch_cap: int = 50
    messages_per_week_cap: int = 500
    events_per_week_cap: int = 200

    def __post_init__(self) -> None:
        if self.max_weeks_to_load < 1:
            raise ValueError("max_weeks_to_load must be at least 1")
        if self.weeks_to_load_initially < 1:
            raise ValueError("weeks_to_load_initially must be at least 1")
        if self.cache_refresh_every_weeks < 1:
            raise ValueError("cache_refresh_every_weeks must be at least 1")
        if self.weeks_to_load_initially > self.max_weeks_to_load:
            object.__setattr__(self, "weeks_to_load_initially", self.max_weeks_to_load)

    @property
    def cache_timeout_seconds(self) -> float:
        return self.cache_timeout_minutes * 60.0
