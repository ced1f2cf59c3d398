"""Watcher result types."""

from enum import StrEnum

from pydantic import BaseModel, ConfigDict, Field


class CheckOutcome(StrEnum):
    """Result of one working-tree check pass.

    INDETERMINATE covers lock files, failed index refreshes, git errors and
    anything else that should be retried later rather than reported.
    """

    CHANGED = "changed"
    UNCHANGED = "unchanged"
    INDETERMINATE = "indeterminate"

    @property
    def is_definitive(self) -> bool:
        return self is not CheckOutcome.INDETERMINATE


class WatcherStats(BaseModel):
    """Snapshot of the watcher registry."""

    model_config = ConfigDict(frozen=True)

    total_watched: int = Field(..., ge=0, description="Number of watched sessions")
    sessions_needing_refresh: int = Field(..., ge=0, description="Sessions with a pending refresh")
