"""Typed rows exchanged with the store.

One model per table, validated on construction so nothing malformed reaches
an INSERT.
"""
from datetime import date, datetime
from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator


class TaskStatus(str, Enum):
    READY = "ready"
    IN_PROGRESS = "in_progress"
    DONE = "done"
    NEEDS_SPLIT = "needs_split"
    DISABLED = "disabled"


class RepositoryRecord(BaseModel):
    repo_id: int = Field(gt=0)
    full_name: str = Field(min_length=3)
    html_url: str
    api_url: str
    owner_login: str
    owner_type: Optional[str] = None
    description: Optional[str] = None
    language: Optional[str] = None
    is_fork: bool = False
    is_archived: bool = False
    created_at: Optional[datetime] = None
    pushed_at: Optional[datetime] = None
    last_seen_at: datetime


class SnapshotRecord(BaseModel):
    repo_id: int = Field(gt=0)
    captured_at: datetime
    captured_date: date
    stars_count: int = Field(ge=0)
    forks_count: Optional[int] = Field(default=None, ge=0)
    open_issues_count: Optional[int] = Field(default=None, ge=0)
    source: str = "search"


class TaskSignature(BaseModel):
    """Identity of a partition: window × band × pushed-after filter."""

    model_config = ConfigDict(frozen=True)

    created_from: date
    created_to: date
    stars_min: int = Field(ge=0)
    stars_max: Optional[int] = None
    pushed_after: Optional[date] = None

    @model_validator(mode="after")
    def _check_bounds(self) -> "TaskSignature":
        if self.created_to < self.created_from:
            raise ValueError("created_to precedes created_from")
        if self.stars_max is not None and self.stars_max < self.stars_min:
            raise ValueError("stars_max is below stars_min")
        return self


class TaskRecord(BaseModel):
    id: int
    created_from: date
    created_to: date
    stars_min: int
    stars_max: Optional[int] = None
    pushed_after: Optional[date] = None
    status: TaskStatus
    page: int = Field(ge=1)
    refresh_every_days: int = 7
    last_started_at: Optional[datetime] = None
    last_completed_at: Optional[datetime] = None
    last_error: Optional[str] = None
    consecutive_failures: int = 0

    @property
    def signature(self) -> TaskSignature:
        return TaskSignature(
            created_from=self.created_from,
            created_to=self.created_to,
            stars_min=self.stars_min,
            stars_max=self.stars_max,
            pushed_after=self.pushed_after,
        )


class TaskOutcome(BaseModel):
    """Result of one crawl attempt on a claimed task."""

    status: TaskStatus
    page: int = Field(ge=1)
    error: Optional[str] = None
    repos_upserted: int = 0
    snapshots_upserted: int = 0
    pages_fetched: int = 0

    @property
    def failed(self) -> bool:
        return self.error is not None


class SnapshotPoint(BaseModel):
    captured_at: datetime
    stars_count: int


class TrendPair(BaseModel):
    """Latest snapshot of a repository paired with its prior reference point."""

    repo_id: int
    stars_now: int
    captured_at: datetime
    stars_prev: Optional[int] = None
    prev_captured_at: Optional[datetime] = None


class TrendRecord(BaseModel):
    repo_id: int
    computed_at: datetime
    stars_now: int = Field(ge=0)
    stars_prev: Optional[int] = Field(default=None, ge=0)
    prev_captured_at: Optional[datetime] = None
    abs_growth_14d: Optional[int] = None
    pct_growth_14d: Optional[float] = None
    score: Optional[float] = Field(default=None, ge=0)
    is_new: bool = False


class TrendView(BaseModel):
    """Trend row joined with repository metadata, as served to readers."""

    repo_id: int
    full_name: str
    html_url: str
    description: Optional[str] = None
    language: Optional[str] = None
    stars_now: int
    abs_growth_14d: Optional[int] = None
    pct_growth_14d: Optional[float] = None
    score: Optional[float] = None
    is_new: bool
    computed_at: datetime


class RunRecord(BaseModel):
    endpoint: str
    started_at: datetime
    completed_at: datetime
    tasks_processed: int = 0
    repos_upserted: int = 0
    snapshots_upserted: int = 0
    errors_count: int = 0
    error_message: Optional[str] = None
