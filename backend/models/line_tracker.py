"""Data models for repository line tracking.

TrackedRepository is the aggregate root. CommitLineSnapshot and FailedOperation
both reference it by repository_id and are stored independently.
"""

import uuid
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

COMMIT_ANALYSIS = "commit_analysis"


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _new_id() -> str:
    return str(uuid.uuid4())


class TrackedRepository(BaseModel):
    """A repository registered for line tracking."""

    id: str = Field(default_factory=_new_id)
    owner: str
    name: str
    clone_url: str
    local_path: str | None = None  # Set after the first successful sync
    last_analyzed_commit_date: datetime | None = None
    last_analyzed_commit_id: str | None = None


class CommitLineSnapshot(BaseModel):
    """Line counts for one commit of one repository.

    At most one snapshot exists per (repository_id, commit_id).
    """

    model_config = ConfigDict(frozen=True)

    repository_id: str
    commit_id: str
    commit_date: datetime
    total_lines: int
    lines_added: int
    lines_removed: int
    lines_by_category: dict[str, int] = Field(default_factory=dict)

    @property
    def is_stale(self) -> bool:
        """True when the diff stats were never filled in (both counts zero)."""
        return self.lines_added == 0 and self.lines_removed == 0


class FailedOperation(BaseModel):
    """Dead-letter entry for a unit of work that raised."""

    id: str = Field(default_factory=_new_id)
    repository_id: str
    operation_type: str = COMMIT_ANALYSIS
    entity_id: str  # commit id for commit_analysis
    error_message: str = ""
    stack_trace: str = ""
    failed_at: datetime = Field(default_factory=utc_now)
    retry_count: int = 0
    last_retry_attempt: datetime | None = None
    context: dict[str, Any] = Field(default_factory=dict)

    def is_exhausted(self, max_retries: int) -> bool:
        return self.retry_count >= max_retries

    def is_retryable(
        self,
        max_retries: int,
        cooldown: timedelta,
        now: datetime | None = None,
    ) -> bool:
        """Return True if the entry is below the ceiling and out of cool-down."""
        if self.is_exhausted(max_retries):
            return False
        if self.last_retry_attempt is None:
            return True
        if now is None:
            now = utc_now()
        return now - self.last_retry_attempt >= cooldown


class CommitOutcome(str, Enum):
    SKIPPED = "skipped"
    PROCESSED = "processed"
    FAILED = "failed"


class CommitResult(BaseModel):
    """What happened to one commit during a repository pass."""

    commit_id: str
    outcome: CommitOutcome
    snapshot: CommitLineSnapshot | None = None
    error: str | None = None


class AnalysisSummary(BaseModel):
    """Result of one analyze_repository invocation."""

    repository_id: str
    total_commits: int = 0
    processed: int = 0
    skipped: int = 0
    failed: int = 0
    failed_commit_ids: list[str] = Field(default_factory=list)

    def add(self, result: CommitResult) -> None:
        self.total_commits += 1
        if result.outcome is CommitOutcome.PROCESSED:
            self.processed += 1
        elif result.outcome is CommitOutcome.SKIPPED:
            self.skipped += 1
        else:
            self.failed += 1
            self.failed_commit_ids.append(result.commit_id)


class TopFile(BaseModel):
    path: str
    category: str
    line_count: int


class DailyLineCount(BaseModel):
    """Snapshots of one calendar day (UTC) rolled up."""

    date: str  # ISO-8601 date
    total_lines: int
    lines_added: int
    lines_removed: int
    net_lines: int
    commit_count: int
    lines_by_category: dict[str, int] = Field(default_factory=dict)


class CategoryShare(BaseModel):
    category: str
    line_count: int
    percentage: float


class RepositoryLineCountHistory(BaseModel):
    repository_id: str
    owner: str
    name: str
    daily_line_counts: list[DailyLineCount] = Field(default_factory=list)
