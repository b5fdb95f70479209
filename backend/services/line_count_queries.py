"""Read-only views over stored snapshots for dashboards."""

from datetime import datetime, timedelta, timezone
from typing import Optional

from models.line_tracker import (
    CategoryShare,
    CommitLineSnapshot,
    DailyLineCount,
    RepositoryLineCountHistory,
    utc_now,
)
from services.line_count_store import LineCountStore


def latest_snapshot(store: LineCountStore, repository_id: str) -> Optional[CommitLineSnapshot]:
    snapshots = store.list_snapshots(repository_id)
    return snapshots[-1] if snapshots else None


def line_count_history(
    store: LineCountStore,
    repository_id: str,
    days: int,
    now: Optional[datetime] = None,
) -> list[DailyLineCount]:
    """Snapshots from the last `days` days rolled up per UTC calendar day."""
    if days < 1:
        raise ValueError("days must be >= 1")
    cutoff = (now or utc_now()) - timedelta(days=days)

    by_day: dict[str, list[CommitLineSnapshot]] = {}
    for snapshot in store.list_snapshots(repository_id):
        if snapshot.commit_date < cutoff:
            continue
        day = snapshot.commit_date.astimezone(timezone.utc).date().isoformat()
        by_day.setdefault(day, []).append(snapshot)

    history: list[DailyLineCount] = []
    for day in sorted(by_day):
        snapshots = by_day[day]
        lines_by_category: dict[str, int] = {}
        for snapshot in snapshots:
            for category, lines in snapshot.lines_by_category.items():
                lines_by_category[category] = lines_by_category.get(category, 0) + lines
        added = sum(s.lines_added for s in snapshots)
        removed = sum(s.lines_removed for s in snapshots)
        history.append(
            DailyLineCount(
                date=day,
                total_lines=sum(s.total_lines for s in snapshots),
                lines_added=added,
                lines_removed=removed,
                net_lines=added - removed,
                commit_count=len(snapshots),
                lines_by_category=lines_by_category,
            )
        )
    return history


def all_repositories_line_count_history(
    store: LineCountStore, days: int, now: Optional[datetime] = None
) -> list[RepositoryLineCountHistory]:
    """Daily history of every tracked repository, ordered by owner and name."""
    repositories = sorted(store.list_repositories(), key=lambda r: (r.owner.lower(), r.name.lower()))
    return [
        RepositoryLineCountHistory(
            repository_id=repository.id,
            owner=repository.owner,
            name=repository.name,
            daily_line_counts=line_count_history(store, repository.id, days, now),
        )
        for repository in repositories
    ]


def category_percentages(store: LineCountStore, repository_id: str) -> list[CategoryShare]:
    """Share of each category across all snapshots, largest first."""
    totals: dict[str, int] = {}
    for snapshot in store.list_snapshots(repository_id):
        for category, lines in snapshot.lines_by_category.items():
            totals[category] = totals.get(category, 0) + lines

    grand_total = sum(totals.values())
    shares = [
        CategoryShare(
            category=category,
            line_count=lines,
            percentage=(lines / grand_total * 100) if grand_total > 0 else 0.0,
        )
        for category, lines in totals.items()
        if lines > 0
    ]
    return sorted(shares, key=lambda s: (-s.line_count, s.category))
