"""Tests for the background retry scheduler and the commit analysis retry handler."""

import asyncio
from datetime import datetime, timedelta, timezone
from pathlib import Path

from git import Repo

from models.line_tracker import CommitLineSnapshot, FailedOperation, TrackedRepository
from services.commit_analyzer import CommitAnalyzer
from services.line_count_store import InMemoryLineCountStore
from services.repository_sync import RepositoryLockRegistry
from services.retry_scheduler import (
    CommitAnalysisRetryHandler,
    RetryScheduler,
    commit_analysis_handlers,
)
from utils.file_classifier import FileClassifier, load_classification_policy

NOW = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)


class RecordingHandler:
    def __init__(self, error=None):
        self.error = error
        self.calls = []

    def retry(self, operation, store):
        self.calls.append(operation.id)
        if self.error is not None:
            raise self.error


def _scheduler(store, handler, locks=None, **kwargs) -> RetryScheduler:
    return RetryScheduler(
        store_factory=lambda: store,
        handlers={"commit_analysis": handler},
        locks=locks or RepositoryLockRegistry(),
        **kwargs,
    )


def _failure(store, repository_id="r1", commit_id="abc", **kwargs) -> FailedOperation:
    op = FailedOperation(repository_id=repository_id, entity_id=commit_id, **kwargs)
    store.record_failure(op)
    return op


def test_successful_retry_resolves_entry():
    store = InMemoryLineCountStore()
    op = _failure(store)
    handler = RecordingHandler()

    counts = _scheduler(store, handler).run_once(NOW)

    assert counts == {"attempted": 1, "resolved": 1, "failed": 0, "deferred": 0}
    assert handler.calls == [op.id]
    assert store.get_failure(op.id) is None


def test_failed_retry_increments_count_and_waits_for_cooldown():
    store = InMemoryLineCountStore()
    op = _failure(store)
    scheduler = _scheduler(store, RecordingHandler(RuntimeError("still broken")))

    counts = scheduler.run_once(NOW)
    assert counts["failed"] == 1

    stored = store.get_failure(op.id)
    assert stored.retry_count == 1
    assert stored.last_retry_attempt == NOW
    assert stored.error_message == "still broken"

    # Inside the cool-down window nothing is attempted
    assert scheduler.run_once(NOW + timedelta(minutes=1))["attempted"] == 0
    assert scheduler.run_once(NOW + timedelta(minutes=5))["attempted"] == 1


def test_exhausted_entry_is_never_retried_again():
    store = InMemoryLineCountStore()
    op = _failure(store)
    handler = RecordingHandler(RuntimeError("nope"))
    scheduler = _scheduler(store, handler)

    for cycle in range(5):
        scheduler.run_once(NOW + timedelta(minutes=10 * cycle))

    assert len(handler.calls) == 3
    assert store.get_failure(op.id).retry_count == 3


def test_retry_deferred_while_repository_is_being_analyzed():
    store = InMemoryLineCountStore()
    op = _failure(store)
    locks = RepositoryLockRegistry()
    handler = RecordingHandler()

    with locks.hold("r1"):
        counts = _scheduler(store, handler, locks=locks).run_once(NOW)

    assert counts["deferred"] == 1
    assert handler.calls == []
    assert store.get_failure(op.id).retry_count == 0


def test_entry_removed_during_cycle_is_skipped():
    store = InMemoryLineCountStore()
    first = _failure(store, commit_id="a1", failed_at=NOW - timedelta(minutes=3))
    second = _failure(store, commit_id="a2", failed_at=NOW - timedelta(minutes=2))
    third = _failure(store, commit_id="a3", failed_at=NOW - timedelta(minutes=1))

    class DeletingHandler(RecordingHandler):
        def retry(self, operation, store):
            if operation.id == first.id:
                store.delete_failure(second.id)
            super().retry(operation, store)

    handler = DeletingHandler(RuntimeError("boom"))
    counts = _scheduler(store, handler).run_once(NOW)

    assert handler.calls == [first.id, third.id]
    assert counts == {"attempted": 2, "resolved": 0, "failed": 2, "deferred": 0}
    assert store.get_failure(second.id) is None
    assert store.get_failure(third.id).retry_count == 1


def test_entry_deleted_by_its_own_retry_is_not_recreated():
    store = InMemoryLineCountStore()
    op = _failure(store)

    class SelfDeletingHandler(RecordingHandler):
        def retry(self, operation, store):
            store.delete_failure(operation.id)
            super().retry(operation, store)

    counts = _scheduler(store, SelfDeletingHandler(RuntimeError("gone"))).run_once(NOW)

    assert counts["failed"] == 1
    assert store.get_failure(op.id) is None


def test_unknown_operation_type_is_left_alone():
    store = InMemoryLineCountStore()
    op = _failure(store, operation_type="something_else")

    counts = _scheduler(store, RecordingHandler()).run_once(NOW)

    assert counts["attempted"] == 0
    assert store.get_failure(op.id).retry_count == 0


def test_run_forever_polls_until_stopped():
    store = InMemoryLineCountStore()
    cycles = []

    class CountingScheduler(RetryScheduler):
        def run_once(self, now=None):
            cycles.append(now)
            return super().run_once(now)

    scheduler = CountingScheduler(
        store_factory=lambda: store,
        handlers={},
        interval_seconds=0.01,
        locks=RepositoryLockRegistry(),
    )

    async def main():
        stop_event = asyncio.Event()
        task = asyncio.create_task(scheduler.run_forever(stop_event))
        await asyncio.sleep(0.1)
        stop_event.set()
        await asyncio.wait_for(task, timeout=5)

    asyncio.run(main())
    assert len(cycles) >= 2


# Commit analysis handler


def _init_repo(path: Path) -> Repo:
    path.mkdir(parents=True, exist_ok=True)
    repo = Repo.init(path)
    repo.config_writer().set_value("user", "name", "Tester").release()
    repo.config_writer().set_value("user", "email", "tester@example.com").release()
    return repo


def _analyzer() -> CommitAnalyzer:
    return CommitAnalyzer(FileClassifier(load_classification_policy()), [".cs"])


class ExplodingAnalyzer(CommitAnalyzer):
    def __init__(self):
        super().__init__(FileClassifier(load_classification_policy()), [".cs"])

    def analyze_commit(self, repo_path, commit_id, repository_id):
        raise AssertionError("analyzer should not run")


def test_commit_analysis_retry_stores_snapshot(tmp_path):
    repo = _init_repo(tmp_path / "repo")
    (tmp_path / "repo" / "a.cs").write_text("int a;\nint b;\n", encoding="utf-8")
    repo.git.add("--all")
    commit = repo.index.commit("first")

    store = InMemoryLineCountStore()
    repository = TrackedRepository(owner="acme", name="app", clone_url="unused")
    store.add_repository(repository)
    op = _failure(
        store,
        repository_id=repository.id,
        commit_id=commit.hexsha,
        context={"local_path": str(tmp_path / "repo")},
    )

    scheduler = RetryScheduler(
        store_factory=lambda: store,
        handlers=commit_analysis_handlers(_analyzer()),
        locks=RepositoryLockRegistry(),
    )
    counts = scheduler.run_once(NOW)

    assert counts["resolved"] == 1
    assert store.get_failure(op.id) is None
    snapshot = store.get_snapshot(repository.id, commit.hexsha)
    assert snapshot.total_lines == 2
    assert snapshot.lines_added == 2


def test_commit_analysis_retry_fails_for_deleted_repository():
    store = InMemoryLineCountStore()
    op = _failure(store, repository_id="gone", context={"local_path": "/nowhere"})
    scheduler = RetryScheduler(
        store_factory=lambda: store,
        handlers=commit_analysis_handlers(ExplodingAnalyzer()),
        locks=RepositoryLockRegistry(),
    )

    assert scheduler.run_once(NOW)["failed"] == 1
    assert "Repository not found" in store.get_failure(op.id).error_message


def test_commit_analysis_retry_skips_already_analyzed_commit():
    store = InMemoryLineCountStore()
    repository = TrackedRepository(owner="acme", name="app", clone_url="unused", local_path="/x")
    store.add_repository(repository)
    store.upsert_snapshot(
        CommitLineSnapshot(
            repository_id=repository.id,
            commit_id="abc",
            commit_date=NOW,
            total_lines=10,
            lines_added=10,
            lines_removed=0,
        )
    )
    op = _failure(store, repository_id=repository.id, commit_id="abc")

    CommitAnalysisRetryHandler(ExplodingAnalyzer()).retry(op, store)
    assert store.get_snapshot(repository.id, "abc").total_lines == 10
