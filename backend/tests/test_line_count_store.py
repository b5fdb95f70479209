"""Tests for the in-memory and JSON file line count stores."""

import json
from datetime import datetime, timedelta, timezone

import pytest

from models.line_tracker import CommitLineSnapshot, FailedOperation, TopFile, TrackedRepository
from services.line_count_store import InMemoryLineCountStore, JsonFileLineCountStore

T0 = datetime(2024, 1, 1, tzinfo=timezone.utc)


@pytest.fixture(params=["memory", "json"])
def store(request, tmp_path):
    if request.param == "memory":
        return InMemoryLineCountStore()
    return JsonFileLineCountStore(tmp_path / "data")


def _repository(**kwargs) -> TrackedRepository:
    return TrackedRepository(owner="acme", name="app", clone_url="https://example.com/acme/app.git", **kwargs)


def _snapshot(repository_id, commit_id, minutes=0, total=10) -> CommitLineSnapshot:
    return CommitLineSnapshot(
        repository_id=repository_id,
        commit_id=commit_id,
        commit_date=T0 + timedelta(minutes=minutes),
        total_lines=total,
        lines_added=total,
        lines_removed=0,
        lines_by_category={".cs": total},
    )


def test_repository_round_trip(store):
    repository = _repository()
    store.add_repository(repository)

    assert store.get_repository(repository.id) == repository
    assert store.list_repositories() == [repository]
    assert store.get_repository("missing") is None


def test_duplicate_repository_rejected(store):
    repository = _repository()
    store.add_repository(repository)
    with pytest.raises(ValueError):
        store.add_repository(repository)


def test_update_repository(store):
    repository = _repository()
    store.add_repository(repository)
    repository.local_path = "/repos/app"
    repository.last_analyzed_commit_date = T0
    store.update_repository(repository)

    stored = store.get_repository(repository.id)
    assert stored.local_path == "/repos/app"
    assert stored.last_analyzed_commit_date == T0


def test_update_unknown_repository_raises(store):
    with pytest.raises(KeyError):
        store.update_repository(_repository())


def test_returned_repository_is_a_copy(store):
    repository = _repository()
    store.add_repository(repository)
    store.get_repository(repository.id).local_path = "/changed"
    assert store.get_repository(repository.id).local_path is None


def test_upsert_snapshot_never_duplicates(store):
    store.upsert_snapshot(_snapshot("r1", "abc", total=10))
    store.upsert_snapshot(_snapshot("r1", "abc", total=12))

    snapshots = store.list_snapshots("r1")
    assert len(snapshots) == 1
    assert snapshots[0].total_lines == 12
    assert store.snapshot_exists("r1", "abc") is True
    assert store.snapshot_exists("r1", "def") is False
    assert store.snapshot_exists("r2", "abc") is False


def test_snapshots_listed_by_commit_date(store):
    store.upsert_snapshot(_snapshot("r1", "c", minutes=2))
    store.upsert_snapshot(_snapshot("r1", "a", minutes=0))
    store.upsert_snapshot(_snapshot("r1", "b", minutes=1))

    assert [s.commit_id for s in store.list_snapshots("r1")] == ["a", "b", "c"]


def test_delete_snapshots(store):
    store.upsert_snapshot(_snapshot("r1", "a"))
    store.upsert_snapshot(_snapshot("r2", "a"))
    store.delete_snapshots("r1")

    assert store.list_snapshots("r1") == []
    assert len(store.list_snapshots("r2")) == 1


def test_top_files(store):
    files = [TopFile(path=f"f{i}.cs", category=".cs", line_count=10 - i) for i in range(6)]
    store.save_top_files("r1", files)

    assert store.get_top_files("r1") == files[:5]
    assert store.get_top_files("r1", 2) == files[:2]
    assert store.get_top_files("r2") == []


def test_failure_lifecycle(store):
    op = FailedOperation(repository_id="r1", entity_id="abc", error_message="boom")
    store.record_failure(op)
    assert store.get_failure(op.id) == op

    op.retry_count = 1
    op.last_retry_attempt = T0
    store.update_failure(op)
    assert store.get_failure(op.id).retry_count == 1

    store.delete_failure(op.id)
    assert store.get_failure(op.id) is None
    # Deleting again only logs
    store.delete_failure(op.id)


def test_update_unknown_failure_raises(store):
    with pytest.raises(KeyError):
        store.update_failure(FailedOperation(repository_id="r1", entity_id="abc"))


def test_list_retryable(store):
    fresh = FailedOperation(repository_id="r1", entity_id="a")
    cooling = FailedOperation(repository_id="r1", entity_id="b", retry_count=1, last_retry_attempt=T0)
    exhausted = FailedOperation(repository_id="r1", entity_id="c", retry_count=3, last_retry_attempt=T0)
    for op in (fresh, cooling, exhausted):
        store.record_failure(op)

    ids = {op.id for op in store.list_retryable(3, timedelta(minutes=5), T0 + timedelta(minutes=1))}
    assert ids == {fresh.id}

    ids = {op.id for op in store.list_retryable(3, timedelta(minutes=5), T0 + timedelta(minutes=5))}
    assert ids == {fresh.id, cooling.id}


def test_delete_repository_cascades(store):
    keep = _repository()
    drop = _repository()
    store.add_repository(keep)
    store.add_repository(drop)
    for repository in (keep, drop):
        store.upsert_snapshot(_snapshot(repository.id, "abc"))
        store.save_top_files(repository.id, [TopFile(path="a.cs", category=".cs", line_count=1)])
        store.record_failure(FailedOperation(repository_id=repository.id, entity_id="def"))

    store.delete_repository(drop.id)

    assert store.get_repository(drop.id) is None
    assert store.list_snapshots(drop.id) == []
    assert store.get_top_files(drop.id) == []
    assert store.list_failures(drop.id) == []
    assert len(store.list_snapshots(keep.id)) == 1
    assert len(store.list_failures(keep.id)) == 1
    assert len(store.get_top_files(keep.id)) == 1


def test_json_store_persists_across_instances(tmp_path):
    repository = _repository()
    first = JsonFileLineCountStore(tmp_path / "data")
    first.add_repository(repository)
    first.upsert_snapshot(_snapshot(repository.id, "abc"))
    first.record_failure(FailedOperation(repository_id=repository.id, entity_id="def"))

    second = JsonFileLineCountStore(tmp_path / "data")
    assert second.get_repository(repository.id) == repository
    assert second.get_snapshot(repository.id, "abc") == _snapshot(repository.id, "abc")
    assert len(second.list_failures(repository.id)) == 1


def test_json_store_file_layout(tmp_path):
    store = JsonFileLineCountStore(tmp_path / "data")
    store.upsert_snapshot(_snapshot("r1", "abc"))

    payload = json.loads((tmp_path / "data" / "snapshots" / "r1.json").read_text(encoding="utf-8"))
    assert payload["version"] == "1.0"
    assert list(payload["items"]) == ["abc"]
    assert payload["items"]["abc"]["commit_date"].startswith("2024-01-01T00:00:00")
    # No temp files left behind
    assert [p.name for p in (tmp_path / "data" / "snapshots").iterdir()] == ["r1.json"]


def test_json_store_invalid_file_raises(tmp_path):
    data_dir = tmp_path / "data"
    data_dir.mkdir()
    (data_dir / "repositories.json").write_text("{broken", encoding="utf-8")

    with pytest.raises(ValueError, match="Invalid JSON"):
        JsonFileLineCountStore(data_dir).list_repositories()
