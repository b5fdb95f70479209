"""Storage for tracked repositories, commit line snapshots and failed operations.

LineCountStore is the contract the analysis pipeline depends on. Two
implementations are provided:
- InMemoryLineCountStore: process-local dictionaries (tests, ephemeral runs)
- JsonFileLineCountStore: JSON documents under a data directory, written
  atomically so a crash never leaves a half-written file behind

Snapshots are keyed by (repository_id, commit_id); upsert_snapshot replaces
the existing entry for that key and never adds a second one.
"""

import json
import logging
import os
import tempfile
import threading
from datetime import datetime, timedelta
from pathlib import Path
from typing import Optional

from models.line_tracker import (
    CommitLineSnapshot,
    FailedOperation,
    TopFile,
    TrackedRepository,
)

logger = logging.getLogger(__name__)


class LineCountStore:
    """Persistence contract for the line tracker."""

    # Repositories
    def add_repository(self, repository: TrackedRepository) -> None:
        raise NotImplementedError

    def get_repository(self, repository_id: str) -> Optional[TrackedRepository]:
        raise NotImplementedError

    def update_repository(self, repository: TrackedRepository) -> None:
        raise NotImplementedError

    def list_repositories(self) -> list[TrackedRepository]:
        raise NotImplementedError

    def delete_repository(self, repository_id: str) -> None:
        """Delete a repository together with its snapshots, failures and top files."""
        raise NotImplementedError

    # Snapshots
    def upsert_snapshot(self, snapshot: CommitLineSnapshot) -> None:
        raise NotImplementedError

    def get_snapshot(self, repository_id: str, commit_id: str) -> Optional[CommitLineSnapshot]:
        raise NotImplementedError

    def snapshot_exists(self, repository_id: str, commit_id: str) -> bool:
        return self.get_snapshot(repository_id, commit_id) is not None

    def list_snapshots(self, repository_id: str) -> list[CommitLineSnapshot]:
        """Snapshots of a repository ordered by commit date."""
        raise NotImplementedError

    def delete_snapshots(self, repository_id: str) -> None:
        raise NotImplementedError

    # Top files
    def save_top_files(self, repository_id: str, top_files: list[TopFile]) -> None:
        raise NotImplementedError

    def get_top_files(self, repository_id: str, count: int = 5) -> list[TopFile]:
        raise NotImplementedError

    # Failed operations
    def record_failure(self, operation: FailedOperation) -> None:
        raise NotImplementedError

    def get_failure(self, operation_id: str) -> Optional[FailedOperation]:
        raise NotImplementedError

    def list_failures(self, repository_id: Optional[str] = None) -> list[FailedOperation]:
        raise NotImplementedError

    def update_failure(self, operation: FailedOperation) -> None:
        raise NotImplementedError

    def delete_failure(self, operation_id: str) -> None:
        raise NotImplementedError

    def list_retryable(
        self,
        max_retries: int,
        cooldown: timedelta = timedelta(minutes=5),
        now: Optional[datetime] = None,
    ) -> list[FailedOperation]:
        """Failed operations below the retry ceiling whose cool-down has elapsed."""
        return [
            op
            for op in self.list_failures()
            if op.is_retryable(max_retries, cooldown, now)
        ]


def _sorted_snapshots(snapshots) -> list[CommitLineSnapshot]:
    return sorted(snapshots, key=lambda s: (s.commit_date, s.commit_id))


class InMemoryLineCountStore(LineCountStore):
    """Dictionary-backed store. Safe to share between threads."""

    def __init__(self):
        self._lock = threading.RLock()
        self._repositories: dict[str, TrackedRepository] = {}
        self._snapshots: dict[str, dict[str, CommitLineSnapshot]] = {}
        self._top_files: dict[str, list[TopFile]] = {}
        self._failures: dict[str, FailedOperation] = {}

    def add_repository(self, repository: TrackedRepository) -> None:
        with self._lock:
            if repository.id in self._repositories:
                raise ValueError(f"Repository already exists: {repository.id}")
            self._repositories[repository.id] = repository.model_copy(deep=True)

    def get_repository(self, repository_id: str) -> Optional[TrackedRepository]:
        with self._lock:
            repository = self._repositories.get(repository_id)
            return repository.model_copy(deep=True) if repository else None

    def update_repository(self, repository: TrackedRepository) -> None:
        with self._lock:
            if repository.id not in self._repositories:
                raise KeyError(f"Repository not found: {repository.id}")
            self._repositories[repository.id] = repository.model_copy(deep=True)

    def list_repositories(self) -> list[TrackedRepository]:
        with self._lock:
            return [r.model_copy(deep=True) for r in self._repositories.values()]

    def delete_repository(self, repository_id: str) -> None:
        with self._lock:
            self._repositories.pop(repository_id, None)
            self._snapshots.pop(repository_id, None)
            self._top_files.pop(repository_id, None)
            for op_id in [
                op.id for op in self._failures.values() if op.repository_id == repository_id
            ]:
                del self._failures[op_id]

    def upsert_snapshot(self, snapshot: CommitLineSnapshot) -> None:
        with self._lock:
            self._snapshots.setdefault(snapshot.repository_id, {})[snapshot.commit_id] = snapshot

    def get_snapshot(self, repository_id: str, commit_id: str) -> Optional[CommitLineSnapshot]:
        with self._lock:
            return self._snapshots.get(repository_id, {}).get(commit_id)

    def list_snapshots(self, repository_id: str) -> list[CommitLineSnapshot]:
        with self._lock:
            return _sorted_snapshots(self._snapshots.get(repository_id, {}).values())

    def delete_snapshots(self, repository_id: str) -> None:
        with self._lock:
            self._snapshots.pop(repository_id, None)

    def save_top_files(self, repository_id: str, top_files: list[TopFile]) -> None:
        with self._lock:
            self._top_files[repository_id] = list(top_files)

    def get_top_files(self, repository_id: str, count: int = 5) -> list[TopFile]:
        with self._lock:
            return list(self._top_files.get(repository_id, []))[:count]

    def record_failure(self, operation: FailedOperation) -> None:
        with self._lock:
            self._failures[operation.id] = operation.model_copy(deep=True)

    def get_failure(self, operation_id: str) -> Optional[FailedOperation]:
        with self._lock:
            op = self._failures.get(operation_id)
            return op.model_copy(deep=True) if op else None

    def list_failures(self, repository_id: Optional[str] = None) -> list[FailedOperation]:
        with self._lock:
            ops = [
                op.model_copy(deep=True)
                for op in self._failures.values()
                if repository_id is None or op.repository_id == repository_id
            ]
        return sorted(ops, key=lambda op: op.failed_at)

    def update_failure(self, operation: FailedOperation) -> None:
        with self._lock:
            if operation.id not in self._failures:
                raise KeyError(f"Failed operation not found: {operation.id}")
            self._failures[operation.id] = operation.model_copy(deep=True)

    def delete_failure(self, operation_id: str) -> None:
        with self._lock:
            if self._failures.pop(operation_id, None) is None:
                logger.warning("Failed operation %s not found for deletion.", operation_id)


def atomic_write_text(path: Path, text: str) -> None:
    """Write text to a temporary file in the same directory, then replace path."""
    path.parent.mkdir(parents=True, exist_ok=True)

    with tempfile.NamedTemporaryFile(
        mode="w", encoding="utf-8", dir=path.parent, delete=False
    ) as tmp_file:
        tmp_path = Path(tmp_file.name)
        tmp_file.write(text)

    try:
        os.replace(tmp_path, path)
    except Exception:
        tmp_path.unlink(missing_ok=True)
        raise


# One lock per data directory, shared by every store instance in the process
_DIR_LOCKS: dict[str, threading.RLock] = {}
_DIR_LOCKS_GUARD = threading.Lock()


def _lock_for(data_dir: Path) -> threading.RLock:
    key = str(data_dir.resolve())
    with _DIR_LOCKS_GUARD:
        if key not in _DIR_LOCKS:
            _DIR_LOCKS[key] = threading.RLock()
        return _DIR_LOCKS[key]


class JsonFileLineCountStore(LineCountStore):
    """JSON documents under data_dir.

    Layout:
        repositories.json                 {repository_id: repository}
        failed_operations.json            {operation_id: failed operation}
        snapshots/<repository_id>.json    {commit_id: snapshot}
        top_files/<repository_id>.json    [top file, ...]
    """

    VERSION = "1.0"

    def __init__(self, data_dir: Path):
        self.data_dir = Path(data_dir)
        self.data_dir.mkdir(parents=True, exist_ok=True)
        self._lock = _lock_for(self.data_dir)

    @property
    def _repositories_path(self) -> Path:
        return self.data_dir / "repositories.json"

    @property
    def _failures_path(self) -> Path:
        return self.data_dir / "failed_operations.json"

    def _snapshots_path(self, repository_id: str) -> Path:
        return self.data_dir / "snapshots" / f"{repository_id}.json"

    def _top_files_path(self, repository_id: str) -> Path:
        return self.data_dir / "top_files" / f"{repository_id}.json"

    def _read(self, path: Path):
        if not path.exists():
            return None
        try:
            with open(path, "r", encoding="utf-8") as f:
                payload = json.load(f)
        except json.JSONDecodeError as e:
            raise ValueError(
                f"Invalid JSON in '{path.name}': {e.msg} at line {e.lineno}, column {e.colno}"
            ) from e
        if not isinstance(payload, dict) or "items" not in payload:
            raise ValueError(f"'{path.name}': missing required key 'items'")
        return payload["items"]

    def _write(self, path: Path, items) -> None:
        payload = {"version": self.VERSION, "items": items}
        atomic_write_text(path, json.dumps(payload, indent=2, sort_keys=True, ensure_ascii=True))

    def _read_map(self, path: Path) -> dict:
        return self._read(path) or {}

    # Repositories

    def add_repository(self, repository: TrackedRepository) -> None:
        with self._lock:
            items = self._read_map(self._repositories_path)
            if repository.id in items:
                raise ValueError(f"Repository already exists: {repository.id}")
            items[repository.id] = repository.model_dump(mode="json")
            self._write(self._repositories_path, items)

    def get_repository(self, repository_id: str) -> Optional[TrackedRepository]:
        with self._lock:
            data = self._read_map(self._repositories_path).get(repository_id)
        return TrackedRepository.model_validate(data) if data else None

    def update_repository(self, repository: TrackedRepository) -> None:
        with self._lock:
            items = self._read_map(self._repositories_path)
            if repository.id not in items:
                raise KeyError(f"Repository not found: {repository.id}")
            items[repository.id] = repository.model_dump(mode="json")
            self._write(self._repositories_path, items)

    def list_repositories(self) -> list[TrackedRepository]:
        with self._lock:
            items = self._read_map(self._repositories_path)
        return [TrackedRepository.model_validate(data) for data in items.values()]

    def delete_repository(self, repository_id: str) -> None:
        with self._lock:
            items = self._read_map(self._repositories_path)
            if items.pop(repository_id, None) is not None:
                self._write(self._repositories_path, items)
            self._snapshots_path(repository_id).unlink(missing_ok=True)
            self._top_files_path(repository_id).unlink(missing_ok=True)
            failures = self._read_map(self._failures_path)
            remaining = {
                op_id: data
                for op_id, data in failures.items()
                if data.get("repository_id") != repository_id
            }
            if len(remaining) != len(failures):
                self._write(self._failures_path, remaining)

    # Snapshots

    def upsert_snapshot(self, snapshot: CommitLineSnapshot) -> None:
        path = self._snapshots_path(snapshot.repository_id)
        with self._lock:
            items = self._read_map(path)
            items[snapshot.commit_id] = snapshot.model_dump(mode="json")
            self._write(path, items)

    def get_snapshot(self, repository_id: str, commit_id: str) -> Optional[CommitLineSnapshot]:
        with self._lock:
            data = self._read_map(self._snapshots_path(repository_id)).get(commit_id)
        return CommitLineSnapshot.model_validate(data) if data else None

    def list_snapshots(self, repository_id: str) -> list[CommitLineSnapshot]:
        with self._lock:
            items = self._read_map(self._snapshots_path(repository_id))
        return _sorted_snapshots(CommitLineSnapshot.model_validate(d) for d in items.values())

    def delete_snapshots(self, repository_id: str) -> None:
        with self._lock:
            self._snapshots_path(repository_id).unlink(missing_ok=True)

    # Top files

    def save_top_files(self, repository_id: str, top_files: list[TopFile]) -> None:
        with self._lock:
            self._write(
                self._top_files_path(repository_id),
                [f.model_dump(mode="json") for f in top_files],
            )

    def get_top_files(self, repository_id: str, count: int = 5) -> list[TopFile]:
        with self._lock:
            items = self._read(self._top_files_path(repository_id)) or []
        return [TopFile.model_validate(d) for d in items[:count]]

    # Failed operations

    def record_failure(self, operation: FailedOperation) -> None:
        with self._lock:
            items = self._read_map(self._failures_path)
            items[operation.id] = operation.model_dump(mode="json")
            self._write(self._failures_path, items)

    def get_failure(self, operation_id: str) -> Optional[FailedOperation]:
        with self._lock:
            data = self._read_map(self._failures_path).get(operation_id)
        return FailedOperation.model_validate(data) if data else None

    def list_failures(self, repository_id: Optional[str] = None) -> list[FailedOperation]:
        with self._lock:
            items = self._read_map(self._failures_path)
        ops = [
            FailedOperation.model_validate(data)
            for data in items.values()
            if repository_id is None or data.get("repository_id") == repository_id
        ]
        return sorted(ops, key=lambda op: op.failed_at)

    def update_failure(self, operation: FailedOperation) -> None:
        with self._lock:
            items = self._read_map(self._failures_path)
            if operation.id not in items:
                raise KeyError(f"Failed operation not found: {operation.id}")
            items[operation.id] = operation.model_dump(mode="json")
            self._write(self._failures_path, items)

    def delete_failure(self, operation_id: str) -> None:
        with self._lock:
            items = self._read_map(self._failures_path)
            if items.pop(operation_id, None) is None:
                logger.warning("Failed operation %s not found for deletion.", operation_id)
                return
            self._write(self._failures_path, items)
