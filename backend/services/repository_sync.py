"""Repository synchronizer: the entry point for analyzing a tracked repository.

One pass refreshes the working copy (clone or pull), walks every commit from
oldest to newest and stores one CommitLineSnapshot per commit. Commits are
processed sequentially on a single repository handle that is held for the
whole pass and released on every exit path.

Error classes:
- GitAccessError from clone/pull/open propagates and fails the pass.
- Any error while analyzing a single commit is recorded in the failed
  operation ledger and the pass moves on to the next commit.
"""

import logging
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Iterable, Iterator, Optional

from models.line_tracker import (
    AnalysisSummary,
    CommitOutcome,
    CommitResult,
    TrackedRepository,
)
from services.commit_analyzer import CommitAnalysis, CommitAnalyzer
from services.credentials import CredentialProvider, NoCredentialProvider
from services.failed_operation_ledger import FailedOperationLedger
from services.line_count_store import LineCountStore
from utils.git_gateway import CommitInfo, GitGateway

logger = logging.getLogger(__name__)

TOP_FILES_COUNT = 5


class RepositoryNotFoundError(LookupError):
    pass


class AnalysisInProgressError(RuntimeError):
    """Another pass for the same repository is running."""


class AnalysisCancelledError(RuntimeError):
    pass


class RepositoryLockRegistry:
    """Single-flight guard: at most one pass per repository at a time."""

    def __init__(self):
        self._guard = threading.Lock()
        self._locks: dict[str, threading.Lock] = {}

    def _lock_for(self, repository_id: str) -> threading.Lock:
        with self._guard:
            if repository_id not in self._locks:
                self._locks[repository_id] = threading.Lock()
            return self._locks[repository_id]

    def is_locked(self, repository_id: str) -> bool:
        return self._lock_for(repository_id).locked()

    @contextmanager
    def hold(self, repository_id: str) -> Iterator[None]:
        lock = self._lock_for(repository_id)
        if not lock.acquire(blocking=False):
            raise AnalysisInProgressError(
                f"Analysis already running for repository {repository_id}"
            )
        try:
            yield
        finally:
            lock.release()


default_lock_registry = RepositoryLockRegistry()


def register_repository(
    store: LineCountStore, owner: str, name: str, clone_url: str
) -> TrackedRepository:
    repository = TrackedRepository(owner=owner, name=name, clone_url=clone_url)
    store.add_repository(repository)
    logger.info("Repository %s/%s added with id %s", owner, name, repository.id)
    return repository


def register_repositories(
    store: LineCountStore, requests: Iterable[tuple[str, str, str]]
) -> list[TrackedRepository]:
    """Register several repositories at once.

    Entries with a blank owner, name or clone URL are skipped. An owner/name
    already tracked returns the existing record instead of a duplicate.
    """
    registered: list[TrackedRepository] = []
    for owner, name, clone_url in requests:
        owner, name, clone_url = owner.strip(), name.strip(), clone_url.strip()
        if not owner or not name or not clone_url:
            logger.warning("Skipping repository with missing owner, name or clone URL: %r/%r", owner, name)
            continue
        existing = find_repository(store, owner, name)
        if existing is not None:
            logger.info("Repository %s/%s is already tracked as %s", owner, name, existing.id)
            registered.append(existing)
            continue
        registered.append(register_repository(store, owner, name, clone_url))
    return registered


def find_repository(store: LineCountStore, owner: str, name: str) -> Optional[TrackedRepository]:
    """Tracked repository by owner and name, ignoring case."""
    owner, name = owner.lower(), name.lower()
    for repository in store.list_repositories():
        if repository.owner.lower() == owner and repository.name.lower() == name:
            return repository
    return None


class RepositorySynchronizer:
    def __init__(
        self,
        store: LineCountStore,
        git: GitGateway,
        analyzer: CommitAnalyzer,
        ledger: FailedOperationLedger,
        repos_dir: Path,
        credentials: Optional[CredentialProvider] = None,
        locks: Optional[RepositoryLockRegistry] = None,
    ):
        self.store = store
        self.git = git
        self.analyzer = analyzer
        self.ledger = ledger
        self.repos_dir = Path(repos_dir)
        self.credentials = credentials or NoCredentialProvider()
        self.locks = locks or default_lock_registry

    def analyze_repository(
        self,
        repository_id: str,
        force_reanalysis: bool = False,
        clear_existing_data: bool = False,
        cancel_event: Optional[threading.Event] = None,
    ) -> AnalysisSummary:
        """Analyze every eligible commit of a repository.

        Args:
            repository_id: Id of a registered repository.
            force_reanalysis: Re-run commits whose snapshot has no diff stats
                (lines added and removed both zero).
            clear_existing_data: Delete all snapshots and reset the
                last-analyzed marker before the pass.
            cancel_event: Checked before syncing and between commits.

        Returns:
            AnalysisSummary with processed/skipped/failed counts.

        Raises:
            RepositoryNotFoundError: Unknown repository id.
            AnalysisInProgressError: A pass for this repository is already running.
            GitAccessError: Clone, pull or open failed.
            AnalysisCancelledError: cancel_event was set.
        """
        repository = self.store.get_repository(repository_id)
        if repository is None:
            raise RepositoryNotFoundError(f"Repository not found: {repository_id}")

        with self.locks.hold(repository_id):
            logger.info(
                "Analyzing commits for repository %s (force_reanalysis=%s, clear_existing_data=%s)",
                repository_id, force_reanalysis, clear_existing_data,
            )
            if clear_existing_data:
                self._clear_existing_data(repository)

            self._check_cancelled(cancel_event, repository_id)
            local_path = self._sync_working_copy(repository)
            commits = self.git.enumerate_commits(local_path)
            logger.info("Found %d commits to analyze for repository %s", len(commits), repository_id)

            summary = AnalysisSummary(repository_id=repository_id)
            open_failures = {
                op.entity_id: op for op in self.ledger.list_for_repository(repository_id)
            }
            latest: Optional[CommitAnalysis] = None
            try:
                with self.git.open(local_path) as repo:
                    for info in commits:
                        self._check_cancelled(cancel_event, repository_id)
                        result, analysis = self._process_commit(
                            repo, repository, info, local_path, force_reanalysis
                        )
                        summary.add(result)
                        if analysis is not None:
                            latest = analysis
                            if info.id in open_failures:
                                self.ledger.resolve(open_failures.pop(info.id))
            finally:
                self._finish_pass(repository, latest, commits)

        logger.info(
            "Completed analysis for repository %s: %d of %d commits analyzed, %d skipped, %d failures recorded",
            repository_id, summary.processed, summary.total_commits, summary.skipped, summary.failed,
        )
        return summary

    def delete_repository(self, repository_id: str) -> None:
        """Delete a repository with its snapshots, top files and failed operations.

        Raises:
            RepositoryNotFoundError: Unknown repository id.
            AnalysisInProgressError: A pass or retry for this repository is running.
        """
        if self.store.get_repository(repository_id) is None:
            raise RepositoryNotFoundError(f"Repository not found: {repository_id}")
        with self.locks.hold(repository_id):
            self.store.delete_repository(repository_id)
        logger.info("Deleted repository %s", repository_id)

    def _check_cancelled(self, cancel_event: Optional[threading.Event], repository_id: str) -> None:
        if cancel_event is not None and cancel_event.is_set():
            logger.info("Analysis cancelled for repository %s", repository_id)
            raise AnalysisCancelledError(f"Analysis cancelled for repository {repository_id}")

    def _clear_existing_data(self, repository: TrackedRepository) -> None:
        logger.info("Clearing existing commit data for repository %s", repository.id)
        self.store.delete_snapshots(repository.id)
        self.store.save_top_files(repository.id, [])
        repository.last_analyzed_commit_date = None
        repository.last_analyzed_commit_id = None
        self.store.update_repository(repository)

    def _sync_working_copy(self, repository: TrackedRepository) -> str:
        token = self.credentials.get_access_token(repository)
        if repository.local_path and Path(repository.local_path).exists():
            logger.info(
                "Pulling repository %s/%s at %s", repository.owner, repository.name, repository.local_path
            )
            self.git.pull(repository.local_path, token)
            local_path = repository.local_path
        else:
            dest = self.repos_dir / f"repo_{repository.id}"
            logger.info("Cloning repository %s/%s to %s", repository.owner, repository.name, dest)
            local_path = self.git.clone(repository.clone_url, str(dest), token)

        repository.local_path = local_path
        self.store.update_repository(repository)
        return local_path

    def _process_commit(
        self,
        repo,
        repository: TrackedRepository,
        info: CommitInfo,
        local_path: str,
        force_reanalysis: bool,
    ) -> tuple[CommitResult, Optional[CommitAnalysis]]:
        existing = self.store.get_snapshot(repository.id, info.id)
        if existing is not None:
            if not (force_reanalysis and existing.is_stale):
                logger.debug("Commit %s already processed, skipping", info.id)
                return CommitResult(commit_id=info.id, outcome=CommitOutcome.SKIPPED), None
            logger.debug("Force re-analyzing commit %s with missing diff data", info.id)

        try:
            analysis = self.analyzer.analyze_in_repo(repo, info.id, repository.id)
            self.store.upsert_snapshot(analysis.snapshot)
        except Exception as exc:
            logger.error(
                "Error processing commit %s for repository %s", info.id, repository.id, exc_info=True
            )
            context = {
                "local_path": local_path,
                "commit_date": info.committed_at.isoformat(),
            }
            try:
                self.ledger.record_commit_failure(repository.id, info.id, exc, context)
            except Exception:
                logger.error(
                    "Error recording failed operation for commit %s in repository %s",
                    info.id, repository.id, exc_info=True,
                )
            return (
                CommitResult(commit_id=info.id, outcome=CommitOutcome.FAILED, error=str(exc)),
                None,
            )

        logger.debug(
            "Processed commit %s with %d lines (added: %d, removed: %d)",
            info.id, analysis.snapshot.total_lines,
            analysis.snapshot.lines_added, analysis.snapshot.lines_removed,
        )
        return (
            CommitResult(commit_id=info.id, outcome=CommitOutcome.PROCESSED, snapshot=analysis.snapshot),
            analysis,
        )

    def _finish_pass(
        self,
        repository: TrackedRepository,
        latest: Optional[CommitAnalysis],
        commits: list[CommitInfo],
    ) -> None:
        """Advance the last-analyzed marker and refresh top files."""
        if latest is None:
            logger.info("No new commits processed for repository %s", repository.id)
            return

        snapshot = latest.snapshot
        marker = repository.last_analyzed_commit_date
        if marker is None or snapshot.commit_date >= marker:
            repository.last_analyzed_commit_date = snapshot.commit_date
            repository.last_analyzed_commit_id = snapshot.commit_id
            self.store.update_repository(repository)

        # Top files describe HEAD only
        if commits and commits[-1].id == snapshot.commit_id:
            self.store.save_top_files(repository.id, latest.top_files(TOP_FILES_COUNT))
