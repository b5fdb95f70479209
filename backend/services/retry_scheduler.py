"""Background retries for failed operations.

Every polling interval the scheduler loads all retryable failed operations
(below the retry ceiling and out of cool-down) and replays each one's work.
A success deletes the entry; a failure bumps retry_count and
last_retry_attempt. With a 5 minute cool-down and a 5 minute interval each
further attempt lands at least one more cycle after the previous one.

The scheduler opens its own store handle for every cycle and coordinates with
analysis passes only through persisted records, plus the per-repository lock
so a retry never reads a working copy while it is being pulled.
"""

import asyncio
import logging
from datetime import datetime, timedelta
from typing import Callable, Optional

from models.line_tracker import COMMIT_ANALYSIS, FailedOperation, utc_now
from services.commit_analyzer import CommitAnalyzer
from services.failed_operation_ledger import MAX_RETRIES, RETRY_COOLDOWN, FailedOperationLedger
from services.line_count_store import LineCountStore
from services.repository_sync import (
    AnalysisInProgressError,
    RepositoryLockRegistry,
    RepositoryNotFoundError,
    default_lock_registry,
)
from utils.git_gateway import GitAccessError

logger = logging.getLogger(__name__)

POLLING_INTERVAL_SECONDS = 300


class CommitAnalysisRetryHandler:
    """Replays the commit analyzer for a failed commit and stores the snapshot."""

    def __init__(self, analyzer: CommitAnalyzer):
        self.analyzer = analyzer

    def retry(self, operation: FailedOperation, store: LineCountStore) -> None:
        logger.info(
            "Retrying commit processing for commit %s in repository %s",
            operation.entity_id, operation.repository_id,
        )
        repository = store.get_repository(operation.repository_id)
        if repository is None:
            raise RepositoryNotFoundError(f"Repository not found: {operation.repository_id}")

        local_path = operation.context.get("local_path") or repository.local_path
        if not local_path:
            raise GitAccessError(
                f"No working copy recorded for repository {operation.repository_id}"
            )

        existing = store.get_snapshot(operation.repository_id, operation.entity_id)
        if existing is not None and not existing.is_stale:
            logger.info("Commit %s was analyzed since it failed", operation.entity_id)
            return

        analysis = self.analyzer.analyze_commit(
            local_path, operation.entity_id, operation.repository_id
        )
        store.upsert_snapshot(analysis.snapshot)


class RetryScheduler:
    def __init__(
        self,
        store_factory: Callable[[], LineCountStore],
        handlers: dict[str, CommitAnalysisRetryHandler],
        max_retries: int = MAX_RETRIES,
        cooldown: timedelta = RETRY_COOLDOWN,
        interval_seconds: float = POLLING_INTERVAL_SECONDS,
        locks: Optional[RepositoryLockRegistry] = None,
    ):
        self.store_factory = store_factory
        self.handlers = handlers
        self.max_retries = max_retries
        self.cooldown = cooldown
        self.interval_seconds = interval_seconds
        self.locks = locks or default_lock_registry

    def run_once(self, now: Optional[datetime] = None) -> dict[str, int]:
        """Attempt every retryable operation once and return per-outcome counts."""
        logger.info("Processing retryable failed operations...")
        ledger = FailedOperationLedger(self.store_factory(), self.max_retries, self.cooldown)
        counts = {"attempted": 0, "resolved": 0, "failed": 0, "deferred": 0}

        for operation in ledger.list_retryable(now):
            handler = self.handlers.get(operation.operation_type)
            if handler is None:
                logger.warning(
                    "Unknown operation type %s for failed operation %s",
                    operation.operation_type, operation.id,
                )
                continue

            logger.info(
                "Attempting to retry failed operation %s (retry #%d)",
                operation.id, operation.retry_count + 1,
            )
            current = operation
            try:
                with self.locks.hold(operation.repository_id):
                    # Another cycle or a repository delete may have removed it
                    current = ledger.store.get_failure(operation.id)
                    if current is None:
                        logger.info("Failed operation %s no longer exists; skipping", operation.id)
                        continue
                    counts["attempted"] += 1
                    handler.retry(current, ledger.store)
            except AnalysisInProgressError:
                logger.info(
                    "Repository %s is being analyzed; deferring failed operation %s",
                    operation.repository_id, operation.id,
                )
                counts["deferred"] += 1
                continue
            except Exception as exc:
                logger.error(
                    "Retry attempt #%d failed for operation %s",
                    operation.retry_count + 1, operation.id, exc_info=True,
                )
                ledger.mark_retry_failed(current or operation, exc, now or utc_now())
                counts["failed"] += 1
                continue

            ledger.resolve(current)
            counts["resolved"] += 1

        logger.info(
            "Processed %d retryable failed operations (%d resolved)",
            counts["attempted"], counts["resolved"],
        )
        return counts

    async def run_forever(self, stop_event: asyncio.Event) -> None:
        """Poll until stop_event is set. Blocking work runs in the default executor."""
        logger.info("Failed operation retry scheduler is starting.")
        loop = asyncio.get_running_loop()
        while not stop_event.is_set():
            try:
                await loop.run_in_executor(None, self.run_once)
            except Exception:
                logger.error("Error occurred while processing failed operations", exc_info=True)
            try:
                await asyncio.wait_for(stop_event.wait(), timeout=self.interval_seconds)
            except asyncio.TimeoutError:
                pass
        logger.info("Failed operation retry scheduler is stopping.")


def commit_analysis_handlers(analyzer: CommitAnalyzer) -> dict[str, CommitAnalysisRetryHandler]:
    return {COMMIT_ANALYSIS: CommitAnalysisRetryHandler(analyzer)}
