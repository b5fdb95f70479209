"""Dead-letter ledger for per-commit failures.

Lifecycle of an entry:
    recorded -> retry pending -> retry in flight -> resolved (deleted)
                                                 -> recorded again, retry_count + 1
    retry_count >= max_retries -> exhausted: kept for inspection, never retried
"""

import logging
import traceback
from datetime import datetime, timedelta
from typing import Any, Optional

from models.line_tracker import COMMIT_ANALYSIS, FailedOperation, utc_now
from services.line_count_store import LineCountStore

logger = logging.getLogger(__name__)

MAX_RETRIES = 3
RETRY_COOLDOWN = timedelta(minutes=5)


class FailedOperationLedger:
    def __init__(
        self,
        store: LineCountStore,
        max_retries: int = MAX_RETRIES,
        cooldown: timedelta = RETRY_COOLDOWN,
    ):
        self.store = store
        self.max_retries = max_retries
        self.cooldown = cooldown

    def record_commit_failure(
        self,
        repository_id: str,
        commit_id: str,
        error: BaseException,
        context: Optional[dict[str, Any]] = None,
    ) -> FailedOperation:
        """Record a commit analysis failure.

        A commit that already has an open entry is not recorded twice; the
        existing entry is returned with the latest error.
        """
        message = str(error) or type(error).__name__
        trace = "".join(traceback.format_exception(type(error), error, error.__traceback__))

        for existing in self.store.list_failures(repository_id):
            if existing.operation_type == COMMIT_ANALYSIS and existing.entity_id == commit_id:
                existing.error_message = message
                existing.stack_trace = trace
                existing.failed_at = utc_now()
                existing.context.update(context or {})
                self.store.update_failure(existing)
                logger.info(
                    "Updated failed operation %s for commit %s in repository %s",
                    existing.id, commit_id, repository_id,
                )
                return existing

        operation = FailedOperation(
            repository_id=repository_id,
            operation_type=COMMIT_ANALYSIS,
            entity_id=commit_id,
            error_message=message,
            stack_trace=trace,
            context=dict(context or {}),
        )
        self.store.record_failure(operation)
        logger.info(
            "Failed commit %s recorded in dead letter queue for repository %s",
            commit_id, repository_id,
        )
        return operation

    def list_retryable(self, now: Optional[datetime] = None) -> list[FailedOperation]:
        return self.store.list_retryable(self.max_retries, self.cooldown, now)

    def list_for_repository(self, repository_id: str) -> list[FailedOperation]:
        return self.store.list_failures(repository_id)

    def list_exhausted(self, repository_id: Optional[str] = None) -> list[FailedOperation]:
        return [
            op for op in self.store.list_failures(repository_id)
            if op.is_exhausted(self.max_retries)
        ]

    def resolve(self, operation: FailedOperation) -> None:
        """Retry succeeded: drop the entry."""
        self.store.delete_failure(operation.id)
        logger.info("Successfully retried failed operation %s", operation.id)

    def mark_retry_failed(
        self,
        operation: FailedOperation,
        error: BaseException,
        now: Optional[datetime] = None,
    ) -> FailedOperation:
        """Count a failed retry attempt and keep the entry.

        An entry removed while its retry ran stays removed.
        """
        if self.store.get_failure(operation.id) is None:
            logger.warning("Failed operation %s was removed during its retry; not recording attempt", operation.id)
            return operation
        operation.retry_count += 1
        operation.last_retry_attempt = now or utc_now()
        operation.error_message = str(error) or type(error).__name__
        operation.stack_trace = "".join(
            traceback.format_exception(type(error), error, error.__traceback__)
        )
        self.store.update_failure(operation)

        if operation.is_exhausted(self.max_retries):
            logger.error(
                "Failed operation %s has exceeded maximum retry attempts and will remain in dead letter queue",
                operation.id,
            )
        return operation
