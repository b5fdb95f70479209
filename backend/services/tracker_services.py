"""Builds the line tracker's collaborators from settings."""

from dataclasses import dataclass
from datetime import timedelta
from functools import lru_cache
from typing import Optional

from services.commit_analyzer import CommitAnalyzer
from services.credentials import StaticCredentialProvider
from services.failed_operation_ledger import FailedOperationLedger
from services.line_count_store import JsonFileLineCountStore, LineCountStore
from services.repository_sync import RepositorySynchronizer, default_lock_registry
from services.retry_scheduler import RetryScheduler, commit_analysis_handlers
from utils.file_classifier import FileClassifier, load_classification_policy
from utils.git_gateway import GitGateway
from utils.settings import TrackerSettings, load_settings


@dataclass
class TrackerServices:
    settings: TrackerSettings
    store: LineCountStore
    ledger: FailedOperationLedger
    synchronizer: RepositorySynchronizer


def build_analyzer(settings: TrackerSettings, git: Optional[GitGateway] = None) -> CommitAnalyzer:
    classifier = FileClassifier(load_classification_policy(settings.policy_path))
    return CommitAnalyzer(
        classifier,
        settings.categories,
        git=git or GitGateway(max_blob_bytes=settings.max_blob_bytes),
    )


def build_services(settings: TrackerSettings) -> TrackerServices:
    store = JsonFileLineCountStore(settings.data_dir)
    ledger = FailedOperationLedger(
        store,
        max_retries=settings.max_retries,
        cooldown=timedelta(seconds=settings.retry_cooldown_seconds),
    )
    git = GitGateway(max_blob_bytes=settings.max_blob_bytes)
    synchronizer = RepositorySynchronizer(
        store=store,
        git=git,
        analyzer=build_analyzer(settings, git),
        ledger=ledger,
        repos_dir=settings.repos_dir,
        credentials=StaticCredentialProvider(settings.github_token),
        locks=default_lock_registry,
    )
    return TrackerServices(settings=settings, store=store, ledger=ledger, synchronizer=synchronizer)


def build_retry_scheduler(settings: TrackerSettings) -> RetryScheduler:
    """Scheduler with its own analyzer and a fresh store handle per cycle."""
    return RetryScheduler(
        store_factory=lambda: JsonFileLineCountStore(settings.data_dir),
        handlers=commit_analysis_handlers(build_analyzer(settings)),
        max_retries=settings.max_retries,
        cooldown=timedelta(seconds=settings.retry_cooldown_seconds),
        interval_seconds=settings.retry_interval_seconds,
        locks=default_lock_registry,
    )


@lru_cache(maxsize=1)
def get_services() -> TrackerServices:
    """Return cached services built from environment settings."""
    return build_services(load_settings())
