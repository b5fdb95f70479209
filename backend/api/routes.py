"""API route definitions for the line tracker."""

import asyncio
import threading
from concurrent.futures import ThreadPoolExecutor

from fastapi import APIRouter, HTTPException, Query
from pydantic import BaseModel

from models.line_tracker import (
    AnalysisSummary,
    CategoryShare,
    CommitLineSnapshot,
    DailyLineCount,
    FailedOperation,
    RepositoryLineCountHistory,
    TopFile,
    TrackedRepository,
)
from services.line_count_queries import (
    all_repositories_line_count_history,
    category_percentages,
    latest_snapshot,
    line_count_history,
)
from services.repository_sync import (
    AnalysisCancelledError,
    AnalysisInProgressError,
    RepositoryNotFoundError,
    TOP_FILES_COUNT,
    find_repository,
    register_repositories,
    register_repository,
)
from services.tracker_services import get_services
from utils.git_gateway import GitAccessError

router = APIRouter()

# Thread pool for blocking git work
executor = ThreadPoolExecutor(max_workers=2)

ANALYSIS_TIMEOUT_SECONDS = 3600.0


@router.get("/health")
async def health_check() -> dict:
    """
    Lightweight endpoint for uptime checks.

    Returns:
        dict: Health status payload.
    """
    return {"status": "healthy"}


class AddRepositoryRequest(BaseModel):
    """Request model for registering a repository."""

    owner: str
    name: str
    clone_url: str


class AnalyzeRepositoryRequest(BaseModel):
    """Request model for the analyze endpoint."""

    force_reanalysis: bool = False
    clear_existing_data: bool = False


class AddRepositoriesRequest(BaseModel):
    """Request model for registering several repositories at once."""

    repositories: list[AddRepositoryRequest]


def _require_repository(repository_id: str) -> TrackedRepository:
    repository = get_services().store.get_repository(repository_id)
    if repository is None:
        raise HTTPException(status_code=404, detail="Repository not found")
    return repository


# ============================================================================
# REPOSITORY ENDPOINTS
# ============================================================================


@router.post("/repositories", response_model=TrackedRepository, status_code=201)
async def add_repository(payload: AddRepositoryRequest) -> TrackedRepository:
    for field_name in ("owner", "name", "clone_url"):
        if not getattr(payload, field_name).strip():
            raise HTTPException(status_code=422, detail=f"{field_name} cannot be empty")
    return register_repository(
        get_services().store, payload.owner.strip(), payload.name.strip(), payload.clone_url.strip()
    )


@router.post("/repositories/batch", response_model=list[TrackedRepository], status_code=201)
async def add_repositories(payload: AddRepositoriesRequest) -> list[TrackedRepository]:
    """Register each entry; blank entries are skipped and known owner/name pairs reused."""
    return register_repositories(
        get_services().store,
        [(r.owner, r.name, r.clone_url) for r in payload.repositories],
    )


@router.get("/repositories", response_model=list[TrackedRepository])
async def list_repositories() -> list[TrackedRepository]:
    return get_services().store.list_repositories()


@router.get("/repositories/by-name/{owner}/{name}", response_model=TrackedRepository)
async def get_repository_by_name(owner: str, name: str) -> TrackedRepository:
    repository = find_repository(get_services().store, owner, name)
    if repository is None:
        raise HTTPException(status_code=404, detail="Repository not found")
    return repository


@router.get("/repositories/{repository_id}", response_model=TrackedRepository)
async def get_repository(repository_id: str) -> TrackedRepository:
    return _require_repository(repository_id)


@router.delete("/repositories/{repository_id}", status_code=204)
async def delete_repository(repository_id: str) -> None:
    """Delete a repository with its snapshots and failed operations.

    Raises:
        HTTPException: 404 unknown repository, 409 analysis or retry running.
    """
    try:
        get_services().synchronizer.delete_repository(repository_id)
    except RepositoryNotFoundError:
        raise HTTPException(status_code=404, detail="Repository not found")
    except AnalysisInProgressError as e:
        raise HTTPException(status_code=409, detail=str(e))


@router.post("/repositories/{repository_id}/analyze", response_model=AnalysisSummary)
async def analyze_repository(
    repository_id: str, payload: AnalyzeRepositoryRequest | None = None
) -> AnalysisSummary:
    """
    Analyze all new commits of a repository.

    Request body (optional):
        {
            "force_reanalysis": false,     // re-run commits stored without diff stats
            "clear_existing_data": false   // drop all snapshots first
        }

    Returns:
        AnalysisSummary: processed/skipped/failed counts for the pass.

    Raises:
        HTTPException: 404 unknown repository, 409 analysis already running,
            400 clone/pull failure, 408 timeout.
    """
    payload = payload or AnalyzeRepositoryRequest()
    synchronizer = get_services().synchronizer
    cancel_event = threading.Event()

    try:
        # Run the blocking analysis in the thread pool to keep the event loop free
        loop = asyncio.get_event_loop()
        return await asyncio.wait_for(
            loop.run_in_executor(
                executor,
                lambda: synchronizer.analyze_repository(
                    repository_id,
                    force_reanalysis=payload.force_reanalysis,
                    clear_existing_data=payload.clear_existing_data,
                    cancel_event=cancel_event,
                ),
            ),
            timeout=ANALYSIS_TIMEOUT_SECONDS,
        )
    except RepositoryNotFoundError:
        raise HTTPException(status_code=404, detail="Repository not found")
    except AnalysisInProgressError as e:
        raise HTTPException(status_code=409, detail=str(e))
    except GitAccessError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except asyncio.TimeoutError:
        # Stop the worker at the next commit boundary
        cancel_event.set()
        raise HTTPException(
            status_code=408,
            detail="Analysis timed out. Commits analyzed so far are kept; run the analysis again to continue.",
        )
    except AnalysisCancelledError as e:
        raise HTTPException(status_code=408, detail=str(e))


# ============================================================================
# LINE COUNT ENDPOINTS
# ============================================================================


@router.get("/line-counts/history", response_model=list[RepositoryLineCountHistory])
async def get_all_line_count_history(
    days: int = Query(default=30, ge=1)
) -> list[RepositoryLineCountHistory]:
    """Daily line count history of every tracked repository."""
    return all_repositories_line_count_history(get_services().store, days)


@router.get("/repositories/{repository_id}/line-counts", response_model=list[CommitLineSnapshot])
async def get_line_counts(repository_id: str) -> list[CommitLineSnapshot]:
    _require_repository(repository_id)
    return get_services().store.list_snapshots(repository_id)


@router.get("/repositories/{repository_id}/line-counts/latest", response_model=CommitLineSnapshot)
async def get_latest_line_count(repository_id: str) -> CommitLineSnapshot:
    _require_repository(repository_id)
    snapshot = latest_snapshot(get_services().store, repository_id)
    if snapshot is None:
        raise HTTPException(status_code=404, detail="No commits analyzed yet")
    return snapshot


@router.get(
    "/repositories/{repository_id}/line-counts/history", response_model=list[DailyLineCount]
)
async def get_line_count_history(
    repository_id: str, days: int = Query(default=30, ge=1)
) -> list[DailyLineCount]:
    _require_repository(repository_id)
    return line_count_history(get_services().store, repository_id, days)


@router.get("/repositories/{repository_id}/categories", response_model=list[CategoryShare])
async def get_category_percentages(repository_id: str) -> list[CategoryShare]:
    _require_repository(repository_id)
    return category_percentages(get_services().store, repository_id)


@router.get("/repositories/{repository_id}/top-files", response_model=list[TopFile])
async def get_top_files(
    repository_id: str, count: int = Query(default=TOP_FILES_COUNT, ge=1, le=TOP_FILES_COUNT)
) -> list[TopFile]:
    _require_repository(repository_id)
    return get_services().store.get_top_files(repository_id, count)


# ============================================================================
# FAILED OPERATION ENDPOINTS
# ============================================================================


@router.get(
    "/repositories/{repository_id}/failed-operations", response_model=list[FailedOperation]
)
async def get_repository_failed_operations(repository_id: str) -> list[FailedOperation]:
    _require_repository(repository_id)
    return get_services().ledger.list_for_repository(repository_id)


@router.get("/failed-operations", response_model=list[FailedOperation])
async def get_failed_operations(exhausted_only: bool = False) -> list[FailedOperation]:
    """All failed operations, or only those past the retry ceiling."""
    ledger = get_services().ledger
    if exhausted_only:
        return ledger.list_exhausted()
    return ledger.store.list_failures()


# ============================================================================
# SETTINGS ENDPOINTS
# ============================================================================


@router.get("/settings/file-extensions", response_model=list[str])
async def get_file_extensions() -> list[str]:
    """File categories counted by the analyzer."""
    return list(get_services().settings.categories)
