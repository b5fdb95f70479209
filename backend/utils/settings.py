"""Runtime settings for the line tracker, read from environment variables.

Invalid values are logged and replaced by their defaults so a bad variable never
prevents the service from starting.
"""

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

from utils.file_classifier import normalize_category

logger = logging.getLogger(__name__)

DEFAULT_CATEGORIES = (
    ".cs", ".razor", ".cshtml", ".xaml",
    ".js", ".jsx", ".ts", ".tsx",
    ".html", ".css", ".scss", ".less",
)
LOG_LEVELS = ("CRITICAL", "ERROR", "WARNING", "INFO", "DEBUG")

_BACKEND_DIR = Path(__file__).resolve().parents[1]


@dataclass
class TrackerSettings:
    data_dir: Path = _BACKEND_DIR / "data"
    repos_dir: Path = _BACKEND_DIR / ".repos"
    policy_path: Path = _BACKEND_DIR / "config" / "classification_policy.json"
    categories: tuple[str, ...] = DEFAULT_CATEGORIES
    retry_interval_seconds: int = 300
    retry_cooldown_seconds: int = 300
    max_retries: int = 3
    max_blob_bytes: int = 5_000_000
    log_level: str = "INFO"
    enable_retry_scheduler: bool = True
    github_token: Optional[str] = field(default=None, repr=False)


def _get_path(name: str, default: Path) -> Path:
    raw = os.getenv(name, "").strip()
    if not raw:
        return default
    return Path(raw).expanduser().resolve()


def _get_positive_int(name: str, default: int) -> int:
    raw = os.getenv(name, "").strip()
    if raw == "":
        return default
    try:
        value = int(raw)
    except ValueError:
        logger.warning("Invalid %s value '%s'. Falling back to %d.", name, raw, default)
        return default
    if value < 1:
        logger.warning("%s must be >= 1, got %d. Falling back to %d.", name, value, default)
        return default
    return value


def _get_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name, "").strip().lower()
    if raw == "":
        return default
    if raw in ("1", "true", "yes", "on"):
        return True
    if raw in ("0", "false", "no", "off"):
        return False
    logger.warning("Invalid %s value '%s'. Falling back to %s.", name, raw, default)
    return default


def _get_categories(name: str, default: tuple[str, ...]) -> tuple[str, ...]:
    raw = os.getenv(name, "").strip()
    if not raw:
        return default
    categories = tuple(
        dict.fromkeys(normalize_category(part) for part in raw.split(",") if part.strip())
    )
    return categories or default


def _get_log_level(name: str, default: str) -> str:
    raw = os.getenv(name, "").strip().upper()
    if raw == "":
        return default
    if raw not in LOG_LEVELS:
        logger.warning("Invalid %s value '%s'. Falling back to %s.", name, raw, default)
        return default
    return raw


def load_settings() -> TrackerSettings:
    """Build settings from LINE_TRACKER_* environment variables."""
    defaults = TrackerSettings()
    return TrackerSettings(
        data_dir=_get_path("LINE_TRACKER_DATA_DIR", defaults.data_dir),
        repos_dir=_get_path("LINE_TRACKER_REPOS_DIR", defaults.repos_dir),
        policy_path=_get_path("LINE_TRACKER_POLICY_PATH", defaults.policy_path),
        categories=_get_categories("LINE_TRACKER_CATEGORIES", defaults.categories),
        retry_interval_seconds=_get_positive_int(
            "LINE_TRACKER_RETRY_INTERVAL_SECONDS", defaults.retry_interval_seconds
        ),
        retry_cooldown_seconds=_get_positive_int(
            "LINE_TRACKER_RETRY_COOLDOWN_SECONDS", defaults.retry_cooldown_seconds
        ),
        max_retries=_get_positive_int("LINE_TRACKER_MAX_RETRIES", defaults.max_retries),
        max_blob_bytes=_get_positive_int("LINE_TRACKER_MAX_BLOB_BYTES", defaults.max_blob_bytes),
        log_level=_get_log_level("LINE_TRACKER_LOG_LEVEL", defaults.log_level),
        enable_retry_scheduler=_get_bool(
            "LINE_TRACKER_ENABLE_RETRY_SCHEDULER", defaults.enable_retry_scheduler
        ),
        github_token=os.getenv("GITHUB_PAT") or None,
    )


def configure_logging(level: str = "INFO") -> None:
    logging.basicConfig(
        level=getattr(logging, level, logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
