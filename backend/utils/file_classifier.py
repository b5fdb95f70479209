"""File classification for line counting.

Decides which directories and files count as source. The ignore rules live in a
versioned classification policy (config/classification_policy.json) so they can
change without touching code:
- directory_patterns: matched against a directory path (prefix, suffix or segment)
- exact_file_names: package manifests and lockfiles
- file_suffixes: compiled output, generated sources, minified and binary assets
- file_name_fragments: generated file markers and well-known vendored libraries
- path_fragments: folders whose contents are generated (e.g. migrations/)
"""

import json
import logging
import posixpath
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

logger = logging.getLogger(__name__)

POLICY_FILE_NAME = "classification_policy.json"

_LIST_KEYS = (
    "directory_patterns",
    "exact_file_names",
    "file_suffixes",
    "file_name_fragments",
    "path_fragments",
)


@dataclass(frozen=True)
class ClassificationPolicy:
    """Ignore rules applied by FileClassifier. All entries are lowercase."""

    version: str
    directory_patterns: tuple[str, ...] = ()
    exact_file_names: frozenset[str] = field(default_factory=frozenset)
    file_suffixes: tuple[str, ...] = ()
    file_name_fragments: tuple[str, ...] = ()
    path_fragments: tuple[str, ...] = ()


def _get_default_policy_path() -> Path:
    """Get the policy shipped with the backend."""
    backend_dir = Path(__file__).resolve().parents[1]
    return backend_dir / "config" / POLICY_FILE_NAME


def _validate_string_list(data: dict, key: str, file_name: str) -> list[str]:
    if key not in data:
        raise ValueError(f"'{file_name}': missing required key '{key}'")
    values = data[key]
    if not isinstance(values, list):
        raise ValueError(
            f"'{file_name}': '{key}' must be a list, got {type(values).__name__}"
        )

    result: list[str] = []
    for i, value in enumerate(values):
        if not isinstance(value, str):
            raise ValueError(
                f"'{file_name}': '{key}'[{i}] must be a string, got {type(value).__name__}"
            )
        if not value.strip():
            raise ValueError(f"'{file_name}': '{key}'[{i}] must be non-empty")
        result.append(value.strip().replace("\\", "/").lower())
    return result


def parse_classification_policy(data: dict, file_name: str = POLICY_FILE_NAME) -> ClassificationPolicy:
    """Validate a policy document and build a ClassificationPolicy.

    Raises:
        ValueError: If the document structure is invalid.
    """
    if not isinstance(data, dict):
        raise ValueError(f"'{file_name}': root must be an object, got {type(data).__name__}")

    if "version" not in data:
        raise ValueError(f"'{file_name}': missing required key 'version'")
    if not isinstance(data["version"], str):
        raise ValueError(
            f"'{file_name}': 'version' must be a string, got {type(data['version']).__name__}"
        )

    lists = {key: _validate_string_list(data, key, file_name) for key in _LIST_KEYS}

    # Trailing slash only; should_ignore_directory also matches on suffix, so "robin/" hits "bin/"
    directory_patterns = tuple(
        p if p.endswith("/") else p + "/" for p in lists["directory_patterns"]
    )

    return ClassificationPolicy(
        version=data["version"],
        directory_patterns=directory_patterns,
        exact_file_names=frozenset(lists["exact_file_names"]),
        file_suffixes=tuple(lists["file_suffixes"]),
        file_name_fragments=tuple(lists["file_name_fragments"]),
        path_fragments=tuple(lists["path_fragments"]),
    )


def load_classification_policy(policy_path: Optional[Path] = None) -> ClassificationPolicy:
    """Load and validate a classification policy file.

    Args:
        policy_path: Path to the policy JSON. If None, uses the default
            backend/config/classification_policy.json.

    Raises:
        ValueError: If the file is missing, contains invalid JSON, or has invalid structure.
    """
    if policy_path is None:
        policy_path = _get_default_policy_path()
    file_name = policy_path.name

    if not policy_path.exists():
        raise ValueError(
            f"Missing classification policy '{file_name}' at expected path: {policy_path}"
        )
    try:
        with open(policy_path, "r", encoding="utf-8") as f:
            data = json.load(f)
    except json.JSONDecodeError as e:
        raise ValueError(
            f"Invalid JSON in '{file_name}': {e.msg} at line {e.lineno}, column {e.colno}"
        ) from e

    return parse_classification_policy(data, file_name)


def normalize_category(category: str) -> str:
    """Normalize a category key: lowercase with a leading dot."""
    category = category.strip().lower()
    if category and not category.startswith("."):
        category = "." + category
    return category


class FileClassifier:
    """Applies a ClassificationPolicy to repository paths."""

    def __init__(self, policy: ClassificationPolicy):
        self.policy = policy

    def should_ignore_directory(self, path: str) -> bool:
        """Return True if the directory (repo-relative) must not be descended into."""
        normalized = path.replace("\\", "/").strip("/").lower() + "/"
        for pattern in self.policy.directory_patterns:
            if (
                normalized.startswith(pattern)
                or normalized.endswith(pattern)
                or ("/" + pattern) in normalized
            ):
                logger.debug("Ignoring directory: %s", path)
                return True
        return False

    def should_ignore_file(self, name: str, path: str) -> bool:
        """Return True if the file is build output, vendored, generated or IDE noise."""
        name_lower = name.lower()

        if name_lower in self.policy.exact_file_names:
            logger.debug("Ignoring file (exact match): %s", path)
            return True

        if any(name_lower.endswith(suffix) for suffix in self.policy.file_suffixes):
            logger.debug("Ignoring file (suffix): %s", path)
            return True

        if any(fragment in name_lower for fragment in self.policy.file_name_fragments):
            logger.debug("Ignoring file (name fragment): %s", path)
            return True

        path_lower = path.replace("\\", "/").lower()
        if any(fragment in path_lower for fragment in self.policy.path_fragments):
            logger.debug("Ignoring file (path fragment): %s", path)
            return True

        return False

    def category_of(self, name: str) -> str:
        """Category key for a file name: its lowercase extension ('' if none)."""
        return posixpath.splitext(name)[1].lower()
