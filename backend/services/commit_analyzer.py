"""Commit-level line counting (no checkout).

For one commit this computes the first-parent diff stats and a full recount of
the commit's tree: ignored directories are pruned, ignored files skipped, and
every remaining file in an allowed category is counted by its category's
strategy using the blob content as of that commit.
"""

import logging
from dataclasses import dataclass, field
from typing import Iterable, Optional

from git import Repo

from models.line_tracker import CommitLineSnapshot, TopFile
from utils.file_classifier import FileClassifier, normalize_category
from utils.git_gateway import GitGateway
from utils.line_counters import LineCounterRegistry, default_registry

logger = logging.getLogger(__name__)


@dataclass
class CommitAnalysis:
    snapshot: CommitLineSnapshot
    file_line_counts: dict[str, tuple[str, int]] = field(default_factory=dict)
    stats: dict[str, int] = field(default_factory=dict)

    def top_files(self, count: int = 5) -> list[TopFile]:
        ranked = sorted(
            self.file_line_counts.items(), key=lambda item: (-item[1][1], item[0])
        )
        return [
            TopFile(path=path, category=category, line_count=lines)
            for path, (category, lines) in ranked[:count]
        ]


def _is_binary(data: bytes) -> bool:
    return b"\0" in data


class CommitAnalyzer:
    def __init__(
        self,
        classifier: FileClassifier,
        categories: Iterable[str],
        git: Optional[GitGateway] = None,
        counters: Optional[LineCounterRegistry] = None,
    ):
        self.classifier = classifier
        self.categories = frozenset(normalize_category(c) for c in categories)
        self.git = git or GitGateway()
        self.counters = counters or default_registry()

    def analyze_commit(self, repo_path: str, commit_id: str, repository_id: str) -> CommitAnalysis:
        """Open the working copy, analyze one commit and release the handle."""
        with self.git.open(repo_path) as repo:
            return self.analyze_in_repo(repo, commit_id, repository_id)

    def analyze_in_repo(self, repo: Repo, commit_id: str, repository_id: str) -> CommitAnalysis:
        """Analyze one commit using an already open repository handle."""
        repo_path = str(repo.working_dir)
        info = self.git.commit_info(repo_path, commit_id, repo=repo)
        lines_added, lines_removed = self.git.diff_stats(repo_path, info.id, repo=repo)
        max_bytes = self.git.max_blob_bytes

        stats = {
            "files_counted": 0,
            "files_skipped_binary": 0,
            "files_skipped_too_large": 0,
        }
        lines_by_category: dict[str, int] = {}
        file_line_counts: dict[str, tuple[str, int]] = {}

        files = self.git.list_files(
            repo_path, info.id, skip_directory=self.classifier.should_ignore_directory, repo=repo
        )
        for tree_file in files:
            if self.classifier.should_ignore_file(tree_file.name, tree_file.path):
                continue
            category = self.classifier.category_of(tree_file.name)
            if category not in self.categories:
                continue
            data = self.git.read_blob(repo_path, info.id, tree_file.path, repo=repo)
            if len(data) > max_bytes:
                logger.debug("Skipping %s at %s: larger than %d bytes", tree_file.path, commit_id, max_bytes)
                stats["files_skipped_too_large"] += 1
                continue
            if _is_binary(data):
                stats["files_skipped_binary"] += 1
                continue

            lines = self.counters.count(category, data.decode("utf-8", errors="replace"))
            lines_by_category[category] = lines_by_category.get(category, 0) + lines
            file_line_counts[tree_file.path] = (category, lines)
            stats["files_counted"] += 1

        snapshot = CommitLineSnapshot(
            repository_id=repository_id,
            commit_id=info.id,
            commit_date=info.committed_at,
            total_lines=sum(lines_by_category.values()),
            lines_added=lines_added,
            lines_removed=lines_removed,
            lines_by_category=lines_by_category,
        )
        logger.debug(
            "Counted commit %s: %d lines (+%d/-%d) across %d files",
            info.id, snapshot.total_lines, lines_added, lines_removed, stats["files_counted"],
        )
        return CommitAnalysis(snapshot=snapshot, file_line_counts=file_line_counts, stats=stats)
