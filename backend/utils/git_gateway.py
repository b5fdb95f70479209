"""Git access for line tracking.

Clones and refreshes working copies, enumerates commits oldest first, computes
first-parent diff stats and reads blobs straight from the object database, so
counts are point-in-time correct without checking anything out.
"""

import logging
import shutil
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, Iterator, Optional
from urllib.parse import quote, urlparse, urlunparse

from git import Blob, GitCommandError, InvalidGitRepositoryError, NoSuchPathError, Repo, Tree
from git.cmd import Git

logger = logging.getLogger(__name__)

NULL_TREE_SHA = "4b825dc642cb6eb9a060e54bf8d69288fbee4904"


class GitAccessError(RuntimeError):
    """Clone, pull or open failed. Fatal to a whole repository pass."""


@dataclass(frozen=True)
class CommitInfo:
    id: str
    committed_at: datetime


@dataclass(frozen=True)
class TreeFile:
    path: str
    name: str


def _ensure_safe_directory(repo_path: str) -> None:
    """Mark the working copy as trusted to avoid 'dubious ownership' errors."""
    resolved_path = str(Path(repo_path).resolve())
    git_cmd = Git()
    try:
        trusted = git_cmd.config("--global", "--get-all", "safe.directory").splitlines()
    except GitCommandError:
        # Exit status 1 when the key is unset
        trusted = []
    if resolved_path in trusted or "*" in trusted:
        return
    try:
        git_cmd.config("--global", "--add", "safe.directory", resolved_path)
    except GitCommandError as exc:
        logger.debug("Could not register safe.directory %s: %s", resolved_path, exc)


def authenticated_url(repo_url: str, token: Optional[str]) -> str:
    """Embed an access token in an https clone URL (token as user name)."""
    if not token:
        return repo_url
    parsed = urlparse(repo_url)
    if parsed.scheme not in ("http", "https"):
        return repo_url
    host = parsed.hostname or ""
    if parsed.port:
        host = f"{host}:{parsed.port}"
    netloc = f"{quote(token, safe='')}@{host}"
    return urlunparse(parsed._replace(netloc=netloc))


def _redact(message: str, token: Optional[str]) -> str:
    if token:
        return message.replace(token, "***").replace(quote(token, safe=""), "***")
    return message


def _as_utc(value: datetime) -> datetime:
    return value.astimezone(timezone.utc)


@contextmanager
def open_repository(repo_path: str) -> Iterator[Repo]:
    """Open a working copy for the duration of one block and always release it."""
    path = Path(repo_path)
    if not path.exists():
        raise GitAccessError(f"Repository path does not exist: {repo_path}")
    if not path.is_dir():
        raise GitAccessError(f"Repository path is not a directory: {repo_path}")
    try:
        repo = Repo(str(path))
    except (InvalidGitRepositoryError, NoSuchPathError) as e:
        raise GitAccessError(f"Path is not a valid Git repository: {repo_path}") from e
    try:
        yield repo
    finally:
        repo.close()


class GitGateway:
    """GitPython-backed implementation of the git access contract."""

    def __init__(self, max_blob_bytes: int = 5_000_000):
        self.max_blob_bytes = max_blob_bytes

    def clone(self, repo_url: str, dest_path: str, credential: Optional[str] = None) -> str:
        """Clone repo_url into dest_path and return the resolved path.

        An existing valid clone is reused; a broken directory is deleted and re-cloned.
        """
        if not repo_url or not repo_url.strip():
            raise ValueError("repo_url cannot be empty")

        repo_path = Path(dest_path).resolve()
        if repo_path.exists():
            try:
                Repo(str(repo_path)).close()
                logger.info("Repository already exists at %s. Skipping clone.", repo_path)
                return str(repo_path)
            except (InvalidGitRepositoryError, NoSuchPathError):
                logger.warning("Removing invalid working copy at %s", repo_path)
                shutil.rmtree(repo_path, ignore_errors=True)

        repo_path.parent.mkdir(parents=True, exist_ok=True)
        logger.info("Cloning %s into %s", repo_url, repo_path)
        try:
            repo = Repo.clone_from(authenticated_url(repo_url, credential), str(repo_path))
        except GitCommandError as e:
            raise GitAccessError(
                _redact(f"Failed to clone repository {repo_url} into {repo_path}: {e}", credential)
            ) from e
        try:
            # Keep the token out of .git/config
            if credential:
                repo.remotes.origin.set_url(repo_url)
        finally:
            repo.close()
        _ensure_safe_directory(str(repo_path))
        return str(repo_path)

    def pull(self, repo_path: str, credential: Optional[str] = None) -> None:
        """Fetch and merge the remote HEAD into the working copy."""
        with open_repository(repo_path) as repo:
            try:
                if credential:
                    remote_url = repo.remotes.origin.url
                    repo.git.pull(authenticated_url(remote_url, credential))
                else:
                    repo.remotes.origin.pull()
            except (GitCommandError, ValueError, AttributeError) as e:
                raise GitAccessError(
                    _redact(f"Failed to pull repository at {repo_path}: {e}", credential)
                ) from e
        logger.info("Pulled repository at %s", repo_path)

    def enumerate_commits(self, repo_path: str) -> list[CommitInfo]:
        """All commits reachable from HEAD, oldest first.

        Date order never lists a child before its parents, even when commit
        timestamps are skewed.
        """
        with open_repository(repo_path) as repo:
            if not repo.head.is_valid():
                return []
            commits = [
                CommitInfo(id=c.hexsha, committed_at=_as_utc(c.committed_datetime))
                for c in repo.iter_commits("HEAD", date_order=True, reverse=True)
            ]
        logger.info("Found %d commits in %s", len(commits), repo_path)
        return commits

    def open(self, repo_path: str):
        """Scoped handle for a sequence of commit-level calls on one working copy."""
        return open_repository(repo_path)

    @contextmanager
    def _handle(self, repo_path: str, repo: Optional[Repo]) -> Iterator[Repo]:
        if repo is not None:
            yield repo
            return
        with open_repository(repo_path) as opened:
            yield opened

    def commit_info(self, repo_path: str, commit_id: str, repo: Optional[Repo] = None) -> CommitInfo:
        with self._handle(repo_path, repo) as handle:
            commit = handle.commit(commit_id)
            return CommitInfo(id=commit.hexsha, committed_at=_as_utc(commit.committed_datetime))

    def diff_stats(self, repo_path: str, commit_id: str, repo: Optional[Repo] = None) -> tuple[int, int]:
        """(lines_added, lines_removed) of a commit against its first parent.

        A root commit is diffed against the empty tree, so everything it adds counts
        and nothing is removed.
        """
        with self._handle(repo_path, repo) as handle:
            commit = handle.commit(commit_id)
            parent = commit.parents[0].hexsha if commit.parents else NULL_TREE_SHA
            output = handle.git.diff("--numstat", "--no-renames", parent, commit.hexsha, "--")

        added = removed = 0
        for line in output.splitlines():
            parts = line.split("\t", 2)
            if len(parts) < 3:
                continue
            # Binary files report "-"
            if parts[0].isdigit():
                added += int(parts[0])
            if parts[1].isdigit():
                removed += int(parts[1])
        return added, removed

    def list_files(
        self,
        repo_path: str,
        commit_id: str,
        skip_directory: Optional[Callable[[str], bool]] = None,
        repo: Optional[Repo] = None,
    ) -> list[TreeFile]:
        """Regular files in the commit's tree, depth first.

        Directories for which skip_directory returns True are never entered.
        Symlinks and submodules are left out.
        """
        files: list[TreeFile] = []

        def walk(tree: Tree) -> None:
            for subtree in tree.trees:
                if skip_directory is not None and skip_directory(subtree.path):
                    continue
                walk(subtree)
            for blob in tree.blobs:
                if blob.mode == Blob.link_mode:
                    continue
                files.append(TreeFile(path=blob.path, name=blob.name))

        with self._handle(repo_path, repo) as handle:
            walk(handle.commit(commit_id).tree)
        return files

    def read_blob(
        self, repo_path: str, commit_id: str, file_path: str, repo: Optional[Repo] = None
    ) -> bytes:
        """Bytes of file_path as of commit_id, capped at max_blob_bytes + 1.

        A result longer than max_blob_bytes means the file was truncated.
        """
        with self._handle(repo_path, repo) as handle:
            commit = handle.commit(commit_id)
            try:
                blob = commit.tree / file_path
            except KeyError as e:
                raise FileNotFoundError(f"{file_path} not found in commit {commit_id}") from e
            return blob.data_stream.read(self.max_blob_bytes + 1)
