"""Access tokens for private repositories.

A provider returns None when it has no token, which limits access to public
repositories.
"""

from typing import Optional

from models.line_tracker import TrackedRepository


class CredentialProvider:
    def get_access_token(self, repository: TrackedRepository) -> Optional[str]:
        raise NotImplementedError


class StaticCredentialProvider(CredentialProvider):
    """One token for every repository, or per-repository tokens by id."""

    def __init__(self, token: Optional[str] = None, tokens_by_repository: Optional[dict[str, str]] = None):
        self._token = token
        self._tokens = dict(tokens_by_repository or {})

    def get_access_token(self, repository: TrackedRepository) -> Optional[str]:
        return self._tokens.get(repository.id, self._token)


class NoCredentialProvider(StaticCredentialProvider):
    def __init__(self):
        super().__init__(None)
