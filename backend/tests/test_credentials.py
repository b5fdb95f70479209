from models.line_tracker import TrackedRepository
from services.credentials import NoCredentialProvider, StaticCredentialProvider


def _repository(repository_id: str) -> TrackedRepository:
    return TrackedRepository(id=repository_id, owner="acme", name="app", clone_url="https://x/y.git")


def test_static_provider_prefers_repository_token():
    provider = StaticCredentialProvider("shared", {"private": "own"})
    assert provider.get_access_token(_repository("private")) == "own"
    assert provider.get_access_token(_repository("other")) == "shared"


def test_no_credentials_means_public_only():
    assert NoCredentialProvider().get_access_token(_repository("any")) is None
