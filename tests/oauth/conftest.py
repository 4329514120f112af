"""Shared fixtures for integration OAuth tests."""

import json
from datetime import datetime, timezone

import pytest

from integration_oauth.config import ProviderConfig, ProviderRegistry
from integration_oauth.exceptions import TransportError
from integration_oauth.http_client import HttpResponse
from integration_oauth.token_storage import FileTokenStore

FIXED_NOW = datetime(2026, 3, 1, 12, 0, 0, tzinfo=timezone.utc)
SECRET = b"test-signing-secret-with-enough-entropy"


class FakeRequester:
    """NetworkRequester that records calls and replays canned responses."""

    def __init__(self, responses=None, error=None):
        self.responses = list(responses or [])
        self.error = error
        self.calls = []

    def post(self, url, data, headers, timeout):
        self.calls.append(
            {"url": url, "data": dict(data), "headers": dict(headers), "timeout": timeout}
        )
        if self.error is not None:
            raise self.error
        return self.responses.pop(0)


def json_response(body, status_code=200):
    return HttpResponse(status_code=status_code, text=json.dumps(body))


@pytest.fixture
def secret():
    return SECRET


@pytest.fixture
def clock():
    return lambda: FIXED_NOW


@pytest.fixture
def provider_config():
    """The end-to-end provider configuration."""
    return ProviderConfig(
        client_id="cid",
        client_secret="csecret",
        redirect_uri="https://app/cb",
        authorization_endpoint="https://p/auth",
        token_endpoint="https://p/token",
        scopes=["read", "write"],
        key="acme",
    )


@pytest.fixture
def registry(provider_config):
    return ProviderRegistry([provider_config])


@pytest.fixture
def token_store(tmp_path):
    return FileTokenStore(tmp_path / "tokens.json")


@pytest.fixture
def transport_error():
    return TransportError("Timed out after 15.0s calling https://p/token")
