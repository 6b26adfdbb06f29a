"""Shared test fixtures for the build relay test suite.

The relay config is built in memory and injected through FastAPI
dependency overrides; file storage targets point into ``tmp_path``.
GitHub is never contacted: tests patch ``buildrelay.github.client``.
"""

import hashlib
import hmac
from collections.abc import AsyncGenerator

import pytest
from httpx import ASGITransport, AsyncClient

from buildrelay.core.config import RelayConfig, Settings, get_relay_config, get_settings
from buildrelay.main import create_app

WEBHOOK_SECRET = "test-webhook-secret"
OWNER = "octo"
REPO = "widgets"
FULL_NAME = f"{OWNER}/{REPO}"
COMMIT = "0123456789abcdef0123456789abcdef01234567"
PULL_NUMBER = 42
RUN_ID = 9001
SUITE_ID = 777


def sign(body: bytes, secret: str = WEBHOOK_SECRET, algorithm: str = "sha256") -> str:
    digest = hmac.new(secret.encode("utf-8"), body, getattr(hashlib, algorithm)).hexdigest()
    return f"{algorithm}={digest}"


def sha256_hex(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


@pytest.fixture
def storage_root(tmp_path):
    return tmp_path / "storage"


@pytest.fixture
def relay_config(storage_root) -> RelayConfig:
    """One allow-listed repository publishing into two file storages."""
    return RelayConfig.model_validate(
        {
            "repositories": {
                FULL_NAME: {
                    "gh_notify_secret": WEBHOOK_SECRET,
                    "storages": [
                        {"storage": "archive", "publish_url": False},
                        {"storage": "public", "publish_url": True},
                    ],
                }
            },
            "storages": {
                "archive": {
                    "method": "file",
                    "path": f"{storage_root}/archive/[:owner]/[:repo]/[:file_hash]",
                },
                "public": {
                    "method": "file",
                    "path": f"{storage_root}/public/pr-[:pull_number]/[:file_basename]-[:commit_short_hash][:file_extname]",
                    "public_url": "https://builds.example.com/pr-[:pull_number]/[:file_basename]-[:commit_short_hash][:file_extname]",
                },
            },
        }
    )


def _override_settings() -> Settings:
    return Settings(
        github_auth_token="",
        sentry_dsn="",
        debug=False,
        upload_rate_limit="1000/minute",
    )


@pytest.fixture
def app(relay_config):
    """FastAPI app with the relay config and settings dependencies overridden.

    The SlowAPI limiter keeps in-memory counters for the whole process;
    reset them so tests don't throttle each other.
    """
    from buildrelay.core.limiter import limiter

    limiter.reset()

    test_app = create_app()
    test_app.dependency_overrides[get_relay_config] = lambda: relay_config
    test_app.dependency_overrides[get_settings] = _override_settings
    return test_app


@pytest.fixture
def aggregator(app):
    return app.state.aggregator


@pytest.fixture
async def client(app) -> AsyncGenerator[AsyncClient, None]:
    """Async HTTP client wired to the test app."""
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac
