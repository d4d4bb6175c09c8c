import httpx
import pytest
from fastapi.testclient import TestClient

from gateway.config import Settings
from gateway.main import create_app
from gateway.ratelimit import FixedWindowRateLimiter

ALLOWED_ORIGIN = "https://plainly.live"
EVIL_ORIGIN = "https://evil.example"


class FakeUpstream:
    """Records every outbound request and answers with ``handler``."""

    def __init__(self, handler):
        self.handler = handler
        self.requests = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        return self.handler(request)

    @property
    def calls(self) -> int:
        return len(self.requests)


def _never_called(request: httpx.Request) -> httpx.Response:
    raise AssertionError(f"unexpected upstream call to {request.url}")


@pytest.fixture()
def make_client():
    def _make(handler=_never_called, limiter=None, **overrides):
        upstream = FakeUpstream(handler)
        values = {
            "groq_api_key": "test-groq-key",
            "web3forms_access_key": "test-web3forms-key",
            "prune_probability": 0.0,
        }
        values.update(overrides)
        settings = Settings(**values)
        http = httpx.AsyncClient(transport=httpx.MockTransport(upstream))
        app = create_app(
            settings,
            http_client=http,
            rate_limiter=limiter or FixedWindowRateLimiter(prune_probability=0.0),
        )
        return TestClient(app), upstream

    return _make
