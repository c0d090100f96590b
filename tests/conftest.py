import asyncio
import inspect
import os
import sys
import tempfile
from pathlib import Path
from urllib.parse import parse_qs

# Environment must be in place before anything imports gatehouse settings
_test_tmp_dir = tempfile.mkdtemp(prefix="gatehouse_test_")
os.environ.setdefault("SHARED_FS_ROOT", _test_tmp_dir)
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("MEMORY_STORE_PERSIST", "false")
os.environ.setdefault("JWT_SECRET", "test-secret-key-for-testing-only-do-not-use-in-production")
os.environ.setdefault("OAUTH_GOOGLE_CLIENT_ID", "test-client-id")
os.environ.setdefault("OAUTH_GOOGLE_CLIENT_SECRET", "test-client-secret")

import httpx  # noqa: E402
import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


from gatehouse.service.runtime import reset_runtime_for_tests  # noqa: E402


class FakeGoogle:
    """In-process stand-in for Google's token and userinfo endpoints."""

    def __init__(
        self,
        *,
        sub: str = "google-sub-123",
        email: str = "ann@example.com",
        name: str = "Ann Example",
        token_status: int = 200,
        token_body: dict | None = None,
        userinfo_status: int = 200,
        fail_with: Exception | None = None,
    ) -> None:
        self.sub = sub
        self.email = email
        self.name = name
        self.token_status = token_status
        self.token_body = token_body
        self.userinfo_status = userinfo_status
        self.fail_with = fail_with
        self.requests: list[httpx.Request] = []

    @property
    def token_requests(self) -> list[httpx.Request]:
        return [r for r in self.requests if r.url.path == "/token"]

    def token_form(self, index: int = 0) -> dict[str, str]:
        form = parse_qs(self.token_requests[index].content.decode())
        return {key: values[0] for key, values in form.items()}

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.fail_with is not None:
            raise self.fail_with
        if request.url.host == "oauth2.googleapis.com" and request.url.path == "/token":
            body = self.token_body or {
                "access_token": "fake-access-token",
                "token_type": "Bearer",
                "expires_in": 3599,
            }
            return httpx.Response(self.token_status, json=body)
        if request.url.path == "/v1/userinfo":
            if request.headers.get("Authorization") != "Bearer fake-access-token":
                return httpx.Response(401, json={"error": "invalid_token"})
            return httpx.Response(
                self.userinfo_status,
                json={
                    "sub": self.sub,
                    "email": self.email,
                    "name": self.name,
                    "email_verified": True,
                },
            )
        return httpx.Response(404)

    @property
    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handler)


@pytest.fixture
def make_fake_google():
    """Factory for fake Google endpoints; pass its ``transport`` to the OAuth client."""
    return FakeGoogle


@pytest.fixture(autouse=True)
def reset_runtime_state():
    reset_runtime_for_tests()
    yield
    reset_runtime_for_tests()


def pytest_pyfunc_call(pyfuncitem):
    if inspect.iscoroutinefunction(pyfuncitem.obj):
        call_kwargs = {
            name: pyfuncitem.funcargs[name]
            for name in pyfuncitem._fixtureinfo.argnames
            if name in pyfuncitem.funcargs
        }
        asyncio.run(pyfuncitem.obj(**call_kwargs))
        return True
    return None


def pytest_configure(config):
    config.addinivalue_line("markers", "asyncio: mark test as async")
