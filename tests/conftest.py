import asyncio
import json

import httpx
import pytest

from pharmacy_webapp.api_client import ResilientApiClient
from pharmacy_webapp.models import CredentialRecord
from pharmacy_webapp.session import Navigator, SessionTerminator
from pharmacy_webapp.session_guard import ActivitySignals, SessionGuard
from pharmacy_webapp.storage import CredentialStore, EphemeralStore, PersistentStore

BASE_URL = "http://testserver/api"
FOUR_HOURS_MS = 4 * 60 * 60 * 1000


class FakeClock:
    """Millisecond clock that only moves when told to."""

    def __init__(self, start_ms: int = 1_700_000_000_000):
        self.now = start_ms

    def __call__(self) -> int:
        return self.now

    def advance(self, ms: int) -> None:
        self.now += ms


class FakeBackend:
    """
    MockTransport handler standing in for the pharmacy API. Any request not
    carrying ``Bearer <valid_token>`` gets the backend's expired-token 401.
    """

    def __init__(
        self,
        valid_token: str = "new-access",
        refresh_status: int = 200,
        refresh_delay: float = 0.0,
        expires_in: int = 3600,
        unauthorized_message: str = "Invalid or expired token",
    ):
        self.valid_token = valid_token
        self.refresh_status = refresh_status
        self.refresh_delay = refresh_delay
        self.expires_in = expires_in
        self.unauthorized_message = unauthorized_message
        self.refresh_calls = 0
        self.refresh_bodies = []
        self.requests = []

    async def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        path = request.url.path

        if path == "/api/auth/refresh":
            self.refresh_calls += 1
            self.refresh_bodies.append(json.loads(request.content))
            if self.refresh_delay:
                await asyncio.sleep(self.refresh_delay)
            if self.refresh_status != 200:
                return httpx.Response(
                    self.refresh_status, json={"success": False, "message": "Invalid refresh token"}
                )
            return httpx.Response(
                200,
                json={
                    "success": True,
                    "data": {
                        "session": {
                            "access_token": self.valid_token,
                            "refresh_token": "new-refresh",
                            "expires_in": self.expires_in,
                        }
                    },
                },
            )

        if path == "/api/public":
            return httpx.Response(200, json={"success": True, "data": []})
        if path == "/api/forbidden":
            return httpx.Response(403, json={"success": False, "message": "insufficient role"})
        if path == "/api/broken":
            return httpx.Response(500, json={"success": False, "message": "Internal server error"})

        if request.headers.get("Authorization") != f"Bearer {self.valid_token}":
            return httpx.Response(401, json={"success": False, "message": self.unauthorized_message})
        return httpx.Response(200, json={"success": True, "data": {"path": path}})


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def storage_file(tmp_path):
    return tmp_path / "storage.json"


@pytest.fixture
def store(storage_file):
    return CredentialStore(persistent=PersistentStore(storage_file), ephemeral=EphemeralStore())


@pytest.fixture
def signals():
    return ActivitySignals()


@pytest.fixture
def guard(store, signals, clock):
    guard = SessionGuard(store, timeout_ms=FOUR_HOURS_MS, check_interval=60, signals=signals, clock=clock)
    yield guard
    guard.cleanup()


@pytest.fixture
def navigator():
    return Navigator(current_path="/dashboard")


@pytest.fixture
def terminator(store, guard, navigator):
    return SessionTerminator(store, guard, navigator, login_route="/login")


@pytest.fixture
def signed_in(store):
    store.save(
        CredentialRecord(access_token="stale-access", refresh_token="refresh-1", expires_at=0, remember_me=True)
    )
    return store


@pytest.fixture
def make_client(store, terminator):
    def _make(backend, **kwargs):
        client = ResilientApiClient(
            store, terminator, base_url=BASE_URL, transport=httpx.MockTransport(backend), **kwargs
        )
        return client

    return _make
