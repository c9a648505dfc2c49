"""Shared test fixtures."""
import json
from datetime import datetime, timezone
from typing import List, Optional

import httpx
import pytest
from sqlalchemy.pool import StaticPool
from sqlmodel import Session, SQLModel, create_engine

# Import all models so SQLModel.metadata knows about them
from tracker.models.sync import SyncLog  # noqa: F401
from tracker.collectors.base import Collector
from tracker.config import Settings
from tracker.models.config import SyncConfiguration
from tracker.models.snapshots import BiometricSnapshot, LocationSnapshot

ENDPOINT = "https://collector.test"
FIXED_TIME = datetime(2025, 1, 15, 7, 30, tzinfo=timezone.utc)


@pytest.fixture(name="engine")
def engine_fixture():
    """In-memory SQLite engine. Tables recreated fresh for each test."""
    engine = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    SQLModel.metadata.create_all(engine)
    yield engine
    SQLModel.metadata.drop_all(engine)


@pytest.fixture(name="test_session")
def test_session_fixture(engine):
    with Session(engine) as session:
        yield session


@pytest.fixture(name="sync_config")
def sync_config_fixture() -> SyncConfiguration:
    return SyncConfiguration.defaults(ENDPOINT)


@pytest.fixture(name="settings")
def settings_fixture(tmp_path) -> Settings:
    """Settings with every on-disk path under tmp_path."""
    return Settings(
        endpoint=ENDPOINT,
        queue_path=tmp_path / "offline_queue.json",
        session_path=tmp_path / "auth" / "session.json",
        snapshot_dir=tmp_path / "snapshots",
        background_lead_seconds=0,
    )


# ─── Fake collection endpoint ────────────────────────────────────────────────

class FakeServer:
    """
    MockTransport handler standing in for the control plane + collector.

    POST /location answers with the next code from `post_codes` (200 once
    exhausted), or raises `post_error` if set. GET /status answers with
    `status_body` / `status_code`.
    """

    def __init__(self):
        self.requests: List[httpx.Request] = []
        self.post_codes: List[int] = []
        self.post_error: Optional[Exception] = None
        self.status_code = 200
        self.status_body = {
            "syncConfig": {
                "location_interval": "every 10 minutes",
                "biometric_interval": "every 2 hours",
                "sync_on_app_open": True,
                "notifications_enabled": False,
            }
        }

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if request.method == "GET" and request.url.path.endswith("/status"):
            return httpx.Response(self.status_code, json=self.status_body)
        if self.post_error is not None:
            raise self.post_error
        code = self.post_codes.pop(0) if self.post_codes else 200
        return httpx.Response(code, json={"ok": code == 200})

    def posted(self) -> List[dict]:
        """JSON bodies of every POST /location, in order."""
        return [
            json.loads(r.content)
            for r in self.requests
            if r.method == "POST" and r.url.path.endswith("/location")
        ]


@pytest.fixture(name="server")
def server_fixture() -> FakeServer:
    return FakeServer()


@pytest.fixture(name="http")
def http_fixture(server) -> httpx.AsyncClient:
    return httpx.AsyncClient(transport=httpx.MockTransport(server))


# ─── Fake collector ──────────────────────────────────────────────────────────

class FakeCollector(Collector):
    """Collector returning canned snapshots; counts pulls."""

    def __init__(
        self,
        location: Optional[LocationSnapshot] = None,
        biometric: Optional[BiometricSnapshot] = None,
    ):
        self.location = location
        self.biometric = biometric or BiometricSnapshot.empty(FIXED_TIME)
        self.location_pulls = 0
        self.biometric_pulls = 0

    async def pull_biometrics(self) -> BiometricSnapshot:
        self.biometric_pulls += 1
        return self.biometric

    async def pull_location(self) -> Optional[LocationSnapshot]:
        self.location_pulls += 1
        return self.location

    async def request_biometric_authorization(self) -> bool:
        return True

    async def request_location_authorization(self) -> bool:
        return True


@pytest.fixture(name="collector")
def collector_fixture() -> FakeCollector:
    return FakeCollector(
        location=LocationSnapshot(
            timestamp=FIXED_TIME,
            latitude=37.0,
            longitude=-122.0,
            accuracy=5.0,
            altitude=12.0,
            speed=0.0,
        )
    )
