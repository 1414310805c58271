import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient


# Ensure project root is on sys.path so `services.*` imports work
ROOT_DIR = Path(__file__).resolve().parents[1]
if str(ROOT_DIR) not in sys.path:
    sys.path.insert(0, str(ROOT_DIR))


# Explicitly enable pytest-asyncio plugin for async tests/fixtures
pytest_plugins = ("pytest_asyncio",)


from core.auth import create_access_token
from core.singleton import get_bus_store, get_expiration_worker, get_subscription_service
from services.bus_store import InMemoryBusStore, InMemoryRiderDirectory
from services.expiration_sweep import ExpirationSweep
from services.subscription_service import SubscriptionService
from workers.expiration_worker import ExpirationWorker


T0 = datetime(2024, 3, 1, 9, 0, tzinfo=timezone.utc)


class FakeClock:
    """Settable clock; call it to read the time."""

    def __init__(self, now: datetime = T0):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now

    def set(self, now: datetime) -> datetime:
        self.now = now
        return self.now


def seed(store: InMemoryBusStore, directory: InMemoryRiderDirectory):
    store.register_bus("B1", max_capacity=2, bus_name="Campus Loop", bus_label="Route 1")
    store.register_bus("B2", max_capacity=40, bus_name="City Express", bus_label="Route 2")
    for rider_id in ("R1", "R2", "R3", "R4"):
        directory.register_rider(rider_id, name=f"Rider {rider_id}", email=f"{rider_id.lower()}@example.com")


@pytest.fixture()
def clock():
    return FakeClock()


@pytest.fixture()
def store():
    return InMemoryBusStore()


@pytest.fixture()
def directory():
    return InMemoryRiderDirectory()


@pytest.fixture()
def service(store, directory, clock):
    seed(store, directory)
    return SubscriptionService(store, directory, clock=clock)


@pytest.fixture()
def sweep(service, store, clock):
    return ExpirationSweep(store, clock=clock, retry_backoff_sec=0)


@pytest.fixture()
def worker(sweep):
    return ExpirationWorker(sweep, use_lock=False)


def auth_headers(user_id: str, role: str = "rider") -> dict:
    return {"Authorization": f"Bearer {create_access_token(user_id, role)}"}


@pytest.fixture()
def auth():
    """auth(user_id, role) -> Authorization header dict."""
    return auth_headers


@pytest_asyncio.fixture()
async def client(service, store, worker):
    """Async test client for the API, wired to the per-test store."""
    from main import app

    app.dependency_overrides[get_subscription_service] = lambda: service
    app.dependency_overrides[get_bus_store] = lambda: store
    app.dependency_overrides[get_expiration_worker] = lambda: worker
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://testserver") as ac:
        yield ac
    app.dependency_overrides.clear()
