# core/singleton.py
"""
Unified singleton registry.

Picks the DB-backed store when USE_DB is on and an engine exists, otherwise
the in-memory store seeded from DATA_DIR. Routers get these through the
get_* dependencies so tests can override them.
"""
import logging

from config.settings import settings
from core.db import async_session_maker, create_schema, engine
from services.bus_store import InMemoryBusStore, InMemoryRiderDirectory
from services.expiration_sweep import ExpirationSweep
from services.subscription_service import SubscriptionService
from workers.expiration_worker import ExpirationWorker

logger = logging.getLogger(__name__)

if settings.USE_DB and async_session_maker is not None:
    from services.bus_db_store import BusDBStore, RiderDBDirectory

    bus_store = BusDBStore(async_session_maker)
    rider_directory = RiderDBDirectory(async_session_maker)
else:
    bus_store = InMemoryBusStore(data_dir=settings.DATA_DIR)
    rider_directory = InMemoryRiderDirectory(data_dir=settings.DATA_DIR)

subscription_service = SubscriptionService(bus_store, rider_directory)
expiration_sweep = ExpirationSweep(bus_store)
expiration_worker = ExpirationWorker(expiration_sweep)


async def init_storage():
    """Create DB tables when running against MySQL (development convenience)."""
    if engine is not None:
        await create_schema(engine)
        logger.info("DB schema ready")


def get_subscription_service() -> SubscriptionService:
    return subscription_service


def get_bus_store():
    return bus_store


def get_expiration_worker() -> ExpirationWorker:
    return expiration_worker


__all__ = [
    "bus_store",
    "rider_directory",
    "subscription_service",
    "expiration_sweep",
    "expiration_worker",
]
