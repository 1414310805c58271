from datetime import datetime, timezone

import pytest
import pytest_asyncio
from sqlalchemy.exc import OperationalError

from core.db import build_session_maker, create_schema
from core.exceptions import NotFound, StoreUnavailable, VersionConflict
from core.singleton import get_subscription_service
from models.subscription import BusAggregate, PaymentStatus, RiderEntry, RiderStatus, SubscriptionType
from services.bus_db_store import BusDBStore, RiderDBDirectory
from services.bus_store import same_entry
from services.expiration_sweep import ExpirationSweep
from services.subscription_service import SubscriptionService

T0 = datetime(2024, 3, 1, 9, 0, tzinfo=timezone.utc)


@pytest_asyncio.fixture()
async def db(tmp_path):
    """SQLite stand-in for MySQL; same ORM models and store code."""
    engine, maker = build_session_maker(f"sqlite+aiosqlite:///{tmp_path / 'buses.db'}")
    await create_schema(engine)
    yield maker
    await engine.dispose()


@pytest_asyncio.fixture()
async def db_service(db, clock):
    store = BusDBStore(db)
    directory = RiderDBDirectory(db)
    await store.set_document(BusAggregate(id="B1", max_capacity=2, bus_name="Campus Loop"))
    for rider_id in ("R1", "R2", "R3"):
        await directory.upsert_profile(rider_id, name=f"Rider {rider_id}", email=f"{rider_id.lower()}@example.com")
    return SubscriptionService(store, directory, clock=clock)


@pytest.mark.asyncio
async def test_get_missing_bus(db):
    with pytest.raises(NotFound):
        await BusDBStore(db).get_document("NOPE")


@pytest.mark.asyncio
async def test_set_document_is_compare_and_swap(db):
    store = BusDBStore(db)
    created = await store.set_document(BusAggregate(id="B7", max_capacity=3), expected_version=0)
    assert created.version == 1

    bus = await store.get_document("B7")
    await store.set_document(bus.model_copy(update={"max_capacity": 4}), expected_version=bus.version)
    with pytest.raises(VersionConflict):
        await store.set_document(bus.model_copy(update={"max_capacity": 5}), expected_version=bus.version)

    stored = await store.get_document("B7")
    assert stored.max_capacity == 4
    assert stored.version == 2


@pytest.mark.asyncio
async def test_subscription_lifecycle_against_db(db, db_service, clock):
    store = db_service.store
    entry = await db_service.subscribe("R1", "B1", SubscriptionType.PER_RIDE, location_id="S1")
    [stored] = (await store.get_document("B1")).current_riders
    assert same_entry(stored, entry)

    paid = await db_service.update_payment_status("R1", "B1", PaymentStatus.PAID)
    assert paid.paid_at == clock()

    clock.advance(hours=24)
    stats = await ExpirationSweep(store, clock=clock).run()
    assert stats.expired_riders == 1

    entry = (await store.get_document("B1")).active_entry_for("R1")
    assert entry.payment_status == PaymentStatus.PENDING
    assert entry.paid_at is None


@pytest.mark.asyncio
async def test_atomic_list_ops_match_exact_values(db, db_service):
    store = db_service.store
    entry = await db_service.subscribe("R1", "B1", SubscriptionType.MONTHLY)

    assert not await store.atomic_add_to_list("B1", "current_riders", entry)
    assert await store.atomic_remove_from_list("B1", "current_riders", entry)
    assert not await store.atomic_remove_from_list("B1", "current_riders", entry)
    with pytest.raises(ValueError):
        await store.atomic_remove_from_list("B1", "drivers", entry)


@pytest.mark.asyncio
async def test_non_empty_query_uses_rider_count(db, db_service):
    store = db_service.store
    await store.set_document(BusAggregate(id="B8", max_capacity=5))
    await db_service.subscribe("R1", "B1", SubscriptionType.MONTHLY)

    buses = await store.query_where_field_non_empty("current_riders")
    assert [b.id for b in buses] == ["B1"]

    await db_service.cancel_pending_subscription("R1", "B1")
    assert await store.query_where_field_non_empty("current_riders") == []


@pytest.mark.asyncio
async def test_unsubscribe_paid_and_capacity_against_db(db_service):
    await db_service.subscribe("R1", "B1", SubscriptionType.MONTHLY)
    await db_service.update_payment_status("R1", "B1", PaymentStatus.PAID)
    await db_service.unsubscribe("R1", "B1")
    await db_service.subscribe("R2", "B1", SubscriptionType.MONTHLY)
    await db_service.subscribe("R3", "B1", SubscriptionType.MONTHLY)

    bus = await db_service.store.get_document("B1")
    assert bus.count_active() == 2
    assert bus.entries_for("R1")[0].status == RiderStatus.INACTIVE


@pytest.mark.asyncio
async def test_rider_directory(db):
    directory = RiderDBDirectory(db)
    with pytest.raises(NotFound):
        await directory.get_profile("R1")
    await directory.upsert_profile("R1", name="Asha", email="asha@example.com")
    profile = await directory.get_profile("R1")
    assert (profile.name, profile.email) == ("Asha", "asha@example.com")


@pytest.mark.asyncio
async def test_seed_database_is_rerunnable(tmp_path):
    from bootstrap_seed_db import seed_database

    (tmp_path / "buses.json").write_text('{"B1": {"max_capacity": 3, "bus_name": "Campus Loop"}}')
    (tmp_path / "riders.json").write_text('{"R1": {"name": "Asha", "email": "asha@example.com"}}')
    url = f"sqlite+aiosqlite:///{tmp_path / 'seed.db'}"

    assert await seed_database(url, str(tmp_path)) == (1, 1)
    (tmp_path / "buses.json").write_text('{"B1": {"max_capacity": 5, "bus_name": "Campus Loop"}}')
    assert await seed_database(url, str(tmp_path)) == (1, 1)

    engine, maker = build_session_maker(url)
    try:
        bus = await BusDBStore(maker).get_document("B1")
        profile = await RiderDBDirectory(maker).get_profile("R1")
    finally:
        await engine.dispose()
    assert bus.max_capacity == 5
    assert bus.version == 2
    assert profile.name == "Asha"


def unreachable_db():
    raise OperationalError("SELECT 1", {}, ConnectionRefusedError("Can't connect to MySQL server"))


@pytest.mark.asyncio
async def test_driver_errors_surface_as_store_unavailable():
    store = BusDBStore(unreachable_db)
    entry = RiderEntry(rider_id="R1", subscription_id="sub_1_abc", subscription_type=SubscriptionType.MONTHLY,
                       assigned_at=T0, start_date=T0, qr_code="{}")

    with pytest.raises(StoreUnavailable):
        await store.get_document("B1")
    with pytest.raises(StoreUnavailable):
        await store.set_document(BusAggregate(id="B1", max_capacity=2), expected_version=1)
    with pytest.raises(StoreUnavailable):
        await store.atomic_add_to_list("B1", "current_riders", entry)
    with pytest.raises(StoreUnavailable):
        await store.atomic_remove_from_list("B1", "current_riders", entry)
    with pytest.raises(StoreUnavailable):
        await store.query_where_field_non_empty("current_riders")
    with pytest.raises(StoreUnavailable):
        await RiderDBDirectory(unreachable_db).get_profile("R1")


@pytest.mark.asyncio
async def test_unreachable_db_maps_to_503(client, auth, clock):
    from main import app

    service = SubscriptionService(BusDBStore(unreachable_db), RiderDBDirectory(unreachable_db), clock=clock)
    app.dependency_overrides[get_subscription_service] = lambda: service

    resp = await client.post("/subscriptions", headers=auth("R1"), json={"bus_id": "B1", "subscription_type": "monthly"})
    assert resp.status_code == 503
    assert resp.json()["error"]["code"] == "store_unavailable"

    resp = await client.get("/subscriptions", headers=auth("R1"))
    assert resp.status_code == 503
