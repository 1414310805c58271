import asyncio
import json
import os

from config.settings import settings
from core.db import build_session_maker, create_schema
from core.exceptions import NotFound
from models.subscription import BusAggregate
from services.bus_db_store import BusDBStore, RiderDBDirectory


async def import_buses(store: BusDBStore, buses_file: str) -> int:
    """
    Import buses from buses.json into the 'buses' table.
    JSON shape (same file the in-memory store reads):
        {
          "B1": { "max_capacity": 40, "bus_name": "...", "bus_label": "..." },
          "B2": { ... }
        }
    Existing buses keep their riders; only capacity and names are updated.
    """
    if not os.path.exists(buses_file):
        print(f"[bootstrap] buses.json not found at {buses_file}, skipping buses import.")
        return 0

    with open(buses_file, "r", encoding="utf-8") as f:
        buses_data = json.load(f)
    if not isinstance(buses_data, dict):
        print("[bootstrap] buses.json is not a dict; skipping.")
        return 0

    count = 0
    for bus_id, entry in buses_data.items():
        if not isinstance(entry, dict):
            continue
        fields = {
            "max_capacity": int(entry.get("max_capacity", 0)),
            "bus_name": entry.get("bus_name"),
            "bus_label": entry.get("bus_label"),
        }
        try:
            bus = await store.get_document(bus_id)
            await store.set_document(bus.model_copy(update=fields), expected_version=bus.version)
        except NotFound:
            await store.set_document(BusAggregate(id=bus_id, **fields), expected_version=0)
        count += 1
        print(f"[bootstrap] Imported/updated bus {bus_id} (capacity={fields['max_capacity']}).")
    return count


async def import_riders(directory: RiderDBDirectory, riders_file: str) -> int:
    """
    Import rider profiles from riders.json into the 'users' table.
        { "R1": { "name": "...", "email": "..." }, ... }
    """
    if not os.path.exists(riders_file):
        print(f"[bootstrap] riders.json not found at {riders_file}, skipping riders import.")
        return 0

    with open(riders_file, "r", encoding="utf-8") as f:
        riders_data = json.load(f)
    if not isinstance(riders_data, dict):
        print("[bootstrap] riders.json is not a dict; skipping.")
        return 0

    count = 0
    for rider_id, entry in riders_data.items():
        if not isinstance(entry, dict):
            continue
        await directory.upsert_profile(rider_id, name=entry.get("name", ""), email=entry.get("email"))
        count += 1
    print(f"[bootstrap] Imported/updated {count} riders.")
    return count


async def seed_database(url: str, data_dir: str) -> tuple[int, int]:
    """Create tables and import the seed files; returns (buses, riders) imported."""
    engine, maker = build_session_maker(url)
    try:
        await create_schema(engine)
        buses = await import_buses(BusDBStore(maker), os.path.join(data_dir, "buses.json"))
        riders = await import_riders(RiderDBDirectory(maker), os.path.join(data_dir, "riders.json"))
    finally:
        await engine.dispose()
    return buses, riders


async def main():
    db_url = settings.MYSQL_ASYNC_URL
    if not db_url or db_url.startswith("disabled"):
        raise RuntimeError(f"MYSQL_ASYNC_URL is not configured correctly: {db_url}")

    buses, riders = await seed_database(db_url, settings.DATA_DIR)
    print(f"[bootstrap] Seed import completed: {buses} buses, {riders} riders.")


if __name__ == "__main__":
    asyncio.run(main())
