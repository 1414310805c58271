# services/bus_store.py
"""
Aggregate store contract and the in-memory implementation.

The contract mirrors a document store:
- get_document / set_document: whole bus document (set is compare-and-swap
  when expected_version is given)
- atomic_add_to_list / atomic_remove_from_list: add exact value if absent,
  remove exact value if present, on a named list field
- query_where_field_non_empty: every bus whose list field has items

Every write that changes a document bumps its version.

The in-memory store is used for local dev and tests (USE_DB=false). It can be
seeded from data/buses.json and data/riders.json.
"""
import asyncio
import json
import logging
import os
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Dict, List, Optional

from core.exceptions import NotFound, VersionConflict
from models.subscription import CURRENT_RIDERS_FIELD, BusAggregate, RiderEntry, RiderProfile

logger = logging.getLogger(__name__)


def same_entry(a: RiderEntry, b: RiderEntry) -> bool:
    """Exact-value comparison used by the atomic list operations."""
    return a.model_dump() == b.model_dump()


class AggregateStore(ABC):
    @abstractmethod
    async def get_document(self, bus_id: str) -> BusAggregate:
        """Return the bus document or raise NotFound."""

    @abstractmethod
    async def set_document(self, aggregate: BusAggregate, expected_version: Optional[int] = None) -> BusAggregate:
        """Write the whole document; raise VersionConflict if expected_version is stale."""

    @abstractmethod
    async def atomic_add_to_list(self, bus_id: str, field: str, value: RiderEntry,
                                 expected_version: Optional[int] = None) -> bool:
        """Add value if absent. Returns False if it was already present."""

    @abstractmethod
    async def atomic_remove_from_list(self, bus_id: str, field: str, value: RiderEntry) -> bool:
        """Remove value if present. Returns False if it was not there."""

    @abstractmethod
    async def query_where_field_non_empty(self, field: str) -> List[BusAggregate]:
        ...


class RiderDirectory(ABC):
    """Identity provider view: stable rider id -> profile fields."""

    @abstractmethod
    async def get_profile(self, rider_id: str) -> RiderProfile:
        """Return the profile or raise NotFound."""


def _check_field(field: str):
    if field != CURRENT_RIDERS_FIELD:
        raise ValueError(f"Unsupported list field: {field}")


class InMemoryBusStore(AggregateStore):
    def __init__(self, data_dir: Optional[str] = None):
        self.buses: Dict[str, BusAggregate] = {}
        self._lock = asyncio.Lock()

        if data_dir:
            buses_file = os.path.join(data_dir, "buses.json")
            if os.path.exists(buses_file):
                try:
                    with open(buses_file, "r", encoding="utf-8") as f:
                        for bus_id, raw in json.load(f).items():
                            self.buses[bus_id] = BusAggregate(id=bus_id, **raw)
                except Exception as e:
                    logger.error("Failed to load buses.json: %s", e)
                    self.buses = {}

    # ------------- seeding -------------
    def register_bus(self, bus_id: str, max_capacity: int, bus_name: str | None = None,
                     bus_label: str | None = None) -> BusAggregate:
        bus = BusAggregate(id=bus_id, max_capacity=max_capacity, bus_name=bus_name, bus_label=bus_label)
        self.buses[bus_id] = bus
        return bus.model_copy(deep=True)

    # ------------- contract -------------
    async def get_document(self, bus_id: str) -> BusAggregate:
        bus = self.buses.get(bus_id)
        if bus is None:
            raise NotFound(f"Bus {bus_id} not found")
        return bus.model_copy(deep=True)

    async def set_document(self, aggregate: BusAggregate, expected_version: Optional[int] = None) -> BusAggregate:
        async with self._lock:
            current = self.buses.get(aggregate.id)
            current_version = current.version if current else 0
            if expected_version is not None and expected_version != current_version:
                raise VersionConflict(aggregate.id, expected_version, current_version)
            stored = aggregate.model_copy(deep=True, update={
                "version": current_version + 1,
                "updated_at": datetime.now(timezone.utc),
            })
            self.buses[aggregate.id] = stored
            return stored.model_copy(deep=True)

    async def atomic_add_to_list(self, bus_id: str, field: str, value: RiderEntry,
                                 expected_version: Optional[int] = None) -> bool:
        _check_field(field)
        async with self._lock:
            bus = self.buses.get(bus_id)
            if bus is None:
                raise NotFound(f"Bus {bus_id} not found")
            if expected_version is not None and expected_version != bus.version:
                raise VersionConflict(bus_id, expected_version, bus.version)
            if any(same_entry(e, value) for e in bus.current_riders):
                return False
            self.buses[bus_id] = bus.model_copy(update={
                "current_riders": [*bus.current_riders, value],
                "version": bus.version + 1,
                "updated_at": datetime.now(timezone.utc),
            })
            return True

    async def atomic_remove_from_list(self, bus_id: str, field: str, value: RiderEntry) -> bool:
        _check_field(field)
        async with self._lock:
            bus = self.buses.get(bus_id)
            if bus is None:
                raise NotFound(f"Bus {bus_id} not found")
            remaining = [e for e in bus.current_riders if not same_entry(e, value)]
            if len(remaining) == len(bus.current_riders):
                return False
            self.buses[bus_id] = bus.model_copy(update={
                "current_riders": remaining,
                "version": bus.version + 1,
                "updated_at": datetime.now(timezone.utc),
            })
            return True

    async def query_where_field_non_empty(self, field: str) -> List[BusAggregate]:
        _check_field(field)
        return [bus.model_copy(deep=True) for bus in self.buses.values() if bus.current_riders]


class InMemoryRiderDirectory(RiderDirectory):
    def __init__(self, data_dir: Optional[str] = None):
        self.riders: Dict[str, RiderProfile] = {}

        if data_dir:
            riders_file = os.path.join(data_dir, "riders.json")
            if os.path.exists(riders_file):
                try:
                    with open(riders_file, "r", encoding="utf-8") as f:
                        for rider_id, raw in json.load(f).items():
                            self.riders[rider_id] = RiderProfile(rider_id=rider_id, **raw)
                except Exception as e:
                    logger.error("Failed to load riders.json: %s", e)
                    self.riders = {}

    def register_rider(self, rider_id: str, name: str = "", email: str = "") -> RiderProfile:
        profile = RiderProfile(rider_id=rider_id, name=name, email=email)
        self.riders[rider_id] = profile
        return profile

    async def get_profile(self, rider_id: str) -> RiderProfile:
        profile = self.riders.get(rider_id)
        if profile is None:
            raise NotFound(f"Rider {rider_id} not found")
        return profile
