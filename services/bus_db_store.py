"""
Aggregate store with MySQL backend.

Purpose:
- DB-backed implementation of the AggregateStore contract
- Each atomic list operation and each compare-and-swap write runs in its own
  transaction with the bus row locked (SELECT ... FOR UPDATE), so concurrent
  riders and the sweep never interleave inside one write

Key methods:
- get_document(bus_id): fetch bus document
- set_document(aggregate, expected_version): whole-document CAS write
- atomic_add_to_list / atomic_remove_from_list: exact-value list ops
- query_where_field_non_empty(field): buses with riders

Production notes:
- One short-lived session per call; safe to use from parallel sweep batches
- Driver/transport failures surface as StoreUnavailable
"""
import logging
from datetime import datetime, timezone
from typing import List, Optional

from sqlalchemy.exc import DBAPIError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.future import select

from core.exceptions import NotFound, StoreUnavailable, VersionConflict
from models.db_models import Bus, User
from models.subscription import CURRENT_RIDERS_FIELD, BusAggregate, RiderEntry, RiderProfile
from services.bus_store import AggregateStore, RiderDirectory, same_entry

logger = logging.getLogger(__name__)


def _check_field(field: str):
    if field != CURRENT_RIDERS_FIELD:
        raise ValueError(f"Unsupported list field: {field}")


class BusDBStore(AggregateStore):
    """DB-backed aggregate store using async SQLAlchemy."""

    def __init__(self, session_maker: async_sessionmaker[AsyncSession]):
        """
        Args:
            session_maker: async session factory (core.db.async_session_maker)
        """
        self.session_maker = session_maker

    async def get_document(self, bus_id: str) -> BusAggregate:
        try:
            async with self.session_maker() as session:
                result = await session.execute(select(Bus).where(Bus.bus_id == bus_id))
                bus = result.scalar_one_or_none()
        except DBAPIError as e:
            logger.error("Error fetching bus %s: %s", bus_id, e)
            raise StoreUnavailable(str(e)) from e
        if bus is None:
            raise NotFound(f"Bus {bus_id} not found")
        return self._to_aggregate(bus)

    async def set_document(self, aggregate: BusAggregate, expected_version: Optional[int] = None) -> BusAggregate:
        """
        Write the whole document.

        With expected_version the write only lands if the stored version still
        matches, otherwise VersionConflict is raised and nothing is written.
        A missing bus is inserted (only without expected_version, or with 0).
        """
        try:
            async with self.session_maker() as session:
                async with session.begin():
                    bus = await self._locked(session, aggregate.id)
                    current_version = bus.version if bus else 0
                    if expected_version is not None and expected_version != current_version:
                        raise VersionConflict(aggregate.id, expected_version, current_version)
                    if bus is None:
                        bus = Bus(bus_id=aggregate.id)
                        session.add(bus)
                    bus.bus_name = aggregate.bus_name
                    bus.bus_label = aggregate.bus_label
                    bus.max_capacity = aggregate.max_capacity
                    bus.last_payment_check = aggregate.last_payment_check
                    self._write_riders(bus, aggregate.current_riders, current_version)
                    await session.flush()
                    stored = self._to_aggregate(bus)
            return stored
        except DBAPIError as e:
            logger.error("Error writing bus %s: %s", aggregate.id, e)
            raise StoreUnavailable(str(e)) from e

    async def atomic_add_to_list(self, bus_id: str, field: str, value: RiderEntry,
                                 expected_version: Optional[int] = None) -> bool:
        _check_field(field)
        try:
            async with self.session_maker() as session:
                async with session.begin():
                    bus = await self._locked(session, bus_id)
                    if bus is None:
                        raise NotFound(f"Bus {bus_id} not found")
                    if expected_version is not None and expected_version != bus.version:
                        raise VersionConflict(bus_id, expected_version, bus.version)
                    riders = self._read_riders(bus)
                    if any(same_entry(e, value) for e in riders):
                        return False
                    self._write_riders(bus, [*riders, value], bus.version)
            return True
        except DBAPIError as e:
            logger.error("Error adding rider %s to bus %s: %s", value.rider_id, bus_id, e)
            raise StoreUnavailable(str(e)) from e

    async def atomic_remove_from_list(self, bus_id: str, field: str, value: RiderEntry) -> bool:
        _check_field(field)
        try:
            async with self.session_maker() as session:
                async with session.begin():
                    bus = await self._locked(session, bus_id)
                    if bus is None:
                        raise NotFound(f"Bus {bus_id} not found")
                    riders = self._read_riders(bus)
                    remaining = [e for e in riders if not same_entry(e, value)]
                    if len(remaining) == len(riders):
                        return False
                    self._write_riders(bus, remaining, bus.version)
            return True
        except DBAPIError as e:
            logger.error("Error removing rider %s from bus %s: %s", value.rider_id, bus_id, e)
            raise StoreUnavailable(str(e)) from e

    async def query_where_field_non_empty(self, field: str) -> List[BusAggregate]:
        _check_field(field)
        try:
            async with self.session_maker() as session:
                result = await session.execute(select(Bus).where(Bus.rider_count > 0))
                buses = result.scalars().all()
        except DBAPIError as e:
            logger.error("Error querying buses with riders: %s", e)
            raise StoreUnavailable(str(e)) from e
        return [self._to_aggregate(bus) for bus in buses]

    @staticmethod
    async def _locked(session: AsyncSession, bus_id: str) -> Optional[Bus]:
        result = await session.execute(
            select(Bus).where(Bus.bus_id == bus_id).with_for_update()  # lock row
        )
        return result.scalar_one_or_none()

    @staticmethod
    def _read_riders(bus: Bus) -> List[RiderEntry]:
        return [RiderEntry.model_validate(raw) for raw in (bus.current_riders or [])]

    @staticmethod
    def _write_riders(bus: Bus, riders: List[RiderEntry], current_version: int) -> None:
        bus.current_riders = [e.model_dump(mode="json") for e in riders]
        bus.rider_count = len(riders)
        bus.version = current_version + 1
        bus.updated_at = datetime.now(timezone.utc)

    @classmethod
    def _to_aggregate(cls, bus: Bus) -> BusAggregate:
        """Convert Bus ORM model to the aggregate document."""
        return BusAggregate(
            id=bus.bus_id,
            max_capacity=bus.max_capacity or 0,
            current_riders=cls._read_riders(bus),
            version=bus.version or 0,
            bus_name=bus.bus_name,
            bus_label=bus.bus_label,
            last_payment_check=bus.last_payment_check,
            updated_at=bus.updated_at,
        )


class RiderDBDirectory(RiderDirectory):
    """Rider profiles from the users table."""

    def __init__(self, session_maker: async_sessionmaker[AsyncSession]):
        self.session_maker = session_maker

    async def get_profile(self, rider_id: str) -> RiderProfile:
        try:
            async with self.session_maker() as session:
                result = await session.execute(
                    select(User).where(User.user_id == rider_id).where(User.is_active == True)  # noqa: E712
                )
                user = result.scalar_one_or_none()
        except DBAPIError as e:
            logger.error("Error fetching rider %s: %s", rider_id, e)
            raise StoreUnavailable(str(e)) from e
        if user is None:
            raise NotFound(f"Rider {rider_id} not found")
        return RiderProfile(rider_id=user.user_id, name=user.name or "", email=user.email or "")

    async def upsert_profile(self, rider_id: str, name: str = "", email: str | None = None,
                             role: str = "rider") -> RiderProfile:
        try:
            async with self.session_maker() as session:
                async with session.begin():
                    result = await session.execute(select(User).where(User.user_id == rider_id))
                    user = result.scalar_one_or_none()
                    if user is None:
                        user = User(user_id=rider_id)
                        session.add(user)
                    user.name = name
                    user.email = email
                    user.role = role
                    user.is_active = True
        except DBAPIError as e:
            logger.error("Error saving rider %s: %s", rider_id, e)
            raise StoreUnavailable(str(e)) from e
        return RiderProfile(rider_id=rider_id, name=name, email=email or "")
