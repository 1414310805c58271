"""
Rider subscription service: the mutation operations on a bus aggregate.

Write styles:
- atomic list ops (add if absent / remove if present) for creating and
  deleting entries
- compare-and-swap whole-list writes (set_document with expected_version) for
  in-place changes (payment status, unsubscribe of a paid entry); on a version
  conflict the operation re-reads and re-applies, up to CAS_MAX_ATTEMPTS

Errors from core.exceptions propagate to the caller unchanged. The only
retrying done here is the CAS re-read loop; StoreUnavailable is never retried.
"""
import logging
from datetime import datetime, timezone
from typing import Callable, List, Optional, Set, Tuple

from pydantic import BaseModel

from config.settings import settings
from core.exceptions import InvalidState, NotFound, SubscriptionConflict, VersionConflict
from models.subscription import (
    CURRENT_RIDERS_FIELD,
    BusAggregate,
    PaymentStatus,
    RiderEntry,
    RiderProfile,
    RiderStatus,
    SubscriptionType,
)
from services import state_machine
from services.access_gate import can_access_code, generate_qr_code
from services.bus_store import AggregateStore, RiderDirectory, same_entry

logger = logging.getLogger(__name__)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class UnsubscribeResult(BaseModel):
    action: state_machine.RemovalAction
    entry: RiderEntry


class SubscriptionStatusCheck(BaseModel):
    is_subscribed: bool
    is_active: bool
    reason: str
    entry: Optional[RiderEntry] = None


def _replace_entry(riders: List[RiderEntry], old: RiderEntry, new: RiderEntry) -> List[RiderEntry]:
    return [new if same_entry(e, old) else e for e in riders]


def _find_entry(bus: BusAggregate, rider_id: str) -> RiderEntry:
    """Active entry for the rider, else the most recent one; NotFound if none."""
    entry = bus.active_entry_for(rider_id)
    if entry is not None:
        return entry
    entries = bus.entries_for(rider_id)
    if not entries:
        raise NotFound(f"Rider {rider_id} has no subscription on bus {bus.id}")
    return entries[-1]


def _concurrent_subscribe(rider_id: str, bus_id: str) -> SubscriptionConflict:
    return SubscriptionConflict(
        f"Another subscription for rider {rider_id} on bus {bus_id} was created concurrently"
    )


class SubscriptionService:
    def __init__(
        self,
        store: AggregateStore,
        directory: RiderDirectory,
        clock: Callable[[], datetime] = utcnow,
        cas_max_attempts: Optional[int] = None,
    ):
        self.store = store
        self.directory = directory
        self.clock = clock
        self.cas_max_attempts = cas_max_attempts or settings.CAS_MAX_ATTEMPTS

    # ------------- mutations -------------
    async def subscribe(
        self,
        rider_id: str,
        bus_id: str,
        subscription_type: SubscriptionType,
        location_id: Optional[str] = None,
    ) -> RiderEntry:
        """
        NONE -> PENDING.

        Two phases, two separate writes:
        1. remove the rider's entries seen when the call started (stale cleanup)
        2. re-read, check capacity on the post-removal count, atomically add a
           fresh entry conditioned on the version seen by the capacity check

        Any other entry for the rider showing up in either phase was created by
        a concurrent subscribe and fails this call with SubscriptionConflict.
        A crash between 1 and 2 leaves the rider with no entry on the bus.
        """
        subscription_type = self._parse_type(subscription_type)
        known_ids = {e.subscription_id for e in (await self.store.get_document(bus_id)).entries_for(rider_id)}
        profile = await self.directory.get_profile(rider_id)
        logger.info("Subscribing rider %s to bus %s (%s)", rider_id, bus_id, subscription_type.value)

        stale = await self._remove_all_for_rider(bus_id, rider_id, known_ids=known_ids)
        if stale:
            logger.info("Removed %d stale entries for rider %s on bus %s", len(stale), rider_id, bus_id)

        return await self._insert_pending(profile, bus_id, subscription_type, location_id)

    async def resubscribe(
        self,
        rider_id: str,
        bus_id: str,
        subscription_type: SubscriptionType,
        location_id: Optional[str] = None,
    ) -> RiderEntry:
        """Cleanup of the previous entry followed by subscribe; keeps the old stop if none is given."""
        if location_id is None:
            try:
                location_id = (await self.get_rider_entry(rider_id, bus_id)).location_id
            except NotFound:
                pass
        logger.info("Resubscribing rider %s to bus %s", rider_id, bus_id)
        return await self.subscribe(rider_id, bus_id, subscription_type, location_id)

    async def update_payment_status(self, rider_id: str, bus_id: str, new_status: PaymentStatus) -> RiderEntry:
        """Operator sets payment status; paid starts the TTL window, anything else clears it."""
        try:
            new_status = PaymentStatus(new_status)
        except ValueError:
            raise InvalidState(f"Unknown payment status: {new_status!r}")

        def mutate(bus: BusAggregate, now: datetime) -> Tuple[List[RiderEntry], RiderEntry]:
            entry = _find_entry(bus, rider_id)
            updated = state_machine.apply_payment_status(entry, new_status, now)
            return _replace_entry(bus.current_riders, entry, updated), updated

        updated = await self._update_entries(bus_id, mutate)
        if updated.payment_status == PaymentStatus.PAID:
            logger.info("Payment set to paid for rider %s on bus %s: %s expires at %s",
                        rider_id, bus_id, updated.subscription_type.value, updated.expires_at.isoformat())
        else:
            logger.info("Payment status updated to %s for rider %s on bus %s",
                        updated.payment_status.value, rider_id, bus_id)
        return updated

    async def unsubscribe(self, rider_id: str, bus_id: str) -> UnsubscribeResult:
        """
        Rider-initiated unsubscribe of the active entry.

        pending/unpaid -> entry deleted (atomic remove)
        paid           -> entry kept as inactive with unsubscribed_at (CAS write)
        """
        for attempt in range(self.cas_max_attempts):
            bus = await self.store.get_document(bus_id)
            entry = bus.active_entry_for(rider_id)
            if entry is None:
                raise NotFound(f"Active subscription not found for rider {rider_id} on bus {bus_id}")

            action = state_machine.removal_action(entry)
            if action == state_machine.RemovalAction.DELETE:
                if await self.store.atomic_remove_from_list(bus_id, CURRENT_RIDERS_FIELD, entry):
                    logger.info("Rider %s unsubscribed from bus %s; unpaid entry removed", rider_id, bus_id)
                    return UnsubscribeResult(action=action, entry=entry)
                logger.info("Entry for rider %s on bus %s changed before removal, retrying", rider_id, bus_id)
                continue

            updated = state_machine.deactivate(entry, self.clock())
            try:
                await self.store.set_document(
                    bus.model_copy(update={"current_riders": _replace_entry(bus.current_riders, entry, updated)}),
                    expected_version=bus.version,
                )
            except VersionConflict as e:
                logger.info("Unsubscribe CAS conflict (attempt %d): %s", attempt + 1, e)
                continue
            logger.info("Rider %s unsubscribed from bus %s; paid entry kept as inactive", rider_id, bus_id)
            return UnsubscribeResult(action=action, entry=updated)

        raise SubscriptionConflict(f"Could not unsubscribe rider {rider_id} from bus {bus_id}")

    async def cancel_pending_subscription(self, rider_id: str, bus_id: str) -> List[RiderEntry]:
        """
        "Undo my subscription attempt": removes the rider's entries on the bus
        whatever their payment status. Unlike unsubscribe, nothing is kept.
        """
        removed = await self._remove_all_for_rider(bus_id, rider_id)
        if not removed:
            raise NotFound(f"No subscription to cancel for rider {rider_id} on bus {bus_id}")
        logger.info("Rider %s cancelled subscription on bus %s (%d entries removed)", rider_id, bus_id, len(removed))
        return removed

    async def admin_remove_user_from_bus(self, rider_id: str, bus_id: str, admin_id: str) -> List[RiderEntry]:
        """Operator-privileged unconditional removal; the caller must already be authorized."""
        logger.info("Admin %s removing rider %s from bus %s", admin_id, rider_id, bus_id)
        removed = await self._remove_all_for_rider(bus_id, rider_id)
        if not removed:
            raise NotFound(f"Rider {rider_id} has no subscription on bus {bus_id}")
        logger.warning(
            "audit: admin_remove admin_id=%s rider_id=%s bus_id=%s removed=%d subscription_ids=%s",
            admin_id, rider_id, bus_id, len(removed), ",".join(e.subscription_id for e in removed),
        )
        return removed

    # ------------- queries -------------
    async def get_rider_entry(self, rider_id: str, bus_id: str) -> RiderEntry:
        return _find_entry(await self.store.get_document(bus_id), rider_id)

    async def list_rider_subscriptions(self, rider_id: str, active_only: bool = False) -> List[Tuple[str, RiderEntry]]:
        """
        Every (bus_id, entry) for the rider across all buses.

        active_only keeps the entries that grant a boarding code (active and paid).
        """
        buses = await self.store.query_where_field_non_empty(CURRENT_RIDERS_FIELD)
        found: List[Tuple[str, RiderEntry]] = []
        for bus in buses:
            for entry in bus.entries_for(rider_id):
                if active_only and not can_access_code(entry):
                    continue
                found.append((bus.id, entry))
        return found

    async def list_bus_riders(self, bus_id: str, status: Optional[RiderStatus] = None) -> List[RiderEntry]:
        bus = await self.store.get_document(bus_id)
        if status is None:
            return list(bus.current_riders)
        return [e for e in bus.current_riders if e.status == status]

    async def get_subscription_code(self, rider_id: str, bus_id: str) -> Optional[str]:
        """The boarding code, or None when the access gate denies it."""
        bus = await self.store.get_document(bus_id)
        entry = bus.active_entry_for(rider_id)
        if not can_access_code(entry):
            return None
        return entry.qr_code

    async def validate_subscription_status(self, rider_id: str, bus_id: str) -> SubscriptionStatusCheck:
        bus = await self.store.get_document(bus_id)
        entry = bus.active_entry_for(rider_id)
        if entry is None:
            return SubscriptionStatusCheck(is_subscribed=False, is_active=False,
                                           reason="No active subscription found")
        is_active = can_access_code(entry)
        return SubscriptionStatusCheck(
            is_subscribed=True,
            is_active=is_active,
            reason="Active subscription" if is_active else "Subscription expired or payment pending",
            entry=entry,
        )

    # ------------- helpers -------------
    @staticmethod
    def _parse_type(subscription_type) -> SubscriptionType:
        try:
            return SubscriptionType(subscription_type)
        except ValueError:
            raise InvalidState(f"Invalid subscription type: {subscription_type!r}")

    async def _insert_pending(
        self,
        profile: RiderProfile,
        bus_id: str,
        subscription_type: SubscriptionType,
        location_id: Optional[str],
    ) -> RiderEntry:
        for attempt in range(self.cas_max_attempts):
            bus = await self.store.get_document(bus_id)
            if bus.entries_for(profile.rider_id):
                raise _concurrent_subscribe(profile.rider_id, bus_id)
            state_machine.check_capacity(bus)

            entry = state_machine.new_entry(profile, bus_id, subscription_type, location_id,
                                            self.clock(), generate_qr_code)
            try:
                await self.store.atomic_add_to_list(bus_id, CURRENT_RIDERS_FIELD, entry,
                                                    expected_version=bus.version)
            except VersionConflict as e:
                logger.info("Subscribe CAS conflict (attempt %d): %s", attempt + 1, e)
                continue
            logger.info("Created subscription %s for rider %s on bus %s",
                        entry.subscription_id, profile.rider_id, bus_id)
            return entry

        raise SubscriptionConflict(f"Bus {bus_id} is too busy, please retry")

    async def _remove_all_for_rider(self, bus_id: str, rider_id: str,
                                    known_ids: Optional[Set[str]] = None) -> List[RiderEntry]:
        """
        Atomically remove every entry for the rider; re-reads if an entry changed under us.

        With known_ids, only those subscriptions may be removed; finding any
        other entry for the rider raises SubscriptionConflict.
        """
        removed: List[RiderEntry] = []
        for _ in range(self.cas_max_attempts):
            bus = await self.store.get_document(bus_id)
            entries = bus.entries_for(rider_id)
            if known_ids is not None and any(e.subscription_id not in known_ids for e in entries):
                raise _concurrent_subscribe(rider_id, bus_id)
            if not entries:
                return removed
            missed = False
            for entry in entries:
                if await self.store.atomic_remove_from_list(bus_id, CURRENT_RIDERS_FIELD, entry):
                    removed.append(entry)
                else:
                    missed = True
            if not missed:
                return removed
        raise SubscriptionConflict(f"Could not remove entries for rider {rider_id} on bus {bus_id}")

    async def _update_entries(self, bus_id: str, mutate) -> RiderEntry:
        """
        Compare-and-swap read-modify-write of current_riders.

        mutate(bus, now) returns (new riders list, result entry) and may raise
        engine errors, which propagate unchanged.
        """
        for attempt in range(self.cas_max_attempts):
            bus = await self.store.get_document(bus_id)
            riders, result = mutate(bus, self.clock())
            try:
                await self.store.set_document(
                    bus.model_copy(update={"current_riders": riders}),
                    expected_version=bus.version,
                )
            except VersionConflict as e:
                logger.info("CAS conflict on bus %s (attempt %d): %s", bus_id, attempt + 1, e)
                continue
            return result
        raise SubscriptionConflict(f"Bus {bus_id} was modified concurrently, please retry")
