"""
Subscription state machine for one rider entry within one bus aggregate.

States:
- NONE:     no entry for the rider
- PENDING:  active + pending
- UNPAID:   active + unpaid (operator-set variant of pending)
- PAID:     active + paid
- INACTIVE: was paid, then unsubscribed (kept for history)

Every function here is pure: it takes entries/aggregates and returns new
values, it never touches the store and never reads the clock.
"""
import logging
import secrets
from datetime import datetime, timedelta
from enum import Enum
from typing import List, Optional, Tuple

from core.exceptions import CapacityExceeded, InvalidState
from models.subscription import (
    MONTHLY_TERM,
    PAYMENT_TTL,
    BusAggregate,
    PaymentStatus,
    RiderEntry,
    RiderProfile,
    RiderStatus,
    SubscriptionType,
)

logger = logging.getLogger(__name__)


class SubscriptionState(str, Enum):
    NONE = "none"
    PENDING = "pending"
    UNPAID = "unpaid"
    PAID = "paid"
    INACTIVE = "inactive"


class RemovalAction(str, Enum):
    DELETE = "delete"
    DEACTIVATE = "deactivate"


def classify(entry: Optional[RiderEntry]) -> SubscriptionState:
    if entry is None:
        return SubscriptionState.NONE
    if entry.status == RiderStatus.INACTIVE:
        return SubscriptionState.INACTIVE
    if entry.payment_status == PaymentStatus.PAID:
        return SubscriptionState.PAID
    if entry.payment_status == PaymentStatus.UNPAID:
        return SubscriptionState.UNPAID
    return SubscriptionState.PENDING


def ttl_for(subscription_type) -> timedelta:
    """Payment lifetime for a subscription type; unknown types are an InvalidState."""
    try:
        return PAYMENT_TTL[SubscriptionType(subscription_type)]
    except (ValueError, KeyError):
        raise InvalidState(f"Invalid subscription type: {subscription_type!r}")


def generate_subscription_id(now: datetime) -> str:
    """sub_<epoch-ms>_<random>; fresh on every creation, never reused."""
    return f"sub_{int(now.timestamp() * 1000)}_{secrets.token_hex(5)}"


def check_capacity(bus: BusAggregate) -> None:
    """Guard for NONE -> PENDING."""
    active = bus.count_active()
    if active >= bus.max_capacity:
        raise CapacityExceeded(
            f"Bus {bus.id} is at full capacity ({active}/{bus.max_capacity})"
        )


def new_entry(
    profile: RiderProfile,
    bus_id: str,
    subscription_type: SubscriptionType,
    location_id: Optional[str],
    now: datetime,
    qr_code_factory,
) -> RiderEntry:
    """NONE -> PENDING: build a fresh entry with new subscription id and code."""
    subscription_type = SubscriptionType(subscription_type)
    subscription_id = generate_subscription_id(now)
    end_date = now + MONTHLY_TERM if subscription_type == SubscriptionType.MONTHLY else None
    return RiderEntry(
        rider_id=profile.rider_id,
        name=profile.name,
        email=profile.email,
        subscription_id=subscription_id,
        subscription_type=subscription_type,
        status=RiderStatus.ACTIVE,
        payment_status=PaymentStatus.PENDING,
        assigned_at=now,
        start_date=now,
        end_date=end_date,
        updated_at=now,
        qr_code=qr_code_factory(profile.rider_id, bus_id, subscription_id, now),
        location_id=location_id,
    )


def apply_payment_status(entry: RiderEntry, new_status: PaymentStatus, now: datetime) -> RiderEntry:
    """
    PENDING/UNPAID -> PAID sets paid_at/expires_at, any other target clears them.

    Paying an already-paid entry restarts its payment window.
    """
    new_status = PaymentStatus(new_status)
    if new_status == PaymentStatus.PAID:
        ttl = ttl_for(entry.subscription_type)
        return entry.model_copy(update={
            "payment_status": PaymentStatus.PAID,
            "paid_at": now,
            "expires_at": now + ttl,
            "updated_at": now,
        })
    return entry.model_copy(update={
        "payment_status": new_status,
        "paid_at": None,
        "expires_at": None,
        "updated_at": now,
    })


def is_payment_expired(entry: RiderEntry, now: datetime) -> bool:
    """
    True when an active paid entry is due for PAID -> PENDING.

    Boundary is inclusive: now - paid_at >= ttl.
    """
    if classify(entry) != SubscriptionState.PAID:
        return False
    if entry.paid_at is None:
        logger.warning("Paid entry %s for rider %s has no paid_at; cannot check expiration",
                       entry.subscription_id, entry.rider_id)
        return False
    try:
        ttl = ttl_for(entry.subscription_type)
    except InvalidState:
        return False
    return now - entry.paid_at >= ttl


def expire_payment(entry: RiderEntry, now: datetime) -> RiderEntry:
    """PAID -> PENDING."""
    return entry.model_copy(update={
        "payment_status": PaymentStatus.PENDING,
        "paid_at": None,
        "expires_at": None,
        "updated_at": now,
    })


def expire_entries(riders: List[RiderEntry], now: datetime) -> Tuple[List[RiderEntry], int]:
    """Apply the expiration rule to every entry; returns (new list, expired count)."""
    updated = []
    expired = 0
    for entry in riders:
        if is_payment_expired(entry, now):
            updated.append(expire_payment(entry, now))
            expired += 1
        else:
            updated.append(entry)
    return updated, expired


def removal_action(entry: RiderEntry) -> RemovalAction:
    """
    Decide what rider-initiated Unsubscribe does to an active entry.

    PAID -> INACTIVE (kept for history); PENDING/UNPAID -> NONE (deleted).
    """
    state = classify(entry)
    if state == SubscriptionState.PAID:
        return RemovalAction.DEACTIVATE
    if state in (SubscriptionState.PENDING, SubscriptionState.UNPAID):
        return RemovalAction.DELETE
    raise InvalidState(f"Subscription {entry.subscription_id} is already {state.value}")


def deactivate(entry: RiderEntry, now: datetime) -> RiderEntry:
    """PAID -> INACTIVE."""
    return entry.model_copy(update={
        "status": RiderStatus.INACTIVE,
        "unsubscribed_at": now,
        "updated_at": now,
    })
