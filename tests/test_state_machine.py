from datetime import datetime, timedelta, timezone

import pytest

from core.exceptions import CapacityExceeded, InvalidState
from models.subscription import (
    BusAggregate,
    PaymentStatus,
    RiderProfile,
    RiderStatus,
    SubscriptionType,
)
from services import state_machine
from services.access_gate import generate_qr_code

T0 = datetime(2024, 3, 1, 9, 0, tzinfo=timezone.utc)


def make_entry(rider_id="R1", subscription_type=SubscriptionType.PER_RIDE, now=T0):
    profile = RiderProfile(rider_id=rider_id, name="Rider", email="r@example.com")
    return state_machine.new_entry(profile, "B1", subscription_type, "S1", now, generate_qr_code)


def test_new_entry_starts_active_pending():
    entry = make_entry(subscription_type=SubscriptionType.MONTHLY)
    assert entry.status == RiderStatus.ACTIVE
    assert entry.payment_status == PaymentStatus.PENDING
    assert entry.paid_at is None and entry.expires_at is None
    assert entry.end_date == T0 + timedelta(days=30)
    assert entry.subscription_id.startswith("sub_")
    assert state_machine.classify(entry) == state_machine.SubscriptionState.PENDING


def test_per_ride_entry_has_no_end_date():
    assert make_entry().end_date is None


def test_subscription_ids_are_fresh():
    assert make_entry().subscription_id != make_entry().subscription_id


@pytest.mark.parametrize("subscription_type,ttl", [
    (SubscriptionType.PER_RIDE, timedelta(hours=24)),
    (SubscriptionType.MONTHLY, timedelta(days=30)),
])
def test_paid_sets_timestamps_with_exact_ttl(subscription_type, ttl):
    paid = state_machine.apply_payment_status(make_entry(subscription_type=subscription_type),
                                              PaymentStatus.PAID, T0)
    assert paid.payment_status == PaymentStatus.PAID
    assert paid.paid_at == T0
    assert paid.expires_at - paid.paid_at == ttl


@pytest.mark.parametrize("target", [PaymentStatus.PENDING, PaymentStatus.UNPAID])
def test_non_paid_status_clears_timestamps(target):
    paid = state_machine.apply_payment_status(make_entry(), PaymentStatus.PAID, T0)
    updated = state_machine.apply_payment_status(paid, target, T0 + timedelta(hours=1))
    assert updated.payment_status == target
    assert updated.paid_at is None and updated.expires_at is None


def test_paying_twice_restarts_window():
    first = state_machine.apply_payment_status(make_entry(), PaymentStatus.PAID, T0)
    later = T0 + timedelta(hours=5)
    second = state_machine.apply_payment_status(first, PaymentStatus.PAID, later)
    assert second.paid_at == later
    assert second.expires_at == later + timedelta(hours=24)


def test_paid_with_unknown_type_is_invalid_state():
    weird = make_entry().model_copy(update={"subscription_type": "weekly"})
    with pytest.raises(InvalidState):
        state_machine.apply_payment_status(weird, PaymentStatus.PAID, T0)


def test_expiration_boundary_is_inclusive():
    paid = state_machine.apply_payment_status(make_entry(), PaymentStatus.PAID, T0)
    assert not state_machine.is_payment_expired(paid, T0 + timedelta(hours=24) - timedelta(seconds=1))
    assert state_machine.is_payment_expired(paid, T0 + timedelta(hours=24))


def test_paid_without_paid_at_is_never_expired():
    broken = make_entry().model_copy(update={"payment_status": PaymentStatus.PAID})
    assert not state_machine.is_payment_expired(broken, T0 + timedelta(days=365))


def test_expire_entries_only_touches_due_paid_entries():
    due = state_machine.apply_payment_status(make_entry("R1"), PaymentStatus.PAID, T0)
    fresh = state_machine.apply_payment_status(make_entry("R2"), PaymentStatus.PAID, T0 + timedelta(hours=12))
    pending = make_entry("R3")
    inactive = state_machine.deactivate(due.model_copy(update={"rider_id": "R4"}), T0)

    riders, expired = state_machine.expire_entries([due, fresh, pending, inactive], T0 + timedelta(hours=25))

    assert expired == 1
    assert riders[0].payment_status == PaymentStatus.PENDING
    assert riders[0].paid_at is None and riders[0].expires_at is None
    assert riders[0].status == RiderStatus.ACTIVE
    assert riders[1:] == [fresh, pending, inactive]


def test_removal_action_by_state():
    pending = make_entry()
    paid = state_machine.apply_payment_status(pending, PaymentStatus.PAID, T0)
    unpaid = state_machine.apply_payment_status(pending, PaymentStatus.UNPAID, T0)
    assert state_machine.removal_action(pending) == state_machine.RemovalAction.DELETE
    assert state_machine.removal_action(unpaid) == state_machine.RemovalAction.DELETE
    assert state_machine.removal_action(paid) == state_machine.RemovalAction.DEACTIVATE
    with pytest.raises(InvalidState):
        state_machine.removal_action(state_machine.deactivate(paid, T0))


def test_deactivate_keeps_payment():
    paid = state_machine.apply_payment_status(make_entry(), PaymentStatus.PAID, T0)
    inactive = state_machine.deactivate(paid, T0 + timedelta(hours=1))
    assert inactive.status == RiderStatus.INACTIVE
    assert inactive.unsubscribed_at == T0 + timedelta(hours=1)
    assert inactive.payment_status == PaymentStatus.PAID
    assert state_machine.classify(inactive) == state_machine.SubscriptionState.INACTIVE


def test_capacity_counts_active_entries_only():
    paid = state_machine.apply_payment_status(make_entry("R1"), PaymentStatus.PAID, T0)
    bus = BusAggregate(id="B1", max_capacity=1, current_riders=[state_machine.deactivate(paid, T0)])
    state_machine.check_capacity(bus)

    full = BusAggregate(id="B1", max_capacity=1, current_riders=[make_entry("R2")])
    with pytest.raises(CapacityExceeded):
        state_machine.check_capacity(full)
