import json

import pytest

from models.subscription import PaymentStatus, SubscriptionType
from services.access_gate import (
    ScanOutcome,
    can_access_code,
    generate_qr_code,
    parse_qr_code,
    validate_boarding_code,
)


def test_generated_code_round_trips(clock):
    raw = generate_qr_code("R1", "B2", "sub_1_abc", clock())
    payload = json.loads(raw)
    assert payload["type"] == "bus_subscription"
    assert payload["timestamp"] == int(clock().timestamp() * 1000)

    code = parse_qr_code(raw)
    assert (code.rider_id, code.bus_id, code.subscription_id) == ("R1", "B2", "sub_1_abc")


def test_parse_tolerates_quoted_and_escaped_codes(clock):
    raw = generate_qr_code("R1", "B2", "sub_1_abc", clock())
    assert parse_qr_code(json.dumps(raw)).rider_id == "R1"
    assert parse_qr_code(f"  {raw}\n").bus_id == "B2"


@pytest.mark.parametrize("rider_id", ['R"1', "R\\1", 'R\\"1'])
def test_codes_for_ids_with_quotes_or_backslashes_round_trip(clock, rider_id):
    raw = generate_qr_code(rider_id, "B2", "sub_1_abc", clock())
    assert parse_qr_code(raw).rider_id == rider_id
    assert parse_qr_code(json.dumps(raw)).rider_id == rider_id


def test_parse_accepts_codes_without_subscription_id():
    raw = json.dumps({"userId": "R1", "busId": "B2", "timestamp": 1700000000000, "type": "bus_subscription"})
    code = parse_qr_code(raw)
    assert code.subscription_id is None


@pytest.mark.parametrize("raw", [
    "",
    "not json",
    "[1, 2, 3]",
    json.dumps({"busId": "B2", "timestamp": 1, "type": "bus_subscription"}),
    json.dumps({"userId": "R1", "timestamp": 1, "type": "bus_subscription"}),
    json.dumps({"userId": "R1", "busId": "B2", "type": "bus_subscription"}),
    json.dumps({"userId": "R1", "busId": "B2", "timestamp": 1, "type": "event_ticket"}),
    json.dumps({"userId": "R1", "busId": "B2", "timestamp": "soon", "type": "bus_subscription"}),
])
def test_parse_rejects_foreign_codes(raw):
    assert parse_qr_code(raw) is None


def test_access_predicate():
    assert not can_access_code(None)


@pytest.mark.asyncio
async def test_paid_active_code_is_valid(service, store):
    entry = await service.subscribe("R1", "B2", SubscriptionType.MONTHLY)
    await service.update_payment_status("R1", "B2", PaymentStatus.PAID)

    result = await validate_boarding_code(store, entry.qr_code, driver_bus_id="B2")

    assert result.is_valid
    assert result.outcome == ScanOutcome.VALID
    assert result.bus_name == "City Express"
    assert can_access_code(result.entry)


@pytest.mark.asyncio
async def test_scan_outcomes(service, store):
    entry = await service.subscribe("R1", "B2", SubscriptionType.MONTHLY)

    pending = await validate_boarding_code(store, entry.qr_code)
    assert pending.outcome == ScanOutcome.PAYMENT_PENDING
    assert not pending.is_valid

    await service.update_payment_status("R1", "B2", PaymentStatus.UNPAID)
    assert (await validate_boarding_code(store, entry.qr_code)).outcome == ScanOutcome.PAYMENT_REQUIRED

    await service.update_payment_status("R1", "B2", PaymentStatus.PAID)
    assert (await validate_boarding_code(store, entry.qr_code, driver_bus_id="B1")).outcome == ScanOutcome.BUS_MISMATCH

    await service.unsubscribe("R1", "B2")
    assert (await validate_boarding_code(store, entry.qr_code)).outcome == ScanOutcome.SUBSCRIPTION_INACTIVE

    assert (await validate_boarding_code(store, "garbage")).outcome == ScanOutcome.INVALID_FORMAT


@pytest.mark.asyncio
async def test_code_from_replaced_subscription_is_rejected(service, store):
    old = await service.subscribe("R1", "B2", SubscriptionType.MONTHLY)
    await service.subscribe("R1", "B2", SubscriptionType.MONTHLY)
    await service.update_payment_status("R1", "B2", PaymentStatus.PAID)

    result = await validate_boarding_code(store, old.qr_code)

    assert result.outcome == ScanOutcome.SUBSCRIPTION_NOT_FOUND


@pytest.mark.asyncio
async def test_unknown_rider_or_bus_is_not_found(service, store, clock):
    stranger = generate_qr_code("R4", "B2", "sub_0_x", clock())
    assert (await validate_boarding_code(store, stranger)).outcome == ScanOutcome.SUBSCRIPTION_NOT_FOUND

    nowhere = generate_qr_code("R1", "GONE", "sub_0_x", clock())
    assert (await validate_boarding_code(store, nowhere)).outcome == ScanOutcome.SUBSCRIPTION_NOT_FOUND
