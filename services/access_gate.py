"""
Boarding-code access gate.

- can_access_code(entry): pure predicate, the only place that decides whether a
  boarding code may be shown (rider) or accepted (driver)
- generate_qr_code / parse_qr_code: the opaque code string bound to
  (rider_id, bus_id, subscription_id)
- validate_boarding_code: driver-side scan; always re-fetches the entry from
  the store instead of trusting the code's contents
"""
import json
import logging
from datetime import datetime
from enum import Enum
from typing import Optional

from pydantic import BaseModel

from core.exceptions import NotFound
from models.subscription import PaymentStatus, RiderEntry, RiderStatus

logger = logging.getLogger(__name__)

QR_CODE_TYPE = "bus_subscription"


def can_access_code(entry: Optional[RiderEntry]) -> bool:
    if entry is None:
        return False
    return entry.status == RiderStatus.ACTIVE and entry.payment_status == PaymentStatus.PAID


class BoardingCode(BaseModel):
    rider_id: str
    bus_id: str
    subscription_id: Optional[str] = None
    timestamp: int


def generate_qr_code(rider_id: str, bus_id: str, subscription_id: str, issued_at: datetime) -> str:
    """Serialize the code payload; key names are what deployed scanners read."""
    return json.dumps({
        "userId": rider_id,
        "busId": bus_id,
        "subscriptionId": subscription_id,
        "timestamp": int(issued_at.timestamp() * 1000),
        "type": QR_CODE_TYPE,
    }, separators=(",", ":"))


def parse_qr_code(raw: str) -> Optional[BoardingCode]:
    """
    Parse a scanned code string.

    Cameras and some clients hand us the JSON wrapped in quotes and/or with
    escaped quotes, both are tolerated. Returns None for anything that is not
    a bus subscription code. subscriptionId is optional (older codes).
    """
    if not raw:
        return None
    cleaned = raw.strip()
    try:
        payload = json.loads(cleaned)
    except json.JSONDecodeError:
        payload = None
    if not isinstance(payload, dict):
        if len(cleaned) >= 2 and cleaned.startswith('"') and cleaned.endswith('"'):
            cleaned = cleaned[1:-1]
        cleaned = cleaned.replace('\\"', '"').replace("\\\\", "\\")
        try:
            payload = json.loads(cleaned)
        except json.JSONDecodeError:
            logger.info("Rejected boarding code: not JSON")
            return None
    if not isinstance(payload, dict):
        return None
    if not payload.get("userId") or not payload.get("busId") or not payload.get("timestamp"):
        logger.info("Rejected boarding code: missing userId/busId/timestamp")
        return None
    if payload.get("type") != QR_CODE_TYPE:
        logger.info("Rejected boarding code: type=%s", payload.get("type"))
        return None
    try:
        return BoardingCode(
            rider_id=str(payload["userId"]),
            bus_id=str(payload["busId"]),
            subscription_id=payload.get("subscriptionId") or None,
            timestamp=int(payload["timestamp"]),
        )
    except (TypeError, ValueError):
        return None


class ScanOutcome(str, Enum):
    VALID = "valid"
    INVALID_FORMAT = "invalid_format"
    BUS_MISMATCH = "bus_mismatch"
    SUBSCRIPTION_NOT_FOUND = "subscription_not_found"
    SUBSCRIPTION_INACTIVE = "subscription_inactive"
    PAYMENT_PENDING = "payment_pending"
    PAYMENT_REQUIRED = "payment_required"


SCAN_MESSAGES = {
    ScanOutcome.VALID: "Valid ticket, rider is authorized to board.",
    ScanOutcome.INVALID_FORMAT: "Invalid QR code format. Please use a valid bus subscription QR code.",
    ScanOutcome.BUS_MISMATCH: "This QR code is for a different bus route.",
    ScanOutcome.SUBSCRIPTION_NOT_FOUND: "This rider is not currently subscribed to this bus route.",
    ScanOutcome.SUBSCRIPTION_INACTIVE: "This subscription is no longer active.",
    ScanOutcome.PAYMENT_PENDING: "Payment is pending review. Please wait for admin confirmation before boarding.",
    ScanOutcome.PAYMENT_REQUIRED: "Payment required. Please complete payment to access the bus.",
}


class ScanResult(BaseModel):
    is_valid: bool
    outcome: ScanOutcome
    message: str
    rider_id: Optional[str] = None
    bus_id: Optional[str] = None
    entry: Optional[RiderEntry] = None
    bus_name: Optional[str] = None

    @classmethod
    def of(cls, outcome: ScanOutcome, **kwargs) -> "ScanResult":
        return cls(
            is_valid=outcome == ScanOutcome.VALID,
            outcome=outcome,
            message=SCAN_MESSAGES[outcome],
            **kwargs,
        )


async def validate_boarding_code(store, raw: str, driver_bus_id: Optional[str] = None) -> ScanResult:
    """
    Driver-side acceptance decision for a scanned code.

    Store errors other than NotFound propagate to the caller.
    """
    code = parse_qr_code(raw)
    if code is None:
        return ScanResult.of(ScanOutcome.INVALID_FORMAT)

    if driver_bus_id and code.bus_id != driver_bus_id:
        logger.info("Bus mismatch on scan: driver bus=%s code bus=%s", driver_bus_id, code.bus_id)
        return ScanResult.of(ScanOutcome.BUS_MISMATCH, rider_id=code.rider_id, bus_id=code.bus_id)

    try:
        bus = await store.get_document(code.bus_id)
    except NotFound:
        return ScanResult.of(ScanOutcome.SUBSCRIPTION_NOT_FOUND, rider_id=code.rider_id, bus_id=code.bus_id)

    entries = bus.entries_for(code.rider_id)
    entry = bus.active_entry_for(code.rider_id) or (entries[-1] if entries else None)
    context = {"rider_id": code.rider_id, "bus_id": bus.id, "bus_name": bus.bus_name, "entry": entry}

    if entry is None:
        return ScanResult.of(ScanOutcome.SUBSCRIPTION_NOT_FOUND, **context)
    if code.subscription_id and code.subscription_id != entry.subscription_id:
        # code from a replaced subscription
        return ScanResult.of(ScanOutcome.SUBSCRIPTION_NOT_FOUND, **context)
    if entry.status != RiderStatus.ACTIVE:
        return ScanResult.of(ScanOutcome.SUBSCRIPTION_INACTIVE, **context)
    if can_access_code(entry):
        return ScanResult.of(ScanOutcome.VALID, **context)
    if entry.payment_status == PaymentStatus.UNPAID:
        return ScanResult.of(ScanOutcome.PAYMENT_REQUIRED, **context)
    return ScanResult.of(ScanOutcome.PAYMENT_PENDING, **context)
