"""
Subscription engine error taxonomy.

Every error kind carries:
- status_code: HTTP status used by the exception handlers
- code: stable machine-readable error code for the response envelope
- message: the single human-readable message shown to the rider/operator

Services raise these; routers never catch them, core.exception_handlers
turns them into error envelopes.
"""
from typing import Optional


class SubscriptionError(Exception):
    """Base class for all engine errors."""

    status_code = 400
    code = "subscription_error"
    message = "Subscription request failed"

    def __init__(self, detail: Optional[str] = None):
        self.detail = detail or self.message
        super().__init__(self.detail)


class NotFound(SubscriptionError):
    """Rider, bus or rider entry is absent."""

    status_code = 404
    code = "not_found"
    message = "The requested rider, bus or subscription was not found"


class CapacityExceeded(SubscriptionError):
    status_code = 409
    code = "capacity_exceeded"
    message = "This bus route is at full capacity"


class InvalidState(SubscriptionError):
    """The entry cannot take the requested transition (e.g. unknown subscription type)."""

    status_code = 422
    code = "invalid_state"
    message = "The subscription is not in a state that allows this change"


class SubscriptionConflict(SubscriptionError):
    """A concurrent writer won the race for the same aggregate or rider."""

    status_code = 409
    code = "subscription_conflict"
    message = "The subscription was modified concurrently, please retry"


class StoreUnavailable(SubscriptionError):
    """Transport or infrastructure failure from the aggregate store."""

    status_code = 503
    code = "store_unavailable"
    message = "Subscription storage is temporarily unavailable"


class VersionConflict(SubscriptionError):
    """Raised by a store when a compare-and-swap write sees a newer document version."""

    status_code = 409
    code = "version_conflict"
    message = "The bus document changed while it was being updated"

    def __init__(self, bus_id: str, expected_version: int, actual_version: int):
        self.bus_id = bus_id
        self.expected_version = expected_version
        self.actual_version = actual_version
        super().__init__(
            f"Version conflict on bus {bus_id}: expected version {expected_version}, "
            f"but current version is {actual_version}"
        )
