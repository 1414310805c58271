# models/subscription.py
from datetime import datetime, timedelta
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field


class SubscriptionType(str, Enum):
    MONTHLY = "monthly"
    PER_RIDE = "per_ride"


class RiderStatus(str, Enum):
    ACTIVE = "active"
    INACTIVE = "inactive"


class PaymentStatus(str, Enum):
    PENDING = "pending"
    PAID = "paid"
    UNPAID = "unpaid"


# Time a payment stays valid; the only timing policy in the system
PAYMENT_TTL = {
    SubscriptionType.PER_RIDE: timedelta(hours=24),
    SubscriptionType.MONTHLY: timedelta(days=30),
}

# endDate on monthly entries, informational only
MONTHLY_TERM = timedelta(days=30)

CURRENT_RIDERS_FIELD = "current_riders"


class RiderEntry(BaseModel):
    """One rider's subscription record embedded in a bus aggregate."""

    model_config = ConfigDict(frozen=True, use_enum_values=False)

    rider_id: str
    name: str = ""
    email: str = ""
    subscription_id: str
    subscription_type: SubscriptionType
    status: RiderStatus = RiderStatus.ACTIVE
    payment_status: PaymentStatus = PaymentStatus.PENDING
    assigned_at: datetime
    start_date: datetime
    end_date: Optional[datetime] = None
    paid_at: Optional[datetime] = None
    expires_at: Optional[datetime] = None
    unsubscribed_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    qr_code: str
    location_id: Optional[str] = None


class BusAggregate(BaseModel):
    """Bus document: capacity plus the embedded rider entries."""

    id: str
    max_capacity: int = Field(..., ge=0)
    current_riders: List[RiderEntry] = Field(default_factory=list)
    version: int = 0
    bus_name: Optional[str] = None
    bus_label: Optional[str] = None
    last_payment_check: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    def entries_for(self, rider_id: str) -> List[RiderEntry]:
        return [e for e in self.current_riders if e.rider_id == rider_id]

    def active_entry_for(self, rider_id: str) -> Optional[RiderEntry]:
        for entry in self.current_riders:
            if entry.rider_id == rider_id and entry.status == RiderStatus.ACTIVE:
                return entry
        return None

    def count_active(self) -> int:
        return sum(1 for e in self.current_riders if e.status == RiderStatus.ACTIVE)


class RiderProfile(BaseModel):
    """Profile fields supplied by the identity provider at entry creation."""

    rider_id: str
    name: str = ""
    email: str = ""
