from pydantic import BaseModel, Field
from typing import Optional

from models.subscription import PaymentStatus, SubscriptionType

class SubscribeRequest(BaseModel):
    bus_id: str = Field(..., min_length=1)
    subscription_type: SubscriptionType
    location_id: Optional[str] = None

class ResubscribeRequest(BaseModel):
    subscription_type: SubscriptionType
    location_id: Optional[str] = None

class PaymentStatusUpdate(BaseModel):
    payment_status: PaymentStatus

class ScanRequest(BaseModel):
    qr_code: str = Field(..., min_length=1)
    # the driver's bus; omitted for admin spot checks
    bus_id: Optional[str] = None
