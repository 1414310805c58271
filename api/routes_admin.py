import logging
from typing import Optional

from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse

from core.auth import require_admin
from core.response import ok, error
from core.singleton import get_expiration_worker, get_subscription_service
from models.schemas import PaymentStatusUpdate
from models.subscription import RiderStatus
from services.subscription_service import SubscriptionService
from workers.expiration_worker import ExpirationWorker, SweepAlreadyRunning

logger = logging.getLogger(__name__)

router = APIRouter()


@router.put("/buses/{bus_id}/riders/{rider_id}/payment")
async def update_payment(
    bus_id: str,
    rider_id: str,
    payload: PaymentStatusUpdate,
    admin: dict = Depends(require_admin),
    service: SubscriptionService = Depends(get_subscription_service),
):
    """
    Admin: set a rider's payment status.

    Request JSON: { "payment_status": "paid" }
    "paid" starts the validity window (24h per_ride, 30d monthly);
    "pending" / "unpaid" clear it.
    """
    logger.info("Admin %s setting payment %s for rider %s on bus %s",
                admin["user_id"], payload.payment_status.value, rider_id, bus_id)
    entry = await service.update_payment_status(rider_id, bus_id, payload.payment_status)
    return ok(entry)


@router.delete("/buses/{bus_id}/riders/{rider_id}")
async def remove_rider(
    bus_id: str,
    rider_id: str,
    admin: dict = Depends(require_admin),
    service: SubscriptionService = Depends(get_subscription_service),
):
    removed = await service.admin_remove_user_from_bus(rider_id, bus_id, admin["user_id"])
    return ok({"removed": len(removed), "subscription_ids": [e.subscription_id for e in removed]})


@router.get("/buses/{bus_id}/riders")
async def list_riders(
    bus_id: str,
    status: Optional[RiderStatus] = None,
    admin: dict = Depends(require_admin),
    service: SubscriptionService = Depends(get_subscription_service),
):
    riders = await service.list_bus_riders(bus_id, status)
    return ok(riders)


@router.post("/sweep/run")
async def run_sweep(
    admin: dict = Depends(require_admin),
    worker: ExpirationWorker = Depends(get_expiration_worker),
):
    """Admin: run the payment expiration sweep now (same lock as the hourly run)."""
    try:
        stats = await worker.run_once(triggered_by=f"admin:{admin['user_id']}")
    except SweepAlreadyRunning:
        return JSONResponse(status_code=409, content=error(code="sweep_running", message="A sweep is already running"))
    return ok(stats)
