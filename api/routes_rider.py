# api/routes_rider.py
from fastapi import APIRouter, Depends

from core.auth import get_current_user
from core.exceptions import NotFound
from core.response import ok
from core.singleton import get_subscription_service
from models.schemas import ResubscribeRequest, SubscribeRequest
from services.subscription_service import SubscriptionService

router = APIRouter()


@router.post("/subscriptions")
async def subscribe(
    req: SubscribeRequest,
    user: dict = Depends(get_current_user),
    service: SubscriptionService = Depends(get_subscription_service),
):
    """
    Rider subscribes to a bus. The new entry starts active + pending.

    Request JSON:
    { "bus_id": "B1", "subscription_type": "monthly", "location_id": "S3" }
    """
    entry = await service.subscribe(user["user_id"], req.bus_id, req.subscription_type, req.location_id)
    return ok(entry)


@router.post("/subscriptions/{bus_id}/resubscribe")
async def resubscribe(
    bus_id: str,
    req: ResubscribeRequest,
    user: dict = Depends(get_current_user),
    service: SubscriptionService = Depends(get_subscription_service),
):
    entry = await service.resubscribe(user["user_id"], bus_id, req.subscription_type, req.location_id)
    return ok(entry)


@router.post("/subscriptions/{bus_id}/unsubscribe")
async def unsubscribe(
    bus_id: str,
    user: dict = Depends(get_current_user),
    service: SubscriptionService = Depends(get_subscription_service),
):
    """Unpaid entries are removed; paid entries are kept as inactive."""
    result = await service.unsubscribe(user["user_id"], bus_id)
    return ok(result)


@router.delete("/subscriptions/{bus_id}/pending")
async def cancel_pending(
    bus_id: str,
    user: dict = Depends(get_current_user),
    service: SubscriptionService = Depends(get_subscription_service),
):
    removed = await service.cancel_pending_subscription(user["user_id"], bus_id)
    return ok({"removed": len(removed), "subscription_ids": [e.subscription_id for e in removed]})


@router.get("/subscriptions")
async def my_subscriptions(
    active_only: bool = False,
    user: dict = Depends(get_current_user),
    service: SubscriptionService = Depends(get_subscription_service),
):
    """The caller's subscriptions on every bus; ?active_only=true keeps active, paid ones."""
    found = await service.list_rider_subscriptions(user["user_id"], active_only=active_only)
    return ok([{"bus_id": bus_id, "entry": entry.model_dump(mode="json")} for bus_id, entry in found])


@router.get("/subscriptions/{bus_id}")
async def subscription_status(
    bus_id: str,
    user: dict = Depends(get_current_user),
    service: SubscriptionService = Depends(get_subscription_service),
):
    check = await service.validate_subscription_status(user["user_id"], bus_id)
    return ok(check)


@router.get("/subscriptions/{bus_id}/code")
async def subscription_code(
    bus_id: str,
    user: dict = Depends(get_current_user),
    service: SubscriptionService = Depends(get_subscription_service),
):
    """Boarding code for an active, paid subscription; 404 otherwise."""
    code = await service.get_subscription_code(user["user_id"], bus_id)
    if code is None:
        raise NotFound(f"No boarding code available for rider {user['user_id']} on bus {bus_id}")
    return ok({"bus_id": bus_id, "qr_code": code})
