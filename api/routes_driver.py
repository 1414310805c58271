# api/routes_driver.py
import logging

from fastapi import APIRouter, Depends

from core.auth import require_driver
from core.response import ok
from core.singleton import get_bus_store
from models.schemas import ScanRequest
from services.access_gate import validate_boarding_code

logger = logging.getLogger(__name__)

router = APIRouter()


@router.post("/scan")
async def scan(
    payload: ScanRequest,
    user: dict = Depends(require_driver),
    store=Depends(get_bus_store),
):
    """
    Driver scans a rider's boarding code.

    Request JSON (ScanRequest):
    { "qr_code": "{\"userId\": ...}", "bus_id": "B1" }

    Always 200; the decision is in data.is_valid / data.outcome.
    """
    result = await validate_boarding_code(store, payload.qr_code, driver_bus_id=payload.bus_id)
    logger.info("Scan by %s on bus %s: %s", user["user_id"], payload.bus_id, result.outcome.value)
    return ok(result)
