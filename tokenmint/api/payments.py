from typing import Any, Dict

from fastapi import APIRouter, Depends, HTTPException

from ..core.orchestrator import MintingService
from .deps import get_service

router = APIRouter(prefix="/api/payment")


@router.get("/stats")
async def payment_stats(service: MintingService = Depends(get_service)) -> Dict[str, Any]:
    return await service.get_payment_stats()


@router.get("/{payment_id}")
async def payment_status(payment_id: str, service: MintingService = Depends(get_service)) -> Dict[str, Any]:
    item = await service.get_payment_status(payment_id)
    if item is None:
        raise HTTPException(status_code=404, detail="Payment not found")
    return item.to_dict()
