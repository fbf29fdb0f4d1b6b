from typing import Any, Dict

from fastapi import APIRouter, Depends, HTTPException, Query

from ..core.orchestrator import MintingService
from .deps import get_service

router = APIRouter(prefix="/api/queue")


@router.get("/stats")
async def queue_stats(service: MintingService = Depends(get_service)) -> Dict[str, Any]:
    return await service.get_mint_stats()


@router.get("/batches")
async def recent_batches(
    limit: int = Query(10, ge=1, le=100),
    service: MintingService = Depends(get_service),
) -> Dict[str, Any]:
    batches = await service.get_recent_batches(limit)
    return {"batches": [batch.to_dict() for batch in batches]}


@router.get("/payer/{address}")
async def payer_status(
    address: str,
    limit: int = Query(10, ge=1, le=100),
    service: MintingService = Depends(get_service),
) -> Dict[str, Any]:
    items = await service.get_payer_status(address, limit)
    return {"payer": address, "items": [item.to_dict() for item in items]}


@router.get("/{queue_id}")
async def mint_status(queue_id: str, service: MintingService = Depends(get_service)) -> Dict[str, Any]:
    status = await service.get_mint_status(queue_id)
    if status is None:
        raise HTTPException(status_code=404, detail="Queue item not found")
    return status.to_dict()
