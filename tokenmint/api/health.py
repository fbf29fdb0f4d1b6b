from typing import Any, Dict

from fastapi import APIRouter, Request

router = APIRouter()


@router.get("/healthz")
async def health_check(request: Request) -> Dict[str, Any]:
    """Health check endpoint that reports queue and nonce state"""
    service = getattr(request.app.state, "service", None)
    if service is None:
        return {"status": "degraded", "queues": "disabled"}

    payment_queue = service.payment_queue
    mint_queue = service.mint_queue
    return {
        "status": "healthy" if payment_queue.is_running and mint_queue.is_running else "degraded",
        "payment_queue": {
            "running": payment_queue.is_running,
            "processing": payment_queue.is_processing,
            "nonce": payment_queue.allocator.get_state(),
        },
        "mint_queue": {
            "running": mint_queue.is_running,
            "processing": mint_queue.is_processing,
            "nonce": mint_queue.allocator.get_state(),
        },
    }
