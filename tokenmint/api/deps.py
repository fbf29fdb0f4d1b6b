from fastapi import HTTPException, Request

from ..core.orchestrator import MintingService


def get_service(request: Request) -> MintingService:
    service = getattr(request.app.state, "service", None)
    if service is None:
        raise HTTPException(status_code=503, detail="Minting service is not running")
    return service
