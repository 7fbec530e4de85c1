from fastapi import APIRouter, Depends, Request

from app.core.deps import get_services
from app.core.errors import NetworkTimeout

router = APIRouter()


@router.get("/health")
async def health(request: Request):
    rid = getattr(request.state, "request_id", None)
    return {"status": "ok", "request_id": rid}


@router.get("/health/ledger")
def ledger_health(request: Request, services=Depends(get_services)):
    rid = getattr(request.state, "request_id", None)
    try:
        block = services.ledger.block_number()
    except NetworkTimeout as exc:
        return {"status": "degraded", "request_id": rid, "error": str(exc)}
    return {
        "status": "ok",
        "request_id": rid,
        "chainId": services.ledger.chain_id,
        "blockNumber": block,
    }
