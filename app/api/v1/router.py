from fastapi import APIRouter

from app.api.v1.health import router as health_router
from app.api.v1.auth import router as auth_router
from app.api.v1.participants import router as participants_router
from app.api.v1.shipments import router as shipments_router
from app.api.v1.escrow import router as escrow_router
from app.api.v1.disputes import router as disputes_router
from app.api.v1.oracle import router as oracle_router
from app.api.v1.ledger import router as ledger_router
from app.api.v1.audit import router as audit_router


v1_router = APIRouter()

# ------------------------------------------------------------------
# SYSTEM / CORE
# ------------------------------------------------------------------
v1_router.include_router(health_router, tags=["health"])
v1_router.include_router(auth_router, tags=["auth"])
v1_router.include_router(participants_router, tags=["participants"])

# ------------------------------------------------------------------
# SHIPMENT LIFECYCLE
# ------------------------------------------------------------------
v1_router.include_router(shipments_router, tags=["shipments"])
v1_router.include_router(escrow_router, tags=["escrow"])
v1_router.include_router(disputes_router, tags=["disputes"])

# ------------------------------------------------------------------
# ATTESTOR / LEDGER OPERATIONS
# ------------------------------------------------------------------
v1_router.include_router(oracle_router, tags=["oracle"])
v1_router.include_router(ledger_router)
v1_router.include_router(audit_router, tags=["audit"])
