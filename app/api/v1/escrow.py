# app/api/v1/escrow.py
from __future__ import annotations

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from app.core.auth_deps import get_current_principal
from app.core.deps import get_services
from app.core.shipment_states import ShipmentStatus
from app.db.session import get_db
from app.models.escrow import EscrowRecord
from app.schemas.escrow import DepositRequest, DepositResponse, EscrowOut, TxResponse
from app.services.escrow_coordinator import Splits
from app.services.shipment_projection import as_utc

router = APIRouter(prefix="/escrow")


def _escrow_to_schema(e: EscrowRecord) -> EscrowOut:
    return EscrowOut(
        shipmentId=e.shipment_id,
        chainId=e.chain_id_hex,
        token=e.token,
        amount=e.amount,
        payer=e.payer,
        farmer=e.farmer,
        transporter=e.transporter,
        farmerBps=e.farmer_bps,
        transporterBps=e.transporter_bps,
        platformBps=e.platform_bps,
        status=e.status,
        depositTx=e.deposit_tx,
        settleTx=e.settle_tx,
        depositedAt=as_utc(e.deposited_at),
        settledAt=as_utc(e.settled_at),
    )


@router.get("/{shipment_id}", response_model=EscrowOut)
def get_escrow(
    shipment_id: str,
    db: Session = Depends(get_db),
    services=Depends(get_services),
    principal=Depends(get_current_principal),
):
    return _escrow_to_schema(services.escrow.get_escrow(db, shipment_id))


@router.post("/{shipment_id}/deposit", response_model=DepositResponse, status_code=202)
def deposit(
    shipment_id: str,
    req: DepositRequest,
    db: Session = Depends(get_db),
    services=Depends(get_services),
    principal=Depends(get_current_principal),
):
    settings = services.settings
    splits = Splits(
        farmer_bps=settings.default_farmer_bps if req.farmerBps is None else req.farmerBps,
        transporter_bps=settings.default_transporter_bps if req.transporterBps is None else req.transporterBps,
        platform_bps=settings.default_platform_bps if req.platformBps is None else req.platformBps,
    )
    outcome = services.escrow.deposit(
        db,
        principal=principal,
        shipment_id=shipment_id,
        amount=int(req.amount),
        splits=splits,
        token=req.token,
        farmer=req.farmer,
        transporter=req.transporter,
    )
    return DepositResponse(shipmentId=outcome.shipment_id, stage=outcome.stage, txHash=outcome.tx_hash)


@router.post("/{shipment_id}/hold", response_model=TxResponse, status_code=202)
def hold(
    shipment_id: str,
    db: Session = Depends(get_db),
    services=Depends(get_services),
    principal=Depends(get_current_principal),
):
    tx_hash = services.escrow.hold(db, principal=principal, shipment_id=shipment_id)
    return TxResponse(shipmentId=shipment_id, txHash=tx_hash)


@router.post("/{shipment_id}/release", response_model=TxResponse, status_code=202)
def release(
    shipment_id: str,
    db: Session = Depends(get_db),
    services=Depends(get_services),
    principal=Depends(get_current_principal),
):
    """Farmer's claim: Verified -> Claimed, releasing the escrow."""
    shipment = services.shipments.transition(
        db, principal=principal, shipment_id=shipment_id, target=ShipmentStatus.CLAIMED
    )
    return TxResponse(shipmentId=shipment_id, txHash=shipment.pending_tx)


@router.post("/{shipment_id}/refund", response_model=TxResponse, status_code=202)
def refund(
    shipment_id: str,
    db: Session = Depends(get_db),
    services=Depends(get_services),
    principal=Depends(get_current_principal),
):
    tx_hash = services.escrow.refund(db, principal=principal, shipment_id=shipment_id)
    return TxResponse(shipmentId=shipment_id, txHash=tx_hash)


@router.post("/{shipment_id}/cancel", response_model=TxResponse, status_code=202)
def cancel_by_payer(
    shipment_id: str,
    db: Session = Depends(get_db),
    services=Depends(get_services),
    principal=Depends(get_current_principal),
):
    """Payer cancellation inside the window; the shipment moves to Cancelled."""
    shipment = services.shipments.transition(
        db, principal=principal, shipment_id=shipment_id, target=ShipmentStatus.CANCELLED
    )
    return TxResponse(shipmentId=shipment_id, txHash=shipment.pending_tx)
