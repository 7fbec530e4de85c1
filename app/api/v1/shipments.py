# app/api/v1/shipments.py
from __future__ import annotations

from typing import List, Optional

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from app.core.auth_deps import get_current_principal
from app.core.deps import get_services
from app.core.shipment_states import ShipmentStatus
from app.db.session import get_db
from app.models.shipment import ShipmentRecord, ShipmentTimelineEntry
from app.schemas.shipments import (
    NominateCarrierRequest,
    ShipmentCreate,
    ShipmentOut,
    TimelineEntryOut,
    TransitionRequest,
    WeighmentOut,
)
from app.services.shipment_projection import as_utc

router = APIRouter(prefix="/shipments")


# ─────────────────────────────────────────────────────────────
# Helpers
# ─────────────────────────────────────────────────────────────

def _entry_to_schema(e: ShipmentTimelineEntry) -> TimelineEntryOut:
    return TimelineEntryOut(
        status=ShipmentStatus(e.status),
        timestamp=as_utc(e.timestamp),
        details=e.details or {},
        txHash=e.tx_hash,
        tentative=bool(e.tentative),
    )


def _shipment_to_schema(s: ShipmentRecord) -> ShipmentOut:
    return ShipmentOut(
        shipmentId=s.id,
        chainId=s.chain_id_hex,
        status=ShipmentStatus(s.status),
        askPrice=s.ask_price,
        metadataHash=s.metadata_hash,
        farmerId=s.farmer_id,
        industryId=s.industry_id,
        transporterRef=s.transporter_ref,
        farmerNominee=s.farmer_nominee,
        industryNominee=s.industry_nominee,
        pendingTx=s.pending_tx,
        timeline=[_entry_to_schema(e) for e in s.timeline],
        weighments=[
            WeighmentOut(
                weightKg=w.weight_kg,
                weighHash=w.weigh_hash,
                attestorRef=w.attestor_ref,
                recordedAt=as_utc(w.recorded_at),
                txHash=w.tx_hash,
                confirmed=bool(w.confirmed),
            )
            for w in s.weighments
        ],
    )


# ─────────────────────────────────────────────────────────────
# Routes
# ─────────────────────────────────────────────────────────────

@router.post("", response_model=ShipmentOut, status_code=201)
def create_shipment(
    req: ShipmentCreate,
    db: Session = Depends(get_db),
    services=Depends(get_services),
    principal=Depends(get_current_principal),
):
    shipment = services.shipments.create_shipment(
        db,
        principal=principal,
        ask_price=req.askPrice,
        metadata_hash=req.metadataHash,
        shipment_id=req.shipmentId,
    )
    return _shipment_to_schema(shipment)


@router.get("", response_model=List[ShipmentOut])
def list_shipments(
    status: Optional[ShipmentStatus] = None,
    mine: bool = False,
    db: Session = Depends(get_db),
    services=Depends(get_services),
    principal=Depends(get_current_principal),
):
    rows = services.shipments.list_shipments(
        db,
        participant_id=principal.participant_id if mine else None,
        status=status,
    )
    return [_shipment_to_schema(s) for s in rows]


@router.get("/{shipment_id}", response_model=ShipmentOut)
def get_shipment(
    shipment_id: str,
    db: Session = Depends(get_db),
    services=Depends(get_services),
    principal=Depends(get_current_principal),
):
    return _shipment_to_schema(services.shipments.get(db, shipment_id))


@router.get("/{shipment_id}/timeline", response_model=List[TimelineEntryOut])
def get_timeline(
    shipment_id: str,
    db: Session = Depends(get_db),
    services=Depends(get_services),
    principal=Depends(get_current_principal),
):
    return [_entry_to_schema(e) for e in services.shipments.timeline(db, shipment_id)]


@router.post("/{shipment_id}/transition", response_model=ShipmentOut)
def transition_shipment(
    shipment_id: str,
    req: TransitionRequest,
    db: Session = Depends(get_db),
    services=Depends(get_services),
    principal=Depends(get_current_principal),
):
    shipment = services.shipments.transition(
        db,
        principal=principal,
        shipment_id=shipment_id,
        target=req.target,
        carrier_id=req.carrierId,
        evidence_hash=req.evidenceHash,
        note=req.note,
    )
    return _shipment_to_schema(shipment)


@router.post("/{shipment_id}/nominate-carrier", response_model=ShipmentOut)
def nominate_carrier(
    shipment_id: str,
    req: NominateCarrierRequest,
    db: Session = Depends(get_db),
    services=Depends(get_services),
    principal=Depends(get_current_principal),
):
    shipment = services.shipments.nominate_carrier(
        db, principal=principal, shipment_id=shipment_id, carrier_id=req.carrierId
    )
    return _shipment_to_schema(shipment)


@router.post("/{shipment_id}/resync", response_model=ShipmentOut)
def resync_shipment(
    shipment_id: str,
    db: Session = Depends(get_db),
    services=Depends(get_services),
    principal=Depends(get_current_principal),
):
    return _shipment_to_schema(services.shipments.resync(db, principal=principal, shipment_id=shipment_id))
