# app/api/v1/disputes.py
from __future__ import annotations

from typing import List, Optional

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from app.core.auth_deps import get_current_principal
from app.core.deps import get_services
from app.db.session import get_db
from app.models.dispute import DisputeRecord
from app.models.enums import DisputeStatus
from app.schemas.disputes import DisputeOut, DisputeRaiseRequest, EvidenceOut, EvidenceRequest, ResolveRequest
from app.services.shipment_projection import as_utc

router = APIRouter(prefix="/disputes")


def _dispute_to_schema(d: DisputeRecord) -> DisputeOut:
    return DisputeOut(
        disputeId=d.id,
        shipmentId=d.shipment_id,
        raisedBy=d.raised_by,
        status=d.status,
        priorStatus=d.prior_status,
        resolution=d.resolution,
        resolutionNote=d.resolution_note,
        resolvedBy=d.resolved_by,
        evidence=[
            EvidenceOut(
                submitterId=e.submitter_id,
                evidenceHash=e.evidence_hash,
                timestamp=as_utc(e.timestamp),
                txHash=e.tx_hash,
            )
            for e in d.evidence
        ],
    )


@router.post("", response_model=DisputeOut, status_code=201)
def raise_dispute(
    req: DisputeRaiseRequest,
    db: Session = Depends(get_db),
    services=Depends(get_services),
    principal=Depends(get_current_principal),
):
    dispute = services.disputes.raise_dispute(
        db, principal=principal, shipment_id=req.shipmentId, evidence_hash=req.evidenceHash
    )
    return _dispute_to_schema(dispute)


@router.get("", response_model=List[DisputeOut])
def list_disputes(
    shipmentId: Optional[str] = None,
    status: Optional[DisputeStatus] = None,
    db: Session = Depends(get_db),
    services=Depends(get_services),
    principal=Depends(get_current_principal),
):
    return [
        _dispute_to_schema(d)
        for d in services.disputes.list_disputes(db, shipment_id=shipmentId, status=status)
    ]


@router.get("/{dispute_id}", response_model=DisputeOut)
def get_dispute(
    dispute_id: int,
    db: Session = Depends(get_db),
    services=Depends(get_services),
    principal=Depends(get_current_principal),
):
    return _dispute_to_schema(services.disputes.get_dispute(db, dispute_id))


@router.post("/{dispute_id}/evidence", response_model=DisputeOut, status_code=201)
def add_evidence(
    dispute_id: int,
    req: EvidenceRequest,
    db: Session = Depends(get_db),
    services=Depends(get_services),
    principal=Depends(get_current_principal),
):
    services.disputes.add_evidence(db, principal=principal, dispute_id=dispute_id, evidence_hash=req.evidenceHash)
    return _dispute_to_schema(services.disputes.get_dispute(db, dispute_id))


@router.post("/{dispute_id}/resolve", response_model=DisputeOut)
def resolve_dispute(
    dispute_id: int,
    req: ResolveRequest,
    db: Session = Depends(get_db),
    services=Depends(get_services),
    principal=Depends(get_current_principal),
):
    dispute = services.disputes.resolve_dispute(
        db, principal=principal, dispute_id=dispute_id, resolution=req.resolution_enum(), note=req.note
    )
    return _dispute_to_schema(dispute)
