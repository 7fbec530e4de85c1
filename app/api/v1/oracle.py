# app/api/v1/oracle.py
from __future__ import annotations

import uuid
from typing import List, Optional

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from app.core.auth_deps import get_current_principal, require_operator
from app.core.deps import get_services
from app.core.shipment_states import LedgerState
from app.db.session import get_db
from app.models.enums import PendingUpdateStatus, WeighmentProposalStatus
from app.models.pending_state_update import PendingStateUpdate
from app.models.weighment_proposal import WeighmentProposal
from app.schemas.escrow import TxResponse
from app.schemas.oracle import (
    KycRequest,
    PendingUpdateOut,
    ProofRequest,
    ProposalApproveRequest,
    ProposalRejectRequest,
    WeighmentProposalOut,
    WeighmentProposalRequest,
    WeighmentRequest,
)
from app.services.shipment_projection import as_utc

router = APIRouter(prefix="/oracle")



def _item_to_schema(item: PendingStateUpdate) -> PendingUpdateOut:
    return PendingUpdateOut(
        id=str(item.id),
        shipmentId=item.shipment_id,
        currentState=LedgerState(item.current_state).name,
        targetState=LedgerState(item.target_state).name,
        status=item.status,
        attemptCount=item.attempt_count,
        lastError=item.last_error,
        nextAttemptAt=as_utc(item.next_attempt_at),
        processingStartedAt=as_utc(item.processing_started_at),
        txHash=item.tx_hash,
    )


def _proposal_to_schema(p: WeighmentProposal) -> WeighmentProposalOut:
    return WeighmentProposalOut(
        id=str(p.id),
        shipmentId=p.shipment_id,
        proposedWeightKg=p.proposed_weight_kg,
        proposerId=p.proposer_id,
        proposerWallet=p.proposer_wallet,
        status=p.status,
        confirmed=p.confirmed,
        proposeTx=p.propose_tx,
        reviewedBy=p.reviewed_by,
        reviewNote=p.review_note,
        weighmentTx=p.weighment_tx,
        createdAt=as_utc(p.created_at),
    )


# ─────────────────────────────────────────────────────────────
# Attestations
# ─────────────────────────────────────────────────────────────

@router.post("/weighments", response_model=TxResponse, status_code=202)
def attach_weighment(
    req: WeighmentRequest,
    db: Session = Depends(get_db),
    services=Depends(get_services),
    principal=Depends(get_current_principal),
):
    record = services.oracle.attach_weighment(
        db,
        principal=principal,
        shipment_id=req.shipmentId,
        weight_kg=req.weightKg,
        weigh_hash=req.weighHash,
        timestamp=req.timestamp,
    )
    return TxResponse(shipmentId=req.shipmentId, txHash=record.tx_hash)


# carrier proposes, attestor approves or rejects
@router.post("/weighment-proposals", response_model=WeighmentProposalOut, status_code=202)
def propose_weighment(
    req: WeighmentProposalRequest,
    db: Session = Depends(get_db),
    services=Depends(get_services),
    principal=Depends(get_current_principal),
):
    proposal = services.oracle.propose_weighment(
        db, principal=principal, shipment_id=req.shipmentId, weight_kg=req.weightKg
    )
    return _proposal_to_schema(proposal)


@router.get("/weighment-proposals", response_model=List[WeighmentProposalOut])
def list_weighment_proposals(
    status: Optional[WeighmentProposalStatus] = None,
    shipmentId: Optional[str] = None,
    db: Session = Depends(get_db),
    services=Depends(get_services),
    principal=Depends(get_current_principal),
):
    return [_proposal_to_schema(p) for p in services.oracle.list_proposals(db, shipment_id=shipmentId, status=status)]


@router.post("/weighment-proposals/{proposal_id}/approve", response_model=WeighmentProposalOut, status_code=202)
def approve_weighment_proposal(
    proposal_id: uuid.UUID,
    req: ProposalApproveRequest,
    db: Session = Depends(get_db),
    services=Depends(get_services),
    principal=Depends(get_current_principal),
):
    proposal = services.oracle.approve_proposal(
        db,
        principal=principal,
        proposal_id=proposal_id,
        weigh_hash=req.weighHash,
        weight_kg=req.weightKg,
        timestamp=req.timestamp,
    )
    return _proposal_to_schema(proposal)


@router.post("/weighment-proposals/{proposal_id}/reject", response_model=WeighmentProposalOut)
def reject_weighment_proposal(
    proposal_id: uuid.UUID,
    req: ProposalRejectRequest,
    db: Session = Depends(get_db),
    services=Depends(get_services),
    principal=Depends(get_current_principal),
):
    proposal = services.oracle.reject_proposal(db, principal=principal, proposal_id=proposal_id, reason=req.reason)
    return _proposal_to_schema(proposal)


@router.post("/proofs", response_model=TxResponse, status_code=202)
def attach_proof(
    req: ProofRequest,
    db: Session = Depends(get_db),
    services=Depends(get_services),
    principal=Depends(get_current_principal),
):
    tx_hash = services.oracle.attach_proof(
        db,
        principal=principal,
        shipment_id=req.shipmentId,
        proof_type=req.proof_type_enum(),
        proof_hash=req.proofHash,
    )
    return TxResponse(shipmentId=req.shipmentId, txHash=tx_hash)


@router.post("/kyc", status_code=202)
def attest_kyc(
    req: KycRequest,
    db: Session = Depends(get_db),
    services=Depends(get_services),
    principal=Depends(get_current_principal),
):
    tx_hash = services.oracle.attest_kyc(
        db, principal=principal, participant_id=req.participantId, metadata_hash=req.metadataHash
    )
    return {"participantId": req.participantId, "txHash": tx_hash}


@router.get("/signer")
def signer_status(services=Depends(get_services), principal=Depends(get_current_principal)):
    return services.oracle.signer_status()


# ─────────────────────────────────────────────────────────────
# Pending state updates
# ─────────────────────────────────────────────────────────────

@router.get("/state-updates", response_model=List[PendingUpdateOut])
def list_state_updates(
    status: Optional[PendingUpdateStatus] = None,
    shipmentId: Optional[str] = None,
    db: Session = Depends(get_db),
    services=Depends(get_services),
    principal=Depends(require_operator),
):
    return [_item_to_schema(i) for i in services.queue.list(db, status=status, shipment_id=shipmentId)]


@router.post("/state-updates/process", response_model=List[PendingUpdateOut])
def process_state_updates(
    db: Session = Depends(get_db),
    services=Depends(get_services),
    principal=Depends(require_operator),
):
    return [_item_to_schema(i) for i in services.queue.process_once(db)]


@router.post("/state-updates/{item_id}/retry", response_model=PendingUpdateOut)
def retry_state_update(
    item_id: uuid.UUID,
    db: Session = Depends(get_db),
    services=Depends(get_services),
    principal=Depends(require_operator),
):
    return _item_to_schema(services.queue.retry(db, item_id, actor_participant_id=principal.participant_id))


@router.delete("/state-updates/{item_id}", status_code=204)
def dismiss_state_update(
    item_id: uuid.UUID,
    db: Session = Depends(get_db),
    services=Depends(get_services),
    principal=Depends(require_operator),
):
    services.queue.dismiss(db, item_id, actor_participant_id=principal.participant_id)
