from __future__ import annotations

from typing import Any, Dict, Optional

from sqlalchemy import select
from sqlalchemy.orm import Session

from app.core.hashing import canonical_dumps, json_safe, sha256_hex
from app.core.middleware import request_id_ctx
from app.models.audit_log import AuditLog


class AuditAction:
    # Shipments
    SHIPMENT_CREATED = "SHIPMENT_CREATED"
    OFFER_MADE = "OFFER_MADE"
    CARRIER_NOMINATED = "CARRIER_NOMINATED"
    SHIPMENT_TRANSITIONED = "SHIPMENT_TRANSITIONED"
    SHIPMENT_RESYNCED = "SHIPMENT_RESYNCED"
    TX_COMPENSATED = "TX_COMPENSATED"

    # Escrow
    ESCROW_APPROVAL_SUBMITTED = "ESCROW_APPROVAL_SUBMITTED"
    ESCROW_DEPOSIT_SUBMITTED = "ESCROW_DEPOSIT_SUBMITTED"
    ESCROW_HOLD_SUBMITTED = "ESCROW_HOLD_SUBMITTED"
    ESCROW_RELEASE_SUBMITTED = "ESCROW_RELEASE_SUBMITTED"
    ESCROW_REFUND_SUBMITTED = "ESCROW_REFUND_SUBMITTED"
    ESCROW_CANCEL_SUBMITTED = "ESCROW_CANCEL_SUBMITTED"

    # Disputes
    DISPUTE_RAISED = "DISPUTE_RAISED"
    DISPUTE_EVIDENCE_ADDED = "DISPUTE_EVIDENCE_ADDED"
    DISPUTE_RESOLVED = "DISPUTE_RESOLVED"

    # Attestor
    WEIGHMENT_ATTACHED = "WEIGHMENT_ATTACHED"
    WEIGHMENT_PROPOSED = "WEIGHMENT_PROPOSED"
    WEIGHMENT_PROPOSAL_APPROVED = "WEIGHMENT_PROPOSAL_APPROVED"
    WEIGHMENT_PROPOSAL_REJECTED = "WEIGHMENT_PROPOSAL_REJECTED"
    PROOF_ATTACHED = "PROOF_ATTACHED"
    KYC_ATTESTED = "KYC_ATTESTED"
    PARTICIPANT_REGISTERED = "PARTICIPANT_REGISTERED"
    STATE_UPDATE_RETRIED = "STATE_UPDATE_RETRIED"
    STATE_UPDATE_DISMISSED = "STATE_UPDATE_DISMISSED"


class AuditService:
    def write(
        self,
        db: Session,
        *,
        entity: str,
        entity_id: str,
        actor_participant_id: Optional[str],
        action: str,
        details: Dict[str, Any],
        tx_hash: Optional[str] = None,
    ) -> AuditLog:
        """
        Stage an append-only audit row. It is committed with the caller's
        unit of work so a rejected action never leaves an audit trace.
        """
        row = AuditLog(
            entity=entity,
            entity_id=entity_id,
            actor_participant_id=actor_participant_id,
            action=action,
            request_id=request_id_ctx.get(),
            tx_hash=tx_hash,
            payload_hash=sha256_hex(canonical_dumps(details)),
            details_json=json_safe(details),
        )
        db.add(row)
        return row

    def history(self, db: Session, *, entity: str, entity_id: str) -> list[AuditLog]:
        return list(
            db.execute(
                select(AuditLog)
                .where(AuditLog.entity == entity, AuditLog.entity_id == entity_id)
                .order_by(AuditLog.created_at.asc())
            ).scalars()
        )
