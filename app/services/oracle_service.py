# app/services/oracle_service.py
from __future__ import annotations

import logging
import uuid
from typing import Any, Dict, List, Optional

from sqlalchemy import select
from sqlalchemy.orm import Session

from app.chain.client import LedgerClient, same_address
from app.core.errors import NotFound, ValidationError, precondition, wrong_actor, wrong_state
from app.core.shipment_states import ShipmentStatus
from app.models.enums import (
    KYC_ROLE_BY_PARTICIPANT_ROLE,
    LedgerTxKind,
    ParticipantRole,
    ProofType,
    WeighmentProposalStatus,
)
from app.models.ledger_transaction import LedgerTransaction
from app.models.participant import Participant
from app.models.shipment import ShipmentRecord, WeighmentRecord
from app.models.weighment_proposal import WeighmentProposal
from app.policies.rbac import Principal, require_role
from app.services.attestation_service import AttestationService, SignedAttestation
from app.services.audit_service import AuditAction, AuditService
from app.services.shipment_projection import from_block_time, get_participant, get_shipment, status_of
from app.services.transaction_tracker import TransactionTracker

logger = logging.getLogger(__name__)

WEIGHABLE_STATUSES = frozenset({
    ShipmentStatus.READY_FOR_PICKUP,
    ShipmentStatus.IN_TRANSIT,
    ShipmentStatus.DELIVERED,
})

KYC_ATTESTORS = (ParticipantRole.ORACLE, ParticipantRole.GOVERNMENT, ParticipantRole.ADMIN)


class OracleService:
    """
    Attestor-signed writes that are not shipment transitions: weighments
    (direct, or approved from a carrier proposal), proofs and KYC.
    Projection records appear on submission and are only trusted
    (confirmed / kyc_verified) once the receipt is in.
    """

    def __init__(
        self,
        ledger: LedgerClient,
        attestation: AttestationService,
        tracker: TransactionTracker,
        *,
        nonce_strategy: str = "random",
        audit: AuditService | None = None,
    ):
        self.ledger = ledger
        self.attestation = attestation
        self.tracker = tracker
        self.nonce_strategy = nonce_strategy
        self.audit = audit or AuditService()

        tracker.on_confirmed(LedgerTxKind.weighment, self._on_weighment_confirmed)
        tracker.on_failed(LedgerTxKind.weighment, self._on_weighment_failed)
        tracker.on_confirmed(LedgerTxKind.weighment_proposal, self._on_proposal_confirmed)
        tracker.on_failed(LedgerTxKind.weighment_proposal, self._on_proposal_failed)
        tracker.on_confirmed(LedgerTxKind.kyc, self._on_kyc_confirmed)

    def _sign(self, build) -> SignedAttestation:
        try:
            return build()
        except ValidationError:
            raise
        except ValueError as exc:
            # out-of-range payload field
            raise precondition(str(exc)) from exc

    # ─────────────────────────────────────────────
    # WEIGHMENT
    # ─────────────────────────────────────────────

    def attach_weighment(
        self,
        db: Session,
        *,
        principal: Principal,
        shipment_id: str,
        weight_kg: int,
        weigh_hash: str,
        timestamp: Optional[int] = None,
    ) -> WeighmentRecord:
        require_role(principal, [ParticipantRole.ORACLE], "attach weighment")
        shipment = get_shipment(db, shipment_id, for_update=True)
        record = self._submit_weighment(db, principal, shipment, int(weight_kg), weigh_hash, timestamp)
        db.commit()
        return record

    def _submit_weighment(
        self,
        db: Session,
        principal: Principal,
        shipment: ShipmentRecord,
        weight_kg: int,
        weigh_hash: str,
        timestamp: Optional[int],
    ) -> WeighmentRecord:
        current = status_of(shipment)
        if current not in WEIGHABLE_STATUSES:
            raise wrong_state(f"Weighments are accepted from ReadyForPickup to Delivered (status is {current.value}).")
        if weight_kg <= 0:
            raise precondition("Weight must be a positive number of kilograms.")
        if not weigh_hash:
            raise precondition("Weighbridge document content id is required.")

        signed = self._sign(lambda: self.attestation.weighment(shipment.chain_id_hex, weight_kg, weigh_hash, timestamp))
        tx_hash = self.ledger.attach_weighment(
            sender=signed.signer,
            shipment_id=shipment.chain_id_hex,
            weigh_kg=weight_kg,
            weigh_hash=weigh_hash,
            timestamp=signed.payload.timestamp,
            nonce=signed.payload.nonce,
            signature=signed.signature,
        )
        self.tracker.record(
            db, tx_hash=tx_hash, kind=LedgerTxKind.weighment, sender=signed.signer, shipment_id=shipment.id,
            payload={"weightKg": weight_kg, "weighHash": weigh_hash, "nonce": str(signed.payload.nonce)},
        )
        record = WeighmentRecord(
            weight_kg=weight_kg,
            weigh_hash=weigh_hash,
            attestor_ref=signed.signer,
            nonce=str(signed.payload.nonce),
            recorded_at=from_block_time(signed.payload.timestamp),
            tx_hash=tx_hash,
            confirmed=False,
        )
        shipment.weighments.append(record)
        self.audit.write(
            db, entity="shipment", entity_id=shipment.id, actor_participant_id=principal.participant_id,
            action=AuditAction.WEIGHMENT_ATTACHED, tx_hash=tx_hash,
            details={"weightKg": weight_kg, "weighHash": weigh_hash},
        )
        return record

    def _weighment_for(self, db: Session, tx_hash: str) -> Optional[WeighmentRecord]:
        return db.execute(select(WeighmentRecord).where(WeighmentRecord.tx_hash == tx_hash)).scalar_one_or_none()

    def _on_weighment_confirmed(self, db: Session, tx: LedgerTransaction, receipt) -> None:
        record = self._weighment_for(db, tx.tx_hash)
        if record is not None:
            record.confirmed = True

    def _on_weighment_failed(self, db: Session, tx: LedgerTransaction, error: str) -> None:
        record = self._weighment_for(db, tx.tx_hash)
        if record is not None:
            db.delete(record)
            logger.warning("[oracle] weighment %s dropped: %s", tx.tx_hash, error)

        # an approval whose weighment reverted goes back to the attestors
        proposal = db.execute(
            select(WeighmentProposal).where(WeighmentProposal.weighment_tx == tx.tx_hash)
        ).scalar_one_or_none()
        if proposal is not None:
            proposal.status = WeighmentProposalStatus.pending.value
            proposal.weighment_tx = None
            proposal.review_note = f"weighment reverted: {error}"

    # ─────────────────────────────────────────────
    # WEIGHMENT PROPOSALS
    # ─────────────────────────────────────────────

    def propose_weighment(
        self,
        db: Session,
        *,
        principal: Principal,
        shipment_id: str,
        weight_kg: int,
    ) -> WeighmentProposal:
        """
        The assigned carrier puts its own reading on the ledger. It only
        becomes a weighment once an attestor approves it.
        """
        require_role(principal, [ParticipantRole.TRANSPORTER], "propose weighment")
        shipment = get_shipment(db, shipment_id, for_update=True)
        if not same_address(principal.wallet_address, shipment.transporter_ref):
            raise wrong_actor("Only the assigned carrier may propose a weighment.", shipment_id=shipment.id)
        current = status_of(shipment)
        if current not in WEIGHABLE_STATUSES:
            raise wrong_state(f"Weighments are accepted from ReadyForPickup to Delivered (status is {current.value}).")
        if int(weight_kg) <= 0:
            raise precondition("Weight must be a positive number of kilograms.")
        if self.list_proposals(db, shipment_id=shipment.id, status=WeighmentProposalStatus.pending):
            raise precondition(f"Shipment {shipment.id} already has a weighment proposal awaiting review.")

        tx_hash = self.ledger.propose_weighment(
            sender=principal.wallet_address, shipment_id=shipment.chain_id_hex, weight_kg=int(weight_kg)
        )
        self.tracker.record(
            db, tx_hash=tx_hash, kind=LedgerTxKind.weighment_proposal, sender=principal.wallet_address,
            shipment_id=shipment.id, payload={"weightKg": int(weight_kg)},
        )
        proposal = WeighmentProposal(
            shipment_id=shipment.id,
            proposed_weight_kg=int(weight_kg),
            proposer_id=principal.participant_id,
            proposer_wallet=principal.wallet_address,
            status=WeighmentProposalStatus.pending.value,
            propose_tx=tx_hash,
            confirmed=False,
        )
        db.add(proposal)
        db.flush()
        self.audit.write(
            db, entity="shipment", entity_id=shipment.id, actor_participant_id=principal.participant_id,
            action=AuditAction.WEIGHMENT_PROPOSED, tx_hash=tx_hash,
            details={"proposalId": str(proposal.id), "weightKg": int(weight_kg)},
        )
        db.commit()
        return proposal

    def list_proposals(
        self,
        db: Session,
        *,
        shipment_id: Optional[str] = None,
        status: Optional[WeighmentProposalStatus] = None,
    ) -> List[WeighmentProposal]:
        stmt = select(WeighmentProposal).order_by(WeighmentProposal.created_at.asc())
        if shipment_id is not None:
            stmt = stmt.where(WeighmentProposal.shipment_id == shipment_id)
        if status is not None:
            stmt = stmt.where(WeighmentProposal.status == status.value)
        return list(db.execute(stmt).scalars())

    def get_proposal(self, db: Session, proposal_id: uuid.UUID) -> WeighmentProposal:
        proposal = db.get(WeighmentProposal, proposal_id)
        if proposal is None:
            raise NotFound(f"Weighment proposal {proposal_id} not found", proposal_id=str(proposal_id))
        return proposal

    def _reviewable(self, db: Session, proposal_id: uuid.UUID) -> WeighmentProposal:
        proposal = self.get_proposal(db, proposal_id)
        if proposal.status != WeighmentProposalStatus.pending.value:
            raise precondition(f"Weighment proposal {proposal.id} is already {proposal.status}.")
        return proposal

    def approve_proposal(
        self,
        db: Session,
        *,
        principal: Principal,
        proposal_id: uuid.UUID,
        weigh_hash: str,
        weight_kg: Optional[int] = None,
        timestamp: Optional[int] = None,
    ) -> WeighmentProposal:
        """Attest the proposed reading, or a corrected one, as a weighment."""
        require_role(principal, [ParticipantRole.ORACLE], "approve weighment proposal")
        proposal = self._reviewable(db, proposal_id)
        if not proposal.confirmed:
            raise precondition(f"Weighment proposal {proposal.id} is still waiting for its ledger confirmation.")

        shipment = get_shipment(db, proposal.shipment_id, for_update=True)
        weight = int(weight_kg) if weight_kg is not None else proposal.proposed_weight_kg
        record = self._submit_weighment(db, principal, shipment, weight, weigh_hash, timestamp)

        proposal.status = WeighmentProposalStatus.approved.value
        proposal.reviewed_by = principal.participant_id
        proposal.weighment_tx = record.tx_hash
        if weight != proposal.proposed_weight_kg:
            proposal.review_note = f"weight corrected from {proposal.proposed_weight_kg} kg to {weight} kg"
        self.audit.write(
            db, entity="shipment", entity_id=shipment.id, actor_participant_id=principal.participant_id,
            action=AuditAction.WEIGHMENT_PROPOSAL_APPROVED, tx_hash=record.tx_hash,
            details={"proposalId": str(proposal.id), "weightKg": weight, "proposedKg": proposal.proposed_weight_kg},
        )
        db.commit()
        return proposal

    def reject_proposal(
        self,
        db: Session,
        *,
        principal: Principal,
        proposal_id: uuid.UUID,
        reason: Optional[str] = None,
    ) -> WeighmentProposal:
        require_role(principal, [ParticipantRole.ORACLE], "reject weighment proposal")
        proposal = self._reviewable(db, proposal_id)
        proposal.status = WeighmentProposalStatus.rejected.value
        proposal.reviewed_by = principal.participant_id
        proposal.review_note = reason
        self.audit.write(
            db, entity="shipment", entity_id=proposal.shipment_id, actor_participant_id=principal.participant_id,
            action=AuditAction.WEIGHMENT_PROPOSAL_REJECTED,
            details={"proposalId": str(proposal.id), "reason": reason},
        )
        db.commit()
        return proposal

    def _proposal_for(self, db: Session, tx_hash: str) -> Optional[WeighmentProposal]:
        return db.execute(
            select(WeighmentProposal).where(WeighmentProposal.propose_tx == tx_hash)
        ).scalar_one_or_none()

    def _on_proposal_confirmed(self, db: Session, tx: LedgerTransaction, receipt) -> None:
        proposal = self._proposal_for(db, tx.tx_hash)
        if proposal is not None:
            proposal.confirmed = True

    def _on_proposal_failed(self, db: Session, tx: LedgerTransaction, error: str) -> None:
        proposal = self._proposal_for(db, tx.tx_hash)
        if proposal is not None and proposal.status == WeighmentProposalStatus.pending.value:
            proposal.status = WeighmentProposalStatus.rejected.value
            proposal.review_note = f"ledger rejected the proposal: {error}"
            logger.warning("[oracle] weighment proposal %s rejected by the ledger: %s", proposal.id, error)

    # ─────────────────────────────────────────────
    # PROOF
    # ─────────────────────────────────────────────

    def attach_proof(
        self,
        db: Session,
        *,
        principal: Principal,
        shipment_id: str,
        proof_type: ProofType,
        proof_hash: str,
    ) -> str:
        require_role(principal, [ParticipantRole.ORACLE], "attach proof")
        shipment = get_shipment(db, shipment_id)
        if status_of(shipment) == ShipmentStatus.PENDING:
            raise wrong_state("Proofs cannot be attached to a shipment that has no buyer yet.")
        if not proof_hash:
            raise precondition("Proof content id is required.")

        signed = self._sign(lambda: self.attestation.proof(shipment.chain_id_hex, int(proof_type), proof_hash))
        tx_hash = self.ledger.attach_proof(
            sender=signed.signer,
            shipment_id=shipment.chain_id_hex,
            proof_type=int(proof_type),
            proof_hash=proof_hash,
            timestamp=signed.payload.timestamp,
            nonce=signed.payload.nonce,
            signature=signed.signature,
        )
        self.tracker.record(
            db, tx_hash=tx_hash, kind=LedgerTxKind.proof, sender=signed.signer, shipment_id=shipment.id,
            payload={"proofType": proof_type.name, "proofHash": proof_hash},
        )
        self.audit.write(
            db, entity="shipment", entity_id=shipment.id, actor_participant_id=principal.participant_id,
            action=AuditAction.PROOF_ATTACHED, tx_hash=tx_hash,
            details={"proofType": proof_type.name, "proofHash": proof_hash},
        )
        db.commit()
        return tx_hash

    # ─────────────────────────────────────────────
    # KYC
    # ─────────────────────────────────────────────

    def attest_kyc(self, db: Session, *, principal: Principal, participant_id: str, metadata_hash: str) -> str:
        require_role(principal, KYC_ATTESTORS, "attest KYC")
        participant = get_participant(db, participant_id)
        kyc_role = KYC_ROLE_BY_PARTICIPANT_ROLE.get(ParticipantRole(participant.role))
        if kyc_role is None:
            raise precondition(f"Role {participant.role} has no KYC registration role.")
        if not metadata_hash:
            raise precondition("KYC metadata content id is required.")

        signed = self._sign(lambda: self.attestation.kyc(participant.wallet_address, int(kyc_role), metadata_hash))
        tx_hash = self.ledger.kyc_attestation(
            sender=signed.signer,
            participant=participant.wallet_address,
            role=int(kyc_role),
            metadata_hash=metadata_hash,
            timestamp=signed.payload.timestamp,
            nonce=signed.payload.nonce,
            signature=signed.signature,
        )
        self.tracker.record(
            db, tx_hash=tx_hash, kind=LedgerTxKind.kyc, sender=signed.signer,
            payload={"participantId": participant.id, "role": kyc_role.name, "metadataHash": metadata_hash},
        )
        self.audit.write(
            db, entity="participant", entity_id=participant.id, actor_participant_id=principal.participant_id,
            action=AuditAction.KYC_ATTESTED, tx_hash=tx_hash,
            details={"role": kyc_role.name, "metadataHash": metadata_hash},
        )
        db.commit()
        return tx_hash

    def _on_kyc_confirmed(self, db: Session, tx: LedgerTransaction, receipt) -> None:
        payload = tx.payload_json or {}
        participant = db.get(Participant, payload.get("participantId"))
        if participant is None:
            return
        participant.kyc_verified = True
        participant.kyc_metadata_hash = payload.get("metadataHash")
        logger.info("[oracle] participant %s KYC-verified by tx %s", participant.id, tx.tx_hash)

    # ─────────────────────────────────────────────
    # STATUS
    # ─────────────────────────────────────────────

    def signer_status(self) -> Dict[str, Any]:
        return {
            "address": self.attestation.signer_address,
            "signerType": type(self.attestation.signer).__name__,
            "chainId": self.attestation.chain_id,
            "nonceStrategy": self.nonce_strategy,
            "maxSkewSeconds": self.attestation.max_skew_seconds,
        }
