# app/services/dispute_resolver.py
from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import List, Optional

from sqlalchemy import select
from sqlalchemy.orm import Session

from app.chain.client import LedgerClient, LedgerEvent, same_address
from app.core.errors import LedgerRejected, NotFound, precondition, wrong_actor, wrong_state
from app.core.shipment_graph import SIDE_BRANCH_ACTORS
from app.core.shipment_states import DISPUTABLE_STATUSES, ShipmentStatus
from app.models.dispute import DisputeEvidence, DisputeRecord
from app.models.enums import DisputeStatus, LedgerTxKind, ParticipantRole, Resolution
from app.models.ledger_transaction import LedgerTransaction
from app.models.shipment import ShipmentRecord
from app.policies.rbac import Principal, require_role
from app.services.attestation_service import AttestationService
from app.services.audit_service import AuditAction, AuditService
from app.services.shipment_projection import (
    append_timeline,
    find_by_chain_id,
    find_participant_by_wallet,
    from_block_time,
    get_participant,
    get_shipment,
    status_of,
)
from app.services.transaction_tracker import TransactionTracker

logger = logging.getLogger(__name__)


def _now():
    return datetime.now(timezone.utc)


class DisputeResolver:
    """
    Dispute lifecycle: None -> Open -> Resolved | Rejected.

    A disputed shipment stays Disputed after resolution; only the escrow moves
    (RefundPayer -> Refunded, ReleaseFunds -> Released).
    """

    def __init__(
        self,
        ledger: LedgerClient,
        attestation: AttestationService,
        tracker: TransactionTracker,
        *,
        audit: AuditService | None = None,
    ):
        self.ledger = ledger
        self.attestation = attestation
        self.tracker = tracker
        self.audit = audit or AuditService()

        tracker.on_failed(LedgerTxKind.add_evidence, self._on_evidence_failed)

    def register_projections(self, projector) -> None:
        projector.register("DisputeRaised", self.on_raised_event)
        projector.register("EvidenceAdded", self.on_evidence_event)
        projector.register("DisputeResolved", self.on_resolved_event)

    # ─────────────────────────────────────────────
    # READS
    # ─────────────────────────────────────────────

    def get_dispute(self, db: Session, dispute_id: int) -> DisputeRecord:
        dispute = db.get(DisputeRecord, int(dispute_id))
        if dispute is None:
            raise NotFound(f"Dispute {dispute_id} not found", dispute_id=dispute_id)
        return dispute

    def list_disputes(self, db: Session, *, shipment_id: Optional[str] = None,
                      status: Optional[DisputeStatus] = None) -> List[DisputeRecord]:
        stmt = select(DisputeRecord).order_by(DisputeRecord.id.asc())
        if shipment_id is not None:
            stmt = stmt.where(DisputeRecord.shipment_id == shipment_id)
        if status is not None:
            stmt = stmt.where(DisputeRecord.status == status.value)
        return list(db.execute(stmt).scalars())

    def _open_dispute(self, db: Session, shipment_id: str) -> Optional[DisputeRecord]:
        return db.execute(
            select(DisputeRecord).where(
                DisputeRecord.shipment_id == shipment_id,
                DisputeRecord.status == DisputeStatus.open.value,
            )
        ).scalars().first()

    @staticmethod
    def _is_party(principal: Principal, shipment: ShipmentRecord) -> bool:
        if principal.participant_id in (shipment.farmer_id, shipment.industry_id):
            return True
        return principal.role == ParticipantRole.TRANSPORTER and same_address(
            principal.wallet_address, shipment.transporter_ref
        )

    # ─────────────────────────────────────────────
    # RAISE
    # ─────────────────────────────────────────────

    def raise_dispute(self, db: Session, *, principal: Principal, shipment_id: str, evidence_hash: str) -> DisputeRecord:
        shipment = get_shipment(db, shipment_id, for_update=True)
        current = status_of(shipment)
        if current not in DISPUTABLE_STATUSES:
            raise wrong_state(f"A dispute cannot be raised on a {current.value} shipment.")

        require_role(principal, SIDE_BRANCH_ACTORS[ShipmentStatus.DISPUTED], "raise dispute")
        if not self._is_party(principal, shipment):
            raise wrong_actor("Only a participant of the shipment may raise a dispute.", shipment_id=shipment.id)
        participant = get_participant(db, principal.participant_id)
        if not participant.kyc_verified:
            raise precondition("Disputes can only be raised by KYC-verified participants.")

        if self._open_dispute(db, shipment.id) is not None:
            raise precondition(f"Shipment {shipment.id} already has an open dispute.")
        if shipment.pending_tx:
            raise precondition("A ledger write for this shipment is still unconfirmed.", tx_hash=shipment.pending_tx)
        if not evidence_hash:
            raise precondition("Evidence content id is required.")

        tx_hash = self.ledger.raise_dispute(
            sender=principal.wallet_address, shipment_id=shipment.chain_id_hex, evidence_hash=evidence_hash
        )
        self.tracker.record(
            db, tx_hash=tx_hash, kind=LedgerTxKind.raise_dispute, sender=principal.wallet_address,
            shipment_id=shipment.id,
            payload={"raisedBy": principal.participant_id, "evidenceHash": evidence_hash},
        )
        db.commit()

        receipt = self.tracker.await_confirmation(db, tx_hash)
        raised = receipt.first("DisputeRaised")
        if raised is None:
            db.commit()
            raise LedgerRejected("raiseDispute confirmed without a DisputeRaised event", tx_hash=tx_hash)

        dispute = self.get_dispute(db, int(raised.args["disputeId"]))
        dispute.raised_by = principal.participant_id
        if not dispute.evidence:
            dispute.evidence.append(DisputeEvidence(
                position=0,
                submitter_id=principal.participant_id,
                evidence_hash=evidence_hash,
                timestamp=from_block_time(raised.block_timestamp),
                tx_hash=tx_hash,
            ))
        self.audit.write(
            db, entity="dispute", entity_id=str(dispute.id), actor_participant_id=principal.participant_id,
            action=AuditAction.DISPUTE_RAISED, tx_hash=tx_hash,
            details={"shipmentId": shipment.id, "priorStatus": dispute.prior_status, "evidenceHash": evidence_hash},
        )
        db.commit()
        logger.info("[dispute] %s raised on %s by %s", dispute.id, shipment.id, principal.participant_id)
        return dispute

    def on_raised_event(self, db: Session, ev: LedgerEvent) -> None:
        dispute_id = int(ev.args["disputeId"])
        if db.get(DisputeRecord, dispute_id) is not None:
            return
        shipment = find_by_chain_id(db, ev.args["shipmentId"], for_update=True)
        if shipment is None:
            logger.warning("[dispute] %s raised on unknown shipment %s", dispute_id, ev.args["shipmentId"])
            return

        block_time = from_block_time(ev.block_timestamp)
        raiser = find_participant_by_wallet(db, ev.args["raisedBy"])
        prior = next(
            (ShipmentStatus(e.status) for e in reversed(shipment.timeline) if e.status != ShipmentStatus.DISPUTED.value),
            status_of(shipment),
        )
        db.add(DisputeRecord(
            id=dispute_id,
            shipment_id=shipment.id,
            chain_id_hex=shipment.chain_id_hex,
            raised_by=raiser.id if raiser else ev.args["raisedBy"],
            raised_by_wallet=ev.args["raisedBy"],
            status=DisputeStatus.open.value,
            prior_status=prior.value,
            raise_tx=ev.tx_hash,
            created_at=block_time,
        ))
        if status_of(shipment) != ShipmentStatus.DISPUTED:
            append_timeline(
                db, shipment, ShipmentStatus.DISPUTED,
                details={"disputeId": dispute_id, "raisedBy": ev.args["raisedBy"]},
                timestamp=block_time, tx_hash=ev.tx_hash, event_key=ev.key,
            )
        db.flush()

    # ─────────────────────────────────────────────
    # EVIDENCE
    # ─────────────────────────────────────────────

    def add_evidence(self, db: Session, *, principal: Principal, dispute_id: int, evidence_hash: str) -> DisputeEvidence:
        dispute = self.get_dispute(db, dispute_id)
        if dispute.status != DisputeStatus.open.value:
            raise wrong_state(f"Evidence can only be added to an open dispute (status is {dispute.status}).")
        shipment = get_shipment(db, dispute.shipment_id)
        if principal.role != ParticipantRole.RESOLVER and not self._is_party(principal, shipment):
            raise wrong_actor("Only shipment participants or a resolver may add evidence.")
        if not evidence_hash:
            raise precondition("Evidence content id is required.")

        signed = self.attestation.evidence(dispute.id, evidence_hash)
        tx_hash = self.ledger.add_evidence(
            sender=principal.wallet_address,
            dispute_id=dispute.id,
            evidence_hash=evidence_hash,
            oracle_signature=signed.signature,
            oracle_signed_hash=signed.digest,
        )
        self.tracker.record(
            db, tx_hash=tx_hash, kind=LedgerTxKind.add_evidence, sender=principal.wallet_address,
            payload={"disputeId": dispute.id, "evidenceHash": evidence_hash, "submitterId": principal.participant_id},
        )
        evidence = DisputeEvidence(
            position=len(dispute.evidence),
            submitter_id=principal.participant_id,
            evidence_hash=evidence_hash,
            oracle_address=signed.signer,
            timestamp=_now(),
            tx_hash=tx_hash,
        )
        dispute.evidence.append(evidence)
        self.audit.write(
            db, entity="dispute", entity_id=str(dispute.id), actor_participant_id=principal.participant_id,
            action=AuditAction.DISPUTE_EVIDENCE_ADDED, tx_hash=tx_hash, details={"evidenceHash": evidence_hash},
        )
        db.commit()
        return evidence

    def on_evidence_event(self, db: Session, ev: LedgerEvent) -> None:
        dispute = db.get(DisputeRecord, int(ev.args["disputeId"]))
        if dispute is None:
            return
        block_time = from_block_time(ev.block_timestamp)
        for item in dispute.evidence:
            if item.tx_hash == ev.tx_hash:
                item.timestamp = block_time
                return
        submitter = find_participant_by_wallet(db, ev.args["submittedBy"])
        dispute.evidence.append(DisputeEvidence(
            position=len(dispute.evidence),
            submitter_id=submitter.id if submitter else ev.args["submittedBy"],
            evidence_hash=ev.args["evidenceHash"],
            timestamp=block_time,
            tx_hash=ev.tx_hash,
        ))

    def _on_evidence_failed(self, db: Session, tx: LedgerTransaction, error: str) -> None:
        dispute = db.get(DisputeRecord, int((tx.payload_json or {}).get("disputeId", -1)))
        if dispute is None:
            return
        for item in list(dispute.evidence):
            if item.tx_hash == tx.tx_hash:
                dispute.evidence.remove(item)
                logger.warning("[dispute] evidence %s on dispute %s withdrawn: %s", tx.tx_hash, dispute.id, error)

    # ─────────────────────────────────────────────
    # RESOLVE
    # ─────────────────────────────────────────────

    def resolve_dispute(
        self,
        db: Session,
        *,
        principal: Principal,
        dispute_id: int,
        resolution: Resolution,
        note: str,
    ) -> DisputeRecord:
        require_role(principal, [ParticipantRole.RESOLVER], "resolve dispute")
        dispute = self.get_dispute(db, dispute_id)
        if dispute.status != DisputeStatus.open.value:
            raise wrong_state(f"Dispute {dispute.id} is already {dispute.status}.")
        if resolution == Resolution.NONE:
            raise precondition("A resolution (RefundPayer or ReleaseFunds) is required.")
        in_flight = self.tracker.in_flight(db, shipment_id=dispute.shipment_id, kinds=[LedgerTxKind.resolve_dispute])
        if in_flight:
            raise precondition(f"Dispute {dispute.id} is already being resolved.", tx_hash=in_flight[0].tx_hash)

        tx_hash = self.ledger.resolve_dispute(
            sender=principal.wallet_address, dispute_id=dispute.id, resolution=int(resolution), note=note
        )
        self.tracker.record(
            db, tx_hash=tx_hash, kind=LedgerTxKind.resolve_dispute, sender=principal.wallet_address,
            shipment_id=dispute.shipment_id,
            payload={"disputeId": dispute.id, "resolution": resolution.name, "note": note},
        )
        db.commit()

        # Receipt events (DisputeResolved and the escrow's Payment*) land in
        # the same session; one commit below makes them visible together.
        self.tracker.await_confirmation(db, tx_hash)
        dispute.resolved_by = principal.participant_id
        dispute.resolution_note = note
        self.audit.write(
            db, entity="dispute", entity_id=str(dispute.id), actor_participant_id=principal.participant_id,
            action=AuditAction.DISPUTE_RESOLVED, tx_hash=tx_hash,
            details={"resolution": resolution.name, "note": note, "status": dispute.status},
        )
        db.commit()
        logger.info("[dispute] %s resolved as %s by %s", dispute.id, resolution.name, principal.participant_id)
        return dispute

    def on_resolved_event(self, db: Session, ev: LedgerEvent) -> None:
        dispute = db.get(DisputeRecord, int(ev.args["disputeId"]))
        if dispute is None:
            logger.warning("[dispute] resolution for unknown dispute %s", ev.args["disputeId"])
            return
        if dispute.status != DisputeStatus.open.value:
            return
        resolution = Resolution(int(ev.args["resolution"]))
        dispute.status = (
            DisputeStatus.rejected.value if resolution == Resolution.NONE else DisputeStatus.resolved.value
        )
        dispute.resolution = resolution.name
        dispute.resolve_tx = ev.tx_hash
        dispute.resolved_at = from_block_time(ev.block_timestamp)
        resolver = find_participant_by_wallet(db, ev.args["resolvedBy"])
        dispute.resolved_by = resolver.id if resolver else ev.args["resolvedBy"]
