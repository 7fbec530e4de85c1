# app/services/shipment_state_machine.py
from __future__ import annotations

import logging
import uuid
from decimal import Decimal
from typing import Any, Dict, List, Optional

from sqlalchemy import or_, select
from sqlalchemy.orm import Session

from app.chain.client import LedgerClient, same_address
from app.core.errors import ProjectionConflict, precondition, wrong_actor, wrong_state
from app.core.shipment_graph import ORACLE_SIGNED_TARGETS, actors_for, is_allowed
from app.core.shipment_states import LedgerState, ShipmentStatus, is_compatible
from app.models.enums import EscrowStatus, LedgerTxKind, ParticipantRole
from app.models.escrow import EscrowRecord
from app.models.ledger_transaction import LedgerTransaction
from app.models.shipment import ShipmentRecord, ShipmentTimelineEntry
from app.policies.rbac import Principal, require_role
from app.services.attestation_service import AttestationService
from app.services.audit_service import AuditAction, AuditService
from app.services.dispute_resolver import DisputeResolver
from app.services.escrow_coordinator import EscrowCoordinator
from app.services.event_projector import EventProjector
from app.services.payload_codec import canonical_shipment_id
from app.services.shipment_projection import (
    append_timeline,
    find_by_chain_id,
    get_participant,
    get_shipment,
    status_of,
)
from app.services.transaction_tracker import TransactionTracker

logger = logging.getLogger(__name__)

S = ShipmentStatus


class ShipmentStateMachine:
    """
    Orchestration layer for the shipment lifecycle.

    Responsibilities:
    - Enforce the transition graph and who may drive each edge
    - Check the caller is *the* party of the shipment, not just the right role
    - Submit the ledger write for the edge, then record it tentatively
    - Refuse oracle-signed writes when the cached state disagrees with the ledger

    Validation order is fixed: graph, role, party, unconfirmed write, then
    edge-specific preconditions. Nothing is written before all of them pass.
    """

    def __init__(
        self,
        ledger: LedgerClient,
        attestation: AttestationService,
        tracker: TransactionTracker,
        escrow: EscrowCoordinator,
        disputes: DisputeResolver,
        projector: EventProjector,
        *,
        audit: AuditService | None = None,
    ):
        self.ledger = ledger
        self.attestation = attestation
        self.tracker = tracker
        self.escrow = escrow
        self.disputes = disputes
        self.projector = projector
        self.audit = audit or AuditService()

        tracker.on_failed(LedgerTxKind.set_industry, self._on_offer_failed)
        tracker.on_failed(LedgerTxKind.assign_transporter, self._on_assignment_failed)

    # ─────────────────────────────────────────────
    # READS
    # ─────────────────────────────────────────────

    def get(self, db: Session, shipment_id: str) -> ShipmentRecord:
        return get_shipment(db, shipment_id)

    def timeline(self, db: Session, shipment_id: str) -> List[ShipmentTimelineEntry]:
        return list(get_shipment(db, shipment_id).timeline)

    def list_shipments(
        self,
        db: Session,
        *,
        participant_id: Optional[str] = None,
        status: Optional[ShipmentStatus] = None,
    ) -> List[ShipmentRecord]:
        stmt = select(ShipmentRecord).order_by(ShipmentRecord.created_at.desc())
        if participant_id is not None:
            stmt = stmt.where(or_(
                ShipmentRecord.farmer_id == participant_id,
                ShipmentRecord.industry_id == participant_id,
            ))
        if status is not None:
            stmt = stmt.where(ShipmentRecord.status == status.value)
        return list(db.execute(stmt).scalars())

    # ─────────────────────────────────────────────
    # GUARDS
    # ─────────────────────────────────────────────

    def _check_edge(self, shipment: ShipmentRecord, principal: Principal, target: ShipmentStatus) -> ShipmentStatus:
        current = status_of(shipment)
        if not is_allowed(current, target):
            raise wrong_state(
                f"Transition {current.value} -> {target.value} is not allowed.",
                shipment_id=shipment.id,
            )
        require_role(principal, actors_for(current, target) or (), f"{current.value} -> {target.value}")
        return current

    @staticmethod
    def _check_party(shipment: ShipmentRecord, principal: Principal, target: ShipmentStatus) -> None:
        if target in (S.IN_TRANSIT, S.DELIVERED):
            if not same_address(principal.wallet_address, shipment.transporter_ref):
                raise wrong_actor("Caller is not the assigned carrier.", shipment_id=shipment.id)
        elif target in (S.READY_FOR_PICKUP, S.VERIFIED):
            if principal.participant_id != shipment.industry_id:
                raise wrong_actor("Caller is not the shipment's industry buyer.", shipment_id=shipment.id)
        elif target == S.CLAIMED:
            if principal.participant_id != shipment.farmer_id:
                raise wrong_actor("Only the shipment's farmer may claim payment.", shipment_id=shipment.id)
        elif target == S.CANCELLED:
            if principal.participant_id not in (shipment.farmer_id, shipment.industry_id):
                raise wrong_actor("Only the trading parties may cancel the shipment.", shipment_id=shipment.id)

    @staticmethod
    def _check_no_pending(shipment: ShipmentRecord) -> None:
        if shipment.pending_tx:
            raise precondition(
                "A ledger write for this shipment is still unconfirmed.",
                shipment_id=shipment.id, tx_hash=shipment.pending_tx,
            )

    def _assert_ledger_agrees(self, db: Session, shipment: ShipmentRecord, *, actor_participant_id: str) -> LedgerState:
        onchain = self.ledger.get_shipment(shipment.chain_id_hex)
        if onchain is None:
            raise precondition(f"Shipment {shipment.id} is not on the ledger yet.")
        ledger_state = LedgerState(onchain.state)
        current = status_of(shipment)
        if not is_compatible(current, ledger_state):
            logger.warning(
                "[shipments] %s cached %s disagrees with ledger %s, resyncing",
                shipment.id, current.value, ledger_state.name,
            )
            self.projector.resync_shipment(db, shipment.id, actor_participant_id=actor_participant_id)
            raise ProjectionConflict(
                f"Cached status {current.value} disagreed with ledger state {ledger_state.name}; shipment re-synced.",
                shipment_id=shipment.id, ledger_state=ledger_state.name,
            )
        return ledger_state

    def _audit_transition(self, db: Session, shipment: ShipmentRecord, principal: Principal,
                          source: ShipmentStatus, target: ShipmentStatus, tx_hash: Optional[str],
                          extra: Optional[Dict[str, Any]] = None) -> None:
        self.audit.write(
            db,
            entity="shipment",
            entity_id=shipment.id,
            actor_participant_id=principal.participant_id,
            action=AuditAction.SHIPMENT_TRANSITIONED,
            tx_hash=tx_hash,
            details={"from": source.value, "to": target.value, "role": principal.role.value, **(extra or {})},
        )

    # ─────────────────────────────────────────────
    # CREATE / OFFER / NOMINATE
    # ─────────────────────────────────────────────

    def create_shipment(
        self,
        db: Session,
        *,
        principal: Principal,
        ask_price: Decimal,
        metadata_hash: str,
        shipment_id: Optional[str] = None,
    ) -> ShipmentRecord:
        require_role(principal, [ParticipantRole.FARMER], "create shipment")
        farmer = get_participant(db, principal.participant_id)
        ask_price = Decimal(ask_price)
        if ask_price <= 0:
            raise precondition("Ask price must be positive.")
        if not metadata_hash:
            raise precondition("Metadata content id is required.")

        shipment_id = shipment_id or f"SHP-{uuid.uuid4().hex[:12].upper()}"
        try:
            chain_id_hex = canonical_shipment_id(shipment_id)
        except ValueError as exc:
            raise precondition(str(exc)) from exc
        if db.get(ShipmentRecord, shipment_id) is not None or find_by_chain_id(db, chain_id_hex) is not None:
            raise precondition(f"Shipment {shipment_id} already exists.")
        if self.ledger.get_shipment(chain_id_hex) is not None:
            raise precondition(f"Ledger id {chain_id_hex} is already registered.")

        tx_hash = self.ledger.create_shipment(
            sender=farmer.wallet_address, shipment_id=chain_id_hex, metadata_hash=metadata_hash
        )
        shipment = ShipmentRecord(
            id=shipment_id,
            chain_id_hex=chain_id_hex,
            status=S.PENDING.value,
            ask_price=ask_price,
            metadata_hash=metadata_hash,
            farmer_id=farmer.id,
            farmer_wallet=farmer.wallet_address,
            ledger_seq=0,
        )
        db.add(shipment)
        self.tracker.record(
            db, tx_hash=tx_hash, kind=LedgerTxKind.create_shipment, sender=farmer.wallet_address,
            shipment_id=shipment_id, payload={"metadataHash": metadata_hash, "askPrice": str(ask_price)},
        )
        append_timeline(
            db, shipment, S.PENDING,
            details={"createdBy": farmer.id, "askPrice": str(ask_price), "metadataHash": metadata_hash},
            tx_hash=tx_hash, tentative=True,
        )
        self.audit.write(
            db, entity="shipment", entity_id=shipment_id, actor_participant_id=farmer.id,
            action=AuditAction.SHIPMENT_CREATED, tx_hash=tx_hash,
            details={"chainId": chain_id_hex, "askPrice": str(ask_price), "metadataHash": metadata_hash},
        )
        db.commit()
        logger.info("[shipments] %s created by %s tx=%s", shipment_id, farmer.id, tx_hash)
        return shipment

    def make_offer(self, db: Session, *, principal: Principal, shipment_id: str) -> ShipmentRecord:
        shipment = get_shipment(db, shipment_id, for_update=True)
        source = self._check_edge(shipment, principal, S.OFFER_MADE)
        if shipment.industry_id:
            raise precondition(f"Shipment {shipment.id} already has an industry buyer.")
        self._check_no_pending(shipment)

        tx_hash = self.ledger.set_industry(
            sender=principal.wallet_address, shipment_id=shipment.chain_id_hex, industry=principal.wallet_address
        )
        shipment.industry_id = principal.participant_id
        shipment.industry_wallet = principal.wallet_address
        self.tracker.record(
            db, tx_hash=tx_hash, kind=LedgerTxKind.set_industry, sender=principal.wallet_address,
            shipment_id=shipment.id, payload={"industryId": principal.participant_id},
        )
        append_timeline(
            db, shipment, S.OFFER_MADE,
            details={"industryId": principal.participant_id},
            tx_hash=tx_hash, tentative=True,
        )
        self.audit.write(
            db, entity="shipment", entity_id=shipment.id, actor_participant_id=principal.participant_id,
            action=AuditAction.OFFER_MADE, tx_hash=tx_hash, details={"askPrice": shipment.ask_price},
        )
        db.commit()
        logger.info("[shipments] %s %s -> OfferMade by %s", shipment.id, source.value, principal.participant_id)
        return shipment

    def nominate_carrier(self, db: Session, *, principal: Principal, shipment_id: str,
                         carrier_id: str) -> ShipmentRecord:
        """
        Record the caller's carrier nomination. When farmer and industry have
        nominated the same carrier the transporter is assigned on the ledger
        and the shipment moves to AwaitingPayment.
        """
        shipment = get_shipment(db, shipment_id, for_update=True)
        source = self._check_edge(shipment, principal, S.AWAITING_PAYMENT)

        if principal.participant_id == shipment.farmer_id:
            side = "farmer"
        elif principal.participant_id == shipment.industry_id:
            side = "industry"
        else:
            raise wrong_actor("Only the shipment's farmer or industry buyer may nominate a carrier.")
        self._check_no_pending(shipment)

        carrier = get_participant(db, carrier_id)
        if carrier.role != ParticipantRole.TRANSPORTER.value:
            raise precondition(f"Participant {carrier_id} is not a transporter.")
        if not carrier.kyc_verified:
            raise precondition(f"Carrier {carrier_id} is not KYC-verified.")

        farmer_nominee = carrier.id if side == "farmer" else shipment.farmer_nominee
        industry_nominee = carrier.id if side == "industry" else shipment.industry_nominee

        tx_hash = None
        if farmer_nominee and farmer_nominee == industry_nominee:
            tx_hash = self.ledger.assign_transporter(
                sender=principal.wallet_address, shipment_id=shipment.chain_id_hex,
                transporter=carrier.wallet_address,
            )

        shipment.farmer_nominee = farmer_nominee
        shipment.industry_nominee = industry_nominee
        if tx_hash is not None:
            shipment.transporter_ref = carrier.wallet_address
            self.tracker.record(
                db, tx_hash=tx_hash, kind=LedgerTxKind.assign_transporter, sender=principal.wallet_address,
                shipment_id=shipment.id, payload={"carrierId": carrier.id, "transporter": carrier.wallet_address},
            )
            append_timeline(
                db, shipment, S.AWAITING_PAYMENT,
                details={"carrierId": carrier.id, "transporter": carrier.wallet_address},
                tx_hash=tx_hash, tentative=True,
            )
            self._audit_transition(db, shipment, principal, source, S.AWAITING_PAYMENT, tx_hash,
                                   {"carrierId": carrier.id})

        self.audit.write(
            db, entity="shipment", entity_id=shipment.id, actor_participant_id=principal.participant_id,
            action=AuditAction.CARRIER_NOMINATED, tx_hash=tx_hash,
            details={"side": side, "carrierId": carrier.id, "agreed": tx_hash is not None},
        )
        db.commit()
        return shipment

    def _on_offer_failed(self, db: Session, tx: LedgerTransaction, error: str) -> None:
        shipment = db.get(ShipmentRecord, tx.shipment_id)
        if shipment is not None and status_of(shipment) == S.PENDING:
            shipment.industry_id = None
            shipment.industry_wallet = None

    def _on_assignment_failed(self, db: Session, tx: LedgerTransaction, error: str) -> None:
        shipment = db.get(ShipmentRecord, tx.shipment_id)
        if shipment is not None and status_of(shipment) == S.OFFER_MADE:
            shipment.transporter_ref = None

    # ─────────────────────────────────────────────
    # TRANSITIONS
    # ─────────────────────────────────────────────

    def transition(
        self,
        db: Session,
        *,
        principal: Principal,
        shipment_id: str,
        target: ShipmentStatus,
        carrier_id: Optional[str] = None,
        evidence_hash: Optional[str] = None,
        note: Optional[str] = None,
    ) -> ShipmentRecord:
        if target == S.OFFER_MADE:
            return self.make_offer(db, principal=principal, shipment_id=shipment_id)
        if target == S.AWAITING_PAYMENT:
            if not carrier_id:
                raise precondition("carrierId is required to move a shipment to AwaitingPayment.")
            return self.nominate_carrier(db, principal=principal, shipment_id=shipment_id, carrier_id=carrier_id)
        if target == S.DISPUTED:
            self.disputes.raise_dispute(db, principal=principal, shipment_id=shipment_id,
                                        evidence_hash=evidence_hash or "")
            return get_shipment(db, shipment_id)

        shipment = get_shipment(db, shipment_id, for_update=True)
        source = self._check_edge(shipment, principal, target)
        self._check_party(shipment, principal, target)
        self._check_no_pending(shipment)

        if target == S.READY_FOR_PICKUP:
            return self._mark_ready(db, shipment, principal, source)
        if target == S.CLAIMED:
            return self._claim(db, shipment, principal, source)
        if target == S.CANCELLED:
            return self._cancel(db, shipment, principal, source, note)
        return self._oracle_signed(db, shipment, principal, source, target, note)

    def _mark_ready(self, db: Session, shipment: ShipmentRecord, principal: Principal,
                    source: ShipmentStatus) -> ShipmentRecord:
        if not self.escrow.is_funded(db, shipment):
            raise precondition("Escrow must be Deposited with exactly the ask price before pickup.")
        self.escrow.advance_to_ready(db, shipment, actor_participant_id=principal.participant_id)
        db.commit()
        return shipment

    def _oracle_signed(self, db: Session, shipment: ShipmentRecord, principal: Principal,
                       source: ShipmentStatus, target: ShipmentStatus, note: Optional[str]) -> ShipmentRecord:
        ledger_target = ORACLE_SIGNED_TARGETS[target]
        self._assert_ledger_agrees(db, shipment, actor_participant_id=principal.participant_id)

        signed = self.attestation.state_update(shipment.chain_id_hex, int(ledger_target))
        tx_hash = self.ledger.update_shipment_state(
            sender=signed.signer,
            shipment_id=shipment.chain_id_hex,
            new_state=int(ledger_target),
            timestamp=signed.payload.timestamp,
            nonce=signed.payload.nonce,
            signature=signed.signature,
        )
        self.tracker.record(
            db, tx_hash=tx_hash, kind=LedgerTxKind.state_update, sender=signed.signer,
            shipment_id=shipment.id,
            payload={
                "target": target.value,
                "newState": int(ledger_target),
                "requestedBy": principal.participant_id,
                "nonce": signed.payload.nonce,
            },
        )
        details: Dict[str, Any] = {"by": principal.participant_id, "role": principal.role.value}
        if note:
            details["note"] = note
        append_timeline(db, shipment, target, details=details, tx_hash=tx_hash, tentative=True)
        self._audit_transition(db, shipment, principal, source, target, tx_hash)
        db.commit()
        logger.info("[shipments] %s %s -> %s tx=%s", shipment.id, source.value, target.value, tx_hash)
        return shipment

    def _claim(self, db: Session, shipment: ShipmentRecord, principal: Principal,
               source: ShipmentStatus) -> ShipmentRecord:
        self._assert_ledger_agrees(db, shipment, actor_participant_id=principal.participant_id)
        tx_hash = self.escrow.release(
            db, sender=principal.wallet_address, shipment=shipment, actor_participant_id=principal.participant_id
        )
        append_timeline(
            db, shipment, S.CLAIMED,
            details={"by": principal.participant_id, "releaseTx": tx_hash},
            tx_hash=tx_hash, tentative=True,
        )
        self._audit_transition(db, shipment, principal, source, S.CLAIMED, tx_hash)
        db.commit()
        return shipment

    def _cancel(self, db: Session, shipment: ShipmentRecord, principal: Principal,
                source: ShipmentStatus, note: Optional[str]) -> ShipmentRecord:
        escrow = db.get(EscrowRecord, shipment.chain_id_hex)
        if escrow is None or escrow.status not in (EscrowStatus.deposited.value, EscrowStatus.held.value):
            return self._oracle_signed(db, shipment, principal, source, S.CANCELLED, note)

        if escrow.status == EscrowStatus.held.value:
            raise precondition("Escrow is held; it has to be settled by a resolver before cancelling.")

        tx_hash = self.escrow.cancel_by_payer(db, principal=principal, shipment=shipment)
        details: Dict[str, Any] = {"by": principal.participant_id, "cancelTx": tx_hash}
        if note:
            details["note"] = note
        append_timeline(db, shipment, S.CANCELLED, details=details, tx_hash=tx_hash, tentative=True)
        self._audit_transition(db, shipment, principal, source, S.CANCELLED, tx_hash, {"escrow": "cancelByPayer"})
        db.commit()
        return shipment

    # ─────────────────────────────────────────────
    # REPAIR
    # ─────────────────────────────────────────────

    def resync(self, db: Session, *, principal: Principal, shipment_id: str) -> ShipmentRecord:
        return self.projector.resync_shipment(db, shipment_id, actor_participant_id=principal.participant_id)
