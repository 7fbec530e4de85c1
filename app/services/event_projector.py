# app/services/event_projector.py
from __future__ import annotations

import logging
from decimal import Decimal
from typing import Callable, Dict, List

from sqlalchemy import select
from sqlalchemy.orm import Session

from app.chain.client import LedgerClient, LedgerEvent
from app.core.shipment_states import (
    LEDGER_PROGRESS,
    LedgerState,
    ShipmentStatus,
    ledger_state_for,
    reconcile_status,
)
from app.models.enums import EscrowStatus, PendingUpdateStatus
from app.models.escrow import EscrowRecord
from app.models.pending_state_update import PendingStateUpdate
from app.models.projector import ProcessedEvent, ProjectorCursor
from app.models.shipment import ShipmentRecord
from app.services.audit_service import AuditAction, AuditService
from app.services.shipment_projection import (
    append_timeline,
    find_by_chain_id,
    find_participant_by_wallet,
    from_block_time,
    get_shipment,
    promote_tentative,
    status_of,
)

logger = logging.getLogger(__name__)

EventHandler = Callable[[Session, LedgerEvent], None]
ResyncHook = Callable[[Session, ShipmentRecord], None]

ZERO_ADDRESS = "0x0000000000000000000000000000000000000000"


class EventProjector:
    """
    Applies ledger events to the off-chain projection.

    Every event is applied at most once (keyed by tx hash + log index). State
    events additionally only move a shipment forward in ledger order, so a
    slow or re-delivered event can never overwrite a newer projection.
    """

    CURSOR = "ledger-events"

    def __init__(
        self,
        ledger: LedgerClient,
        *,
        start_block: int = 0,
        batch_blocks: int = 2000,
        confirmations: int = 0,
        audit: AuditService | None = None,
    ):
        self.ledger = ledger
        self.start_block = start_block
        self.batch_blocks = batch_blocks
        self.confirmations = confirmations
        self.audit = audit or AuditService()
        self._handlers: Dict[str, EventHandler] = {
            "ShipmentCreated": self._on_shipment_created,
            "ShipmentStateChanged": self._on_state_changed,
            "TransporterAssigned": self._on_transporter_assigned,
        }
        self._resync_hooks: List[ResyncHook] = []

    def register(self, event_name: str, handler: EventHandler) -> None:
        self._handlers[event_name] = handler

    def add_resync_hook(self, hook: ResyncHook) -> None:
        self._resync_hooks.append(hook)

    # ─────────────────────────────────────────────
    # APPLY
    # ─────────────────────────────────────────────

    def apply_event(self, db: Session, event: LedgerEvent) -> bool:
        if db.get(ProcessedEvent, event.key) is not None:
            return False

        handler = self._handlers.get(event.name)
        if handler is not None:
            handler(db, event)
        else:
            logger.debug("[projector] no handler for %s", event.name)

        db.add(ProcessedEvent(event_key=event.key, event_name=event.name, block_number=event.block_number))
        db.flush()
        return True

    def apply_events(self, db: Session, events: List[LedgerEvent]) -> int:
        applied = 0
        for event in sorted(events, key=lambda e: e.sequence):
            if self.apply_event(db, event):
                applied += 1
        return applied

    def poll_once(self, db: Session) -> int:
        cursor = db.get(ProjectorCursor, self.CURSOR)
        if cursor is None:
            cursor = ProjectorCursor(name=self.CURSOR, last_block=self.start_block - 1)
            db.add(cursor)

        head = self.ledger.block_number() - self.confirmations
        if head <= cursor.last_block:
            db.commit()
            return 0

        to_block = min(head, cursor.last_block + self.batch_blocks)
        events = self.ledger.get_events(cursor.last_block + 1, to_block)
        applied = self.apply_events(db, events)

        cursor.last_block = to_block
        db.commit()
        if applied:
            logger.info("[projector] applied %s events up to block %s", applied, to_block)
        return applied

    # ─────────────────────────────────────────────
    # SHIPMENT EVENTS
    # ─────────────────────────────────────────────

    def _on_shipment_created(self, db: Session, ev: LedgerEvent) -> None:
        chain_id_hex = ev.args["shipmentId"].lower()
        shipment = find_by_chain_id(db, chain_id_hex, for_update=True)
        block_time = from_block_time(ev.block_timestamp)

        if shipment is None:
            # created outside this service; adopt it under its ledger id
            creator = ev.args["creator"]
            farmer = find_participant_by_wallet(db, creator)
            onchain = self.ledger.get_shipment(chain_id_hex)
            shipment = ShipmentRecord(
                id=chain_id_hex,
                chain_id_hex=chain_id_hex,
                status=ShipmentStatus.PENDING.value,
                ask_price=Decimal("0"),
                metadata_hash=onchain.metadata_hash if onchain else "",
                farmer_id=farmer.id if farmer else creator,
                farmer_wallet=creator,
                ledger_seq=ev.sequence,
            )
            db.add(shipment)
            append_timeline(
                db, shipment, ShipmentStatus.PENDING,
                details={"source": "ledger", "event": ev.name},
                timestamp=block_time, tx_hash=ev.tx_hash, event_key=ev.key,
            )
            logger.info("[projector] adopted shipment %s from ledger", chain_id_hex)
            return

        if shipment.pending_tx == ev.tx_hash:
            promote_tentative(db, shipment, ev.tx_hash, block_time=block_time)
        shipment.ledger_seq = max(shipment.ledger_seq, ev.sequence)

    def _on_transporter_assigned(self, db: Session, ev: LedgerEvent) -> None:
        shipment = find_by_chain_id(db, ev.args["shipmentId"], for_update=True)
        if shipment is None:
            logger.warning("[projector] TransporterAssigned for unknown shipment %s", ev.args["shipmentId"])
            return
        if not shipment.transporter_ref:
            shipment.transporter_ref = ev.args["transporter"]
        self.apply_ledger_state(db, shipment, LedgerState.ASSIGNED, ev)

    def _on_state_changed(self, db: Session, ev: LedgerEvent) -> None:
        shipment = find_by_chain_id(db, ev.args["shipmentId"], for_update=True)
        if shipment is None:
            logger.warning("[projector] state change for unknown shipment %s", ev.args["shipmentId"])
            return
        self.apply_ledger_state(db, shipment, LedgerState(int(ev.args["newState"])), ev)

    def apply_ledger_state(self, db: Session, shipment: ShipmentRecord, ledger_state: LedgerState,
                           ev: LedgerEvent) -> None:
        if ev.sequence <= shipment.ledger_seq:
            logger.debug("[projector] stale %s for %s (seq %s <= %s)",
                         ev.name, shipment.id, ev.sequence, shipment.ledger_seq)
            return
        shipment.ledger_seq = ev.sequence
        block_time = from_block_time(ev.block_timestamp)
        current = status_of(shipment)

        if shipment.pending_tx == ev.tx_hash:
            promote_tentative(db, shipment, ev.tx_hash, block_time=block_time)
        elif shipment.pending_tx and LEDGER_PROGRESS[ledger_state] < LEDGER_PROGRESS[ledger_state_for(current)]:
            # an unconfirmed local write is already ahead of this event
            self.complete_pending_updates(db, shipment, ledger_state)
            return

        target = reconcile_status(
            current,
            ledger_state,
            industry_assigned=bool(shipment.industry_id),
            escrow_funded=self._escrow_funded(db, shipment),
        )
        if target != current:
            if shipment.pending_tx and shipment.pending_tx != ev.tx_hash:
                logger.warning(
                    "[projector] ledger moved %s to %s while tx %s was pending; ledger wins",
                    shipment.id, ledger_state.name, shipment.pending_tx,
                )
                shipment.pending_tx = None
            append_timeline(
                db, shipment, target,
                details={"source": "ledger", "event": ev.name, "ledgerState": ledger_state.name},
                timestamp=block_time, tx_hash=ev.tx_hash, event_key=ev.key,
            )

        self.complete_pending_updates(db, shipment, ledger_state)

    # ─────────────────────────────────────────────
    # HELPERS
    # ─────────────────────────────────────────────

    @staticmethod
    def _escrow_funded(db: Session, shipment: ShipmentRecord) -> bool:
        escrow = db.get(EscrowRecord, shipment.chain_id_hex)
        return escrow is not None and escrow.status in (EscrowStatus.deposited.value, EscrowStatus.held.value)

    @staticmethod
    def complete_pending_updates(db: Session, shipment: ShipmentRecord, ledger_state: LedgerState) -> int:
        items = db.execute(
            select(PendingStateUpdate).where(
                PendingStateUpdate.shipment_id == shipment.id,
                PendingStateUpdate.target_state == int(ledger_state),
                PendingStateUpdate.status != PendingUpdateStatus.completed.value,
            )
        ).scalars().all()
        for item in items:
            item.status = PendingUpdateStatus.completed.value
            item.last_error = None
            logger.info("[projector] pending update %s completed by ledger state %s", item.id, ledger_state.name)
        return len(items)

    def resync_shipment(self, db: Session, shipment_id: str, *, actor_participant_id: str | None = None) -> ShipmentRecord:
        """Re-read the shipment from the ledger and make the projection agree with it."""
        shipment = get_shipment(db, shipment_id, for_update=True)
        onchain = self.ledger.get_shipment(shipment.chain_id_hex)
        if onchain is None:
            logger.warning("[projector] resync: %s not on ledger yet", shipment.id)
            return shipment

        if onchain.transporter and onchain.transporter != ZERO_ADDRESS:
            shipment.transporter_ref = onchain.transporter
        if onchain.industry and onchain.industry != ZERO_ADDRESS and not shipment.industry_wallet:
            shipment.industry_wallet = onchain.industry
            industry = find_participant_by_wallet(db, onchain.industry)
            shipment.industry_id = industry.id if industry else onchain.industry

        for hook in self._resync_hooks:
            hook(db, shipment)

        ledger_state = LedgerState(onchain.state)
        current = status_of(shipment)
        target = reconcile_status(
            current,
            ledger_state,
            industry_assigned=bool(shipment.industry_id),
            escrow_funded=self._escrow_funded(db, shipment),
        )
        if target != current:
            shipment.pending_tx = None
            append_timeline(
                db, shipment, target,
                details={"source": "resync", "ledgerState": ledger_state.name, "previous": current.value},
            )
        self.complete_pending_updates(db, shipment, ledger_state)

        self.audit.write(
            db,
            entity="shipment",
            entity_id=shipment.id,
            actor_participant_id=actor_participant_id,
            action=AuditAction.SHIPMENT_RESYNCED,
            details={"ledgerState": ledger_state.name, "from": current.value, "to": target.value},
        )
        db.commit()
        logger.info("[projector] resynced %s: ledger=%s status %s -> %s",
                    shipment.id, ledger_state.name, current.value, target.value)
        return shipment
