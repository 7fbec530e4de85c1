# app/services/transaction_tracker.py
from __future__ import annotations

import logging
from collections import defaultdict
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional

from sqlalchemy import select
from sqlalchemy.orm import Session

from app.chain.client import LedgerClient, LedgerEvent, TxReceipt
from app.core.errors import LedgerRejected, NetworkTimeout, ShipmentLedgerError
from app.core.shipment_states import ShipmentStatus
from app.models.enums import LedgerTxKind, LedgerTxStatus
from app.models.ledger_transaction import LedgerTransaction
from app.models.shipment import ShipmentRecord
from app.services.audit_service import AuditAction, AuditService
from app.services.shipment_projection import append_timeline, from_block_time, promote_tentative, tentative_entry

logger = logging.getLogger(__name__)

ConfirmHandler = Callable[[Session, LedgerTransaction, TxReceipt], None]
FailHandler = Callable[[Session, LedgerTransaction, str], None]
EventSink = Callable[[Session, List[LedgerEvent]], int]


def _now():
    return datetime.now(timezone.utc)


class TransactionTracker:
    """
    Two-phase bookkeeping for ledger writes.

    Phase one (record) stores the submitted tx next to the tentative
    projection changes tagged with its hash. Phase two (settle) either
    promotes those changes once the receipt is in, or appends a compensating
    timeline entry when the transaction reverted.

    Receipt events are handed to the event sinks (the projector) before any
    kind-specific handler runs.
    """

    def __init__(self, ledger: LedgerClient, *, confirmation_timeout: float, audit: AuditService | None = None):
        self.ledger = ledger
        self.confirmation_timeout = confirmation_timeout
        self.audit = audit or AuditService()
        self._on_confirmed: Dict[str, List[ConfirmHandler]] = defaultdict(list)
        self._on_failed: Dict[str, List[FailHandler]] = defaultdict(list)
        self._sinks: List[EventSink] = []

    # ─────────────────────────────────────────────
    # REGISTRATION
    # ─────────────────────────────────────────────

    def on_confirmed(self, kind: LedgerTxKind, handler: ConfirmHandler) -> None:
        self._on_confirmed[kind.value].append(handler)

    def on_failed(self, kind: LedgerTxKind, handler: FailHandler) -> None:
        self._on_failed[kind.value].append(handler)

    def add_event_sink(self, sink: EventSink) -> None:
        self._sinks.append(sink)

    # ─────────────────────────────────────────────
    # PHASE ONE
    # ─────────────────────────────────────────────

    def record(
        self,
        db: Session,
        *,
        tx_hash: str,
        kind: LedgerTxKind,
        sender: str,
        shipment_id: Optional[str] = None,
        payload: Optional[Dict[str, Any]] = None,
    ) -> LedgerTransaction:
        row = LedgerTransaction(
            tx_hash=tx_hash,
            kind=kind.value,
            sender=sender,
            shipment_id=shipment_id,
            status=LedgerTxStatus.submitted.value,
            payload_json=payload or {},
        )
        db.add(row)
        logger.info("[tracker] recorded %s tx=%s shipment=%s", kind.value, tx_hash, shipment_id)
        return row

    def in_flight(self, db: Session, *, shipment_id: str, kinds: List[LedgerTxKind]) -> List[LedgerTransaction]:
        return list(
            db.execute(
                select(LedgerTransaction).where(
                    LedgerTransaction.shipment_id == shipment_id,
                    LedgerTransaction.kind.in_([k.value for k in kinds]),
                    LedgerTransaction.status == LedgerTxStatus.submitted.value,
                )
            ).scalars()
        )

    # ─────────────────────────────────────────────
    # PHASE TWO
    # ─────────────────────────────────────────────

    def settle(self, db: Session, receipt: TxReceipt, *, handlers: bool = True) -> Optional[LedgerTransaction]:
        tx = db.get(LedgerTransaction, receipt.tx_hash)

        if receipt.succeeded:
            for sink in self._sinks:
                sink(db, receipt.events)

        if tx is None or tx.status != LedgerTxStatus.submitted.value:
            return tx

        if not receipt.succeeded:
            self.fail(db, tx, receipt.revert_reason or "transaction reverted", handlers=handlers)
            return tx

        tx.status = LedgerTxStatus.confirmed.value
        tx.block_number = receipt.block_number
        tx.settled_at = _now()

        if tx.shipment_id:
            shipment = db.get(ShipmentRecord, tx.shipment_id)
            if shipment is not None:
                block_time = from_block_time(receipt.events[0].block_timestamp) if receipt.events else None
                promote_tentative(db, shipment, tx.tx_hash, block_time=block_time)

        if handlers:
            for handler in self._on_confirmed[tx.kind]:
                handler(db, tx, receipt)

        logger.info("[tracker] confirmed %s tx=%s block=%s", tx.kind, tx.tx_hash, receipt.block_number)
        return tx

    def fail(self, db: Session, tx: LedgerTransaction, error: str, *, handlers: bool = True) -> None:
        tx.status = LedgerTxStatus.failed.value
        tx.error = error
        tx.settled_at = _now()

        if tx.shipment_id:
            shipment = db.get(ShipmentRecord, tx.shipment_id)
            if shipment is not None:
                self._compensate(db, shipment, tx, error)

        if handlers:
            for handler in self._on_failed[tx.kind]:
                handler(db, tx, error)

        logger.warning("[tracker] failed %s tx=%s error=%s", tx.kind, tx.tx_hash, error)

    def _compensate(self, db: Session, shipment: ShipmentRecord, tx: LedgerTransaction, error: str) -> None:
        entry = tentative_entry(shipment, tx.tx_hash)
        if entry is None or shipment.pending_tx != tx.tx_hash:
            return

        # The tentative entry stays flagged; the restore is a new entry.
        if entry.position > 0:
            restore = ShipmentStatus(shipment.timeline[entry.position - 1].status)
        else:
            restore = ShipmentStatus.CANCELLED

        append_timeline(
            db,
            shipment,
            restore,
            details={"compensates": tx.tx_hash, "kind": tx.kind, "reason": error},
        )
        shipment.pending_tx = None
        self.audit.write(
            db,
            entity="shipment",
            entity_id=shipment.id,
            actor_participant_id=None,
            action=AuditAction.TX_COMPENSATED,
            tx_hash=tx.tx_hash,
            details={"restoredStatus": restore.value, "reason": error},
        )

    def await_confirmation(self, db: Session, tx_hash: str, timeout: Optional[float] = None) -> TxReceipt:
        """
        Block until `tx_hash` is mined and settle it.

        Success is left uncommitted so the caller can fold its own changes into
        the same commit. A revert is committed (with its compensation) and
        raised as LedgerRejected.
        """
        receipt = self.ledger.wait_for_receipt(tx_hash, timeout or self.confirmation_timeout)
        self.settle(db, receipt)
        if not receipt.succeeded:
            db.commit()
            raise LedgerRejected(receipt.revert_reason or "transaction reverted", tx_hash=tx_hash)
        return receipt

    def sweep(self, db: Session, *, limit: int = 100) -> int:
        """
        Settle every submitted transaction whose receipt is available.

        A handler that cannot reach the node leaves the transaction submitted
        for the next sweep. Any other handler error still settles the
        transaction by its receipt (without handlers) and keeps the error on
        the row; a mined transaction is never marked failed for it.
        """
        pending = db.execute(
            select(LedgerTransaction.tx_hash)
            .where(LedgerTransaction.status == LedgerTxStatus.submitted.value)
            .order_by(LedgerTransaction.submitted_at.asc())
            .limit(limit)
        ).scalars().all()

        settled = 0
        for tx_hash in pending:
            try:
                receipt = self.ledger.get_receipt(tx_hash)
            except NetworkTimeout as exc:
                logger.warning("[tracker] sweep interrupted: %s", exc)
                break
            if receipt is None:
                continue

            try:
                self.settle(db, receipt)
                db.commit()
            except NetworkTimeout as exc:
                db.rollback()
                logger.warning("[tracker] settling tx=%s deferred, node unreachable: %s", tx_hash, exc)
                break
            except ShipmentLedgerError as exc:
                db.rollback()
                logger.error("[tracker] settlement handler failed tx=%s: %s", tx_hash, exc)
                tx = self.settle(db, receipt, handlers=False)
                if tx is not None:
                    tx.error = f"settlement handler failed: {exc}"
                db.commit()
            settled += 1
        return settled
