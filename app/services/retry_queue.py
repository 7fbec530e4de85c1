# app/services/retry_queue.py
from __future__ import annotations

import logging
import uuid
from datetime import datetime, timedelta, timezone
from typing import List, Optional

from sqlalchemy import and_, or_, select
from sqlalchemy.orm import Session

from app.chain.client import LedgerClient
from app.core.errors import LedgerRejected, NetworkTimeout, NotFound, SignatureError, ValidationError, precondition
from app.core.shipment_states import LedgerState
from app.models.enums import LedgerTxKind, PendingUpdateStatus
from app.models.pending_state_update import PendingStateUpdate
from app.models.shipment import ShipmentRecord
from app.services.attestation_service import AttestationService
from app.services.audit_service import AuditAction, AuditService
from app.services.shipment_projection import as_utc
from app.services.transaction_tracker import TransactionTracker

logger = logging.getLogger(__name__)


def _now():
    return datetime.now(timezone.utc)


class PendingUpdateQueue:
    """
    Durable queue of attestor-signed state updates that still have to reach
    the ledger.

    Items are created when an actor's action implies a ledger state only the
    attestor may write (escrow funded, payment released, payer cancelled).
    Network timeouts back off exponentially up to max_attempts; a ledger
    rejection, a bad signature or any unexpected error fails the item at once.
    An item left in processing for longer than the lease (the worker died
    mid-attempt) is picked up again by the next pass.
    """

    def __init__(
        self,
        ledger: LedgerClient,
        attestation: AttestationService,
        tracker: TransactionTracker,
        *,
        max_attempts: int = 3,
        backoff_seconds: float = 15,
        processing_lease_seconds: float = 300,
        audit: AuditService | None = None,
    ):
        self.ledger = ledger
        self.attestation = attestation
        self.tracker = tracker
        self.max_attempts = max_attempts
        self.backoff_seconds = backoff_seconds
        self.processing_lease_seconds = processing_lease_seconds
        self.audit = audit or AuditService()

    def is_stale(self, item: PendingStateUpdate, now: Optional[datetime] = None) -> bool:
        if item.status != PendingUpdateStatus.processing.value:
            return False
        started = as_utc(item.processing_started_at)
        lease_start = (now or _now()) - timedelta(seconds=self.processing_lease_seconds)
        return started is None or started <= lease_start

    # ─────────────────────────────────────────────
    # ENQUEUE
    # ─────────────────────────────────────────────

    def enqueue(
        self,
        db: Session,
        *,
        shipment: ShipmentRecord,
        current_state: int,
        target_state: LedgerState,
    ) -> PendingStateUpdate:
        """
        Idempotent on (shipment, target) while the item is open. A completed
        item is reopened: the ledger has left the target again, so the
        obligation is new. A failed item is left for the operator.
        Flushed, not committed.
        """
        existing = db.execute(
            select(PendingStateUpdate).where(
                PendingStateUpdate.shipment_id == shipment.id,
                PendingStateUpdate.target_state == int(target_state),
            )
        ).scalar_one_or_none()
        if existing is not None:
            if existing.status == PendingUpdateStatus.completed.value:
                existing.status = PendingUpdateStatus.pending.value
                existing.current_state = int(current_state)
                existing.attempt_count = 0
                existing.last_error = None
                existing.next_attempt_at = None
                existing.tx_hash = None
                existing.processing_started_at = None
                db.flush()
                logger.warning(
                    "[retry] reopened %s -> %s for shipment %s",
                    LedgerState(int(current_state)).name, target_state.name, shipment.id,
                )
            elif existing.status == PendingUpdateStatus.failed.value:
                logger.warning(
                    "[retry] %s -> %s for shipment %s is already failed (%s), awaiting operator",
                    LedgerState(int(current_state)).name, target_state.name, shipment.id, existing.last_error,
                )
            return existing

        item = PendingStateUpdate(
            shipment_id=shipment.id,
            chain_id_hex=shipment.chain_id_hex,
            current_state=int(current_state),
            target_state=int(target_state),
            status=PendingUpdateStatus.pending.value,
            attempt_count=0,
        )
        db.add(item)
        db.flush()
        logger.info(
            "[retry] enqueued %s -> %s for shipment %s",
            LedgerState(int(current_state)).name, target_state.name, shipment.id,
        )
        return item

    # ─────────────────────────────────────────────
    # WORKER
    # ─────────────────────────────────────────────

    def process_once(self, db: Session, *, now: Optional[datetime] = None, limit: int = 10) -> List[PendingStateUpdate]:
        now = now or _now()
        lease_start = now - timedelta(seconds=self.processing_lease_seconds)
        due_ids = db.execute(
            select(PendingStateUpdate.id)
            .where(
                or_(
                    and_(
                        PendingStateUpdate.status == PendingUpdateStatus.pending.value,
                        or_(PendingStateUpdate.next_attempt_at.is_(None), PendingStateUpdate.next_attempt_at <= now),
                    ),
                    and_(
                        PendingStateUpdate.status == PendingUpdateStatus.processing.value,
                        or_(
                            PendingStateUpdate.processing_started_at.is_(None),
                            PendingStateUpdate.processing_started_at <= lease_start,
                        ),
                    ),
                )
            )
            .order_by(PendingStateUpdate.created_at.asc())
            .limit(limit)
        ).scalars().all()

        processed: List[PendingStateUpdate] = []
        for item_id in due_ids:
            item = db.execute(
                select(PendingStateUpdate).where(PendingStateUpdate.id == item_id).with_for_update()
            ).scalar_one_or_none()
            if item is None:
                continue
            if self.is_stale(item, now):
                logger.warning("[retry] %s reclaimed, processing since %s", item.id, item.processing_started_at)
            elif item.status != PendingUpdateStatus.pending.value:
                continue
            item.status = PendingUpdateStatus.processing.value
            item.processing_started_at = now
            db.commit()

            self._attempt(db, item, now)
            processed.append(item)
        return processed

    def _attempt(self, db: Session, item: PendingStateUpdate, now: datetime) -> None:
        target = LedgerState(item.target_state)
        try:
            if item.tx_hash and self._previous_submission_landed(db, item):
                return

            onchain = self.ledger.get_shipment(item.chain_id_hex)
            if onchain is not None and onchain.state == int(target):
                self._complete(db, item)
                return

            signed = self.attestation.state_update(item.chain_id_hex, int(target))
            tx_hash = self.ledger.update_shipment_state(
                sender=signed.signer,
                shipment_id=item.chain_id_hex,
                new_state=int(target),
                timestamp=signed.payload.timestamp,
                nonce=signed.payload.nonce,
                signature=signed.signature,
            )
            item.tx_hash = tx_hash
            self.tracker.record(
                db,
                tx_hash=tx_hash,
                kind=LedgerTxKind.state_update,
                sender=signed.signer,
                shipment_id=item.shipment_id,
                payload={"pendingUpdateId": str(item.id), "newState": int(target), "nonce": signed.payload.nonce},
            )
            db.commit()

            self.tracker.await_confirmation(db, tx_hash)
            item.attempt_count += 1
            self._complete(db, item)

        except NetworkTimeout as exc:
            db.rollback()
            item.attempt_count += 1
            item.last_error = str(exc)
            if item.attempt_count >= self.max_attempts:
                item.status = PendingUpdateStatus.failed.value
                item.next_attempt_at = None
                logger.error("[retry] %s gave up after %s attempts: %s", item.id, item.attempt_count, exc)
            else:
                item.status = PendingUpdateStatus.pending.value
                item.next_attempt_at = now + timedelta(
                    seconds=self.backoff_seconds * (2 ** (item.attempt_count - 1))
                )
                logger.warning("[retry] %s attempt %s timed out, next at %s", item.id, item.attempt_count, item.next_attempt_at)
            item.processing_started_at = None
            db.commit()

        except (LedgerRejected, SignatureError, ValidationError) as exc:
            db.rollback()
            self._fail(db, item, str(exc))
            logger.error("[retry] %s failed: %s", item.id, exc)

        except Exception as exc:
            # signer backend, projection or database trouble
            db.rollback()
            self._fail(db, item, f"{type(exc).__name__}: {exc}")
            logger.exception("[retry] %s failed unexpectedly", item.id)

    def _fail(self, db: Session, item: PendingStateUpdate, error: str) -> None:
        item.attempt_count += 1
        item.status = PendingUpdateStatus.failed.value
        item.last_error = error
        item.next_attempt_at = None
        item.processing_started_at = None
        db.commit()

    def _previous_submission_landed(self, db: Session, item: PendingStateUpdate) -> bool:
        receipt = self.ledger.get_receipt(item.tx_hash)
        if receipt is None:
            raise NetworkTimeout(f"previous submission {item.tx_hash} is still pending", tx_hash=item.tx_hash)
        self.tracker.settle(db, receipt)
        if receipt.succeeded:
            self._complete(db, item)
            return True
        db.commit()
        return False

    def _complete(self, db: Session, item: PendingStateUpdate) -> None:
        item.status = PendingUpdateStatus.completed.value
        item.last_error = None
        item.next_attempt_at = None
        item.processing_started_at = None
        db.commit()
        logger.info("[retry] %s completed at ledger state %s", item.id, LedgerState(item.target_state).name)

    # ─────────────────────────────────────────────
    # OPERATOR ACTIONS
    # ─────────────────────────────────────────────

    def list(self, db: Session, *, status: Optional[PendingUpdateStatus] = None,
             shipment_id: Optional[str] = None) -> List[PendingStateUpdate]:
        stmt = select(PendingStateUpdate).order_by(PendingStateUpdate.created_at.asc())
        if status is not None:
            stmt = stmt.where(PendingStateUpdate.status == status.value)
        if shipment_id is not None:
            stmt = stmt.where(PendingStateUpdate.shipment_id == shipment_id)
        return list(db.execute(stmt).scalars())

    def _get(self, db: Session, item_id: uuid.UUID) -> PendingStateUpdate:
        item = db.get(PendingStateUpdate, item_id)
        if item is None:
            raise NotFound(f"Pending state update {item_id} not found", item_id=str(item_id))
        return item

    def retry(self, db: Session, item_id: uuid.UUID, *, actor_participant_id: Optional[str]) -> PendingStateUpdate:
        item = self._get(db, item_id)
        stale = self.is_stale(item)
        if item.status != PendingUpdateStatus.failed.value and not stale:
            raise precondition(f"Only failed or stalled updates can be retried (status is {item.status}).")

        item.status = PendingUpdateStatus.pending.value
        item.attempt_count = 0
        item.last_error = None
        item.next_attempt_at = None
        item.processing_started_at = None
        # a stalled attempt may still land; the next pass checks its receipt first
        if not stale:
            item.tx_hash = None
        self.audit.write(
            db,
            entity="pending_state_update",
            entity_id=str(item.id),
            actor_participant_id=actor_participant_id,
            action=AuditAction.STATE_UPDATE_RETRIED,
            details={"shipmentId": item.shipment_id, "targetState": LedgerState(item.target_state).name},
        )
        db.commit()
        db.refresh(item)
        return item

    def dismiss(self, db: Session, item_id: uuid.UUID, *, actor_participant_id: Optional[str]) -> None:
        item = self._get(db, item_id)
        if item.status == PendingUpdateStatus.processing.value and not self.is_stale(item):
            raise precondition("An update that is being processed cannot be dismissed.")

        self.audit.write(
            db,
            entity="pending_state_update",
            entity_id=str(item.id),
            actor_participant_id=actor_participant_id,
            action=AuditAction.STATE_UPDATE_DISMISSED,
            details={
                "shipmentId": item.shipment_id,
                "targetState": LedgerState(item.target_state).name,
                "status": item.status,
                "lastError": item.last_error,
            },
        )
        db.delete(item)
        db.commit()

