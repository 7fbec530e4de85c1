# app/services/escrow_coordinator.py
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Callable, Dict, Optional

from sqlalchemy.orm import Session

from app.chain.client import LedgerClient, LedgerEvent, normalize_address, same_address
from app.core.errors import LedgerRejected, NetworkTimeout, NotFound, precondition, wrong_actor, wrong_state
from app.core.shipment_states import LedgerState, ShipmentStatus
from app.models.enums import EscrowStatus, LedgerEscrowStatus, LedgerTxKind, ParticipantRole
from app.models.escrow import EscrowRecord
from app.models.ledger_transaction import LedgerTransaction
from app.models.shipment import ShipmentRecord
from app.policies.rbac import Principal, require_role
from app.services.audit_service import AuditAction, AuditService
from app.services.retry_queue import PendingUpdateQueue
from app.services.shipment_projection import (
    append_timeline,
    as_utc,
    find_by_chain_id,
    from_block_time,
    get_shipment,
    status_of,
)
from app.services.transaction_tracker import TransactionTracker

logger = logging.getLogger(__name__)

MAX_BPS = 10_000

LIVE_ESCROW = (EscrowStatus.deposited.value, EscrowStatus.held.value)

STATUS_BY_LEDGER = {
    LedgerEscrowStatus.DEPOSITED: EscrowStatus.deposited,
    LedgerEscrowStatus.HELD: EscrowStatus.held,
    LedgerEscrowStatus.RELEASED: EscrowStatus.released,
    LedgerEscrowStatus.REFUNDED: EscrowStatus.refunded,
}

MANAGER_ROLES = (ParticipantRole.RESOLVER, ParticipantRole.ADMIN)


def _now():
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class Splits:
    farmer_bps: int
    transporter_bps: int
    platform_bps: int

    def validate(self) -> None:
        for name, value in (
            ("farmerBps", self.farmer_bps),
            ("transporterBps", self.transporter_bps),
            ("platformBps", self.platform_bps),
        ):
            if not isinstance(value, int) or value < 0 or value > MAX_BPS:
                raise precondition(f"{name} must be an integer between 0 and {MAX_BPS}, got {value!r}")
        total = self.farmer_bps + self.transporter_bps + self.platform_bps
        if total > MAX_BPS:
            raise precondition(f"basis point splits sum to {total}, more than {MAX_BPS}")


@dataclass(frozen=True)
class DepositOutcome:
    # "approval_pending": an approve tx was sent, the deposit follows once it confirms
    # "deposit_submitted": the deposit itself was sent
    stage: str
    tx_hash: str
    shipment_id: str


class EscrowCoordinator:
    """
    Drives EscrowPayment for a shipment.

    deposit() validates everything locally before touching the ledger and
    runs the ERC-20 allowance pre-step when the payer has not approved the
    escrow contract for the full amount. Escrow status in the projection only
    moves on ledger evidence (a confirmed receipt or an event).
    """

    def __init__(
        self,
        ledger: LedgerClient,
        tracker: TransactionTracker,
        queue: PendingUpdateQueue,
        *,
        payment_token: Optional[str],
        token_decimals: int,
        cancellation_window_seconds: int,
        audit: AuditService | None = None,
        clock: Callable[[], datetime] = _now,
    ):
        self.ledger = ledger
        self.tracker = tracker
        self.queue = queue
        self.payment_token = payment_token
        self.token_decimals = token_decimals
        self.cancellation_window_seconds = cancellation_window_seconds
        self.audit = audit or AuditService()
        self._clock = clock

        tracker.on_confirmed(LedgerTxKind.approve, self._on_approve_confirmed)
        tracker.on_confirmed(LedgerTxKind.release, self._on_release_confirmed)
        tracker.on_confirmed(LedgerTxKind.cancel_by_payer, self._on_cancel_confirmed)

    def register_projections(self, projector) -> None:
        projector.register("PaymentDeposited", self.on_deposited_event)
        projector.register("PaymentHeld", self._settled_event(EscrowStatus.held))
        projector.register("PaymentReleased", self._settled_event(EscrowStatus.released))
        projector.register("PaymentRefunded", self._settled_event(EscrowStatus.refunded))
        projector.register("PaymentCancelled", self._settled_event(EscrowStatus.refunded))
        projector.add_resync_hook(self.sync_from_ledger)

    # ─────────────────────────────────────────────
    # READS
    # ─────────────────────────────────────────────

    def expected_amount(self, shipment: ShipmentRecord) -> int:
        units = Decimal(shipment.ask_price) * (Decimal(10) ** self.token_decimals)
        if units != units.to_integral_value():
            raise precondition(
                f"ask price {shipment.ask_price} is not representable with {self.token_decimals} token decimals"
            )
        return int(units)

    def get_escrow(self, db: Session, shipment_id: str) -> EscrowRecord:
        shipment = get_shipment(db, shipment_id)
        escrow = db.get(EscrowRecord, shipment.chain_id_hex)
        if escrow is None:
            raise NotFound(f"No escrow for shipment {shipment_id}", shipment_id=shipment_id)
        return escrow

    def is_funded(self, db: Session, shipment: ShipmentRecord) -> bool:
        escrow = db.get(EscrowRecord, shipment.chain_id_hex)
        return (
            escrow is not None
            and escrow.status in LIVE_ESCROW
            and escrow.amount_units == self.expected_amount(shipment)
        )

    def _live_escrow(self, db: Session, shipment: ShipmentRecord) -> EscrowRecord:
        escrow = db.get(EscrowRecord, shipment.chain_id_hex)
        if escrow is None:
            raise precondition(f"Shipment {shipment.id} has no escrow.")
        if escrow.status not in LIVE_ESCROW:
            raise precondition(f"Escrow for shipment {shipment.id} is already {escrow.status}.")
        return escrow

    def _assert_no_settlement_in_flight(self, db: Session, shipment: ShipmentRecord) -> None:
        in_flight = self.tracker.in_flight(
            db,
            shipment_id=shipment.id,
            kinds=[LedgerTxKind.release, LedgerTxKind.refund, LedgerTxKind.cancel_by_payer, LedgerTxKind.resolve_dispute],
        )
        if in_flight:
            raise precondition(
                f"Escrow settlement already in flight for shipment {shipment.id}", tx_hash=in_flight[0].tx_hash
            )

    # ─────────────────────────────────────────────
    # DEPOSIT
    # ─────────────────────────────────────────────

    def deposit(
        self,
        db: Session,
        *,
        principal: Principal,
        shipment_id: str,
        amount: int,
        splits: Splits,
        token: Optional[str] = None,
        farmer: Optional[str] = None,
        transporter: Optional[str] = None,
    ) -> DepositOutcome:
        splits.validate()

        shipment = get_shipment(db, shipment_id, for_update=True)
        require_role(principal, [ParticipantRole.INDUSTRY], "deposit escrow")
        if principal.participant_id != shipment.industry_id:
            raise wrong_actor("Only the shipment's industry buyer may fund its escrow.", shipment_id=shipment.id)

        current = status_of(shipment)
        if current != ShipmentStatus.AWAITING_PAYMENT:
            raise wrong_state(f"Escrow can be funded only while AwaitingPayment (status is {current.value}).")

        existing = db.get(EscrowRecord, shipment.chain_id_hex)
        if existing is not None and existing.status != EscrowStatus.refunded.value:
            raise precondition(
                f"Escrow for shipment {shipment.id} already exists with status {existing.status}.",
                shipment_id=shipment.id,
            )
        in_flight = self.tracker.in_flight(
            db, shipment_id=shipment.id, kinds=[LedgerTxKind.approve, LedgerTxKind.deposit]
        )
        if in_flight:
            raise precondition("A deposit for this shipment is already in flight.", tx_hash=in_flight[0].tx_hash)

        if not self.payment_token:
            raise precondition("No payment token is configured.")
        token = token or self.payment_token
        if not same_address(token, self.payment_token):
            raise precondition(f"Token {token} is not the accepted payment token.")

        farmer = farmer or shipment.farmer_wallet
        if not same_address(farmer, shipment.farmer_wallet):
            raise precondition("Farmer address does not match the shipment.")
        transporter = transporter or shipment.transporter_ref
        if not transporter:
            raise precondition("Shipment has no assigned transporter.")
        if not same_address(transporter, shipment.transporter_ref):
            raise precondition("Transporter address does not match the shipment.")

        expected = self.expected_amount(shipment)
        if int(amount) != expected:
            raise precondition(f"Deposit amount {amount} does not equal the ask price ({expected} base units).")

        args: Dict[str, Any] = {
            "shipmentId": shipment.id,
            "chainId": shipment.chain_id_hex,
            "payer": normalize_address(shipment.industry_wallet),
            "token": normalize_address(token),
            "amount": str(expected),
            "farmer": normalize_address(farmer),
            "transporter": normalize_address(transporter),
            "farmerBps": splits.farmer_bps,
            "transporterBps": splits.transporter_bps,
            "platformBps": splits.platform_bps,
        }

        allowance = self.ledger.allowance(token=args["token"], owner=args["payer"], spender=self.ledger.escrow_address)
        if allowance < expected:
            tx_hash = self.ledger.approve(
                sender=args["payer"], token=args["token"], spender=self.ledger.escrow_address, amount=expected
            )
            self.tracker.record(
                db, tx_hash=tx_hash, kind=LedgerTxKind.approve, sender=args["payer"],
                shipment_id=shipment.id, payload={"deposit": args},
            )
            self.audit.write(
                db, entity="shipment", entity_id=shipment.id,
                actor_participant_id=principal.participant_id,
                action=AuditAction.ESCROW_APPROVAL_SUBMITTED, tx_hash=tx_hash,
                details={"allowance": str(allowance), "required": str(expected)},
            )
            db.commit()
            logger.info("[escrow] approval %s sent for %s (allowance %s < %s)", tx_hash, shipment.id, allowance, expected)
            return DepositOutcome(stage="approval_pending", tx_hash=tx_hash, shipment_id=shipment.id)

        tx_hash = self._submit_deposit(db, args, actor_participant_id=principal.participant_id)
        db.commit()
        return DepositOutcome(stage="deposit_submitted", tx_hash=tx_hash, shipment_id=shipment.id)

    def _submit_deposit(self, db: Session, args: Dict[str, Any], *, actor_participant_id: Optional[str]) -> str:
        tx_hash = self.ledger.deposit_payment(
            sender=args["payer"],
            shipment_id=args["chainId"],
            token=args["token"],
            amount=int(args["amount"]),
            farmer=args["farmer"],
            transporter=args["transporter"],
            farmer_bps=args["farmerBps"],
            transporter_bps=args["transporterBps"],
            platform_bps=args["platformBps"],
        )
        self.tracker.record(
            db, tx_hash=tx_hash, kind=LedgerTxKind.deposit, sender=args["payer"],
            shipment_id=args["shipmentId"], payload=args,
        )
        self.audit.write(
            db, entity="shipment", entity_id=args["shipmentId"],
            actor_participant_id=actor_participant_id,
            action=AuditAction.ESCROW_DEPOSIT_SUBMITTED, tx_hash=tx_hash, details=args,
        )
        logger.info("[escrow] deposit %s sent for %s amount=%s", tx_hash, args["shipmentId"], args["amount"])
        return tx_hash

    def _on_approve_confirmed(self, db: Session, tx: LedgerTransaction, receipt) -> None:
        args = (tx.payload_json or {}).get("deposit")
        if not args:
            return
        shipment = db.get(ShipmentRecord, args["shipmentId"])
        if shipment is None or status_of(shipment) != ShipmentStatus.AWAITING_PAYMENT:
            logger.info("[escrow] approval %s confirmed but shipment no longer awaits payment", tx.tx_hash)
            return
        existing = db.get(EscrowRecord, shipment.chain_id_hex)
        if existing is not None and existing.status != EscrowStatus.refunded.value:
            return

        try:
            self._submit_deposit(db, args, actor_participant_id=None)
        except (LedgerRejected, NetworkTimeout) as exc:
            # approval stands; the payer can re-submit the deposit directly
            tx.error = f"deferred deposit not submitted: {exc}"
            logger.error("[escrow] deferred deposit for %s failed: %s", shipment.id, exc)

    # ─────────────────────────────────────────────
    # FUNDED -> READY FOR PICKUP
    # ─────────────────────────────────────────────

    def on_deposited_event(self, db: Session, ev: LedgerEvent) -> None:
        shipment = find_by_chain_id(db, ev.args["shipmentId"], for_update=True)
        if shipment is None:
            logger.warning("[escrow] deposit for unknown shipment %s", ev.args["shipmentId"])
            return

        block_time = from_block_time(ev.block_timestamp)
        escrow = db.get(EscrowRecord, shipment.chain_id_hex)
        if escrow is None:
            escrow = EscrowRecord(chain_id_hex=shipment.chain_id_hex, shipment_id=shipment.id)
            db.add(escrow)
        escrow.token = ev.args["token"]
        escrow.amount = str(int(ev.args["amount"]))
        escrow.payer = ev.args["payer"]
        escrow.farmer = ev.args["farmer"]
        escrow.transporter = ev.args["transporter"]
        escrow.farmer_bps = int(ev.args["farmerBps"])
        escrow.transporter_bps = int(ev.args["transporterBps"])
        escrow.platform_bps = int(ev.args["platformBps"])
        escrow.status = EscrowStatus.deposited.value
        escrow.deposit_tx = ev.tx_hash
        escrow.settle_tx = None
        escrow.deposited_at = block_time
        escrow.settled_at = None
        db.flush()

        self.advance_to_ready(db, shipment, tx_hash=ev.tx_hash, timestamp=block_time)

    def advance_to_ready(
        self,
        db: Session,
        shipment: ShipmentRecord,
        *,
        tx_hash: Optional[str] = None,
        timestamp: Optional[datetime] = None,
        actor_participant_id: Optional[str] = None,
    ) -> bool:
        """
        AwaitingPayment -> ReadyForPickup once the escrow holds exactly the
        ask price. Durable immediately: the ledger already shows the deposit.
        The ledger's ASSIGNED state covers both statuses, so an attestor update
        is queued only if the ledger has drifted from it.
        """
        if status_of(shipment) != ShipmentStatus.AWAITING_PAYMENT:
            return False
        if not self.is_funded(db, shipment):
            escrow = db.get(EscrowRecord, shipment.chain_id_hex)
            logger.warning(
                "[escrow] %s not advanced: escrow %s amount %s, expected %s",
                shipment.id,
                escrow.status if escrow else None,
                escrow.amount if escrow else None,
                self.expected_amount(shipment),
            )
            return False

        append_timeline(
            db, shipment, ShipmentStatus.READY_FOR_PICKUP,
            details={"source": "escrow", "depositTx": tx_hash},
            timestamp=timestamp, tx_hash=tx_hash,
        )
        self.audit.write(
            db, entity="shipment", entity_id=shipment.id,
            actor_participant_id=actor_participant_id,
            action=AuditAction.SHIPMENT_TRANSITIONED, tx_hash=tx_hash,
            details={"from": ShipmentStatus.AWAITING_PAYMENT.value, "to": ShipmentStatus.READY_FOR_PICKUP.value},
        )

        try:
            onchain = self.ledger.get_shipment(shipment.chain_id_hex)
        except NetworkTimeout as exc:
            logger.warning("[escrow] could not read ledger state for %s: %s", shipment.id, exc)
            return True
        if onchain is not None and onchain.state != LedgerState.ASSIGNED:
            self.queue.enqueue(db, shipment=shipment, current_state=onchain.state, target_state=LedgerState.ASSIGNED)
        return True

    # ─────────────────────────────────────────────
    # HOLD / RELEASE / REFUND / CANCEL
    # ─────────────────────────────────────────────

    def hold(self, db: Session, *, principal: Principal, shipment_id: str) -> str:
        require_role(principal, MANAGER_ROLES, "hold escrow")
        shipment = get_shipment(db, shipment_id, for_update=True)
        escrow = self._live_escrow(db, shipment)
        if escrow.status != EscrowStatus.deposited.value:
            raise precondition(f"Escrow for shipment {shipment.id} is already {escrow.status}.")
        self._assert_no_settlement_in_flight(db, shipment)

        tx_hash = self.ledger.hold_payment(sender=principal.wallet_address, shipment_id=shipment.chain_id_hex)
        self.tracker.record(db, tx_hash=tx_hash, kind=LedgerTxKind.hold, sender=principal.wallet_address,
                            shipment_id=shipment.id)
        self.audit.write(
            db, entity="shipment", entity_id=shipment.id, actor_participant_id=principal.participant_id,
            action=AuditAction.ESCROW_HOLD_SUBMITTED, tx_hash=tx_hash, details={},
        )
        db.commit()
        return tx_hash

    def release(self, db: Session, *, sender: str, shipment: ShipmentRecord,
                actor_participant_id: Optional[str]) -> str:
        """Submit releasePayment. Not committed; the caller owns the unit of work."""
        escrow = db.get(EscrowRecord, shipment.chain_id_hex)
        if escrow is None:
            raise precondition(f"Shipment {shipment.id} has no escrow to release.")
        if escrow.status == EscrowStatus.released.value:
            raise precondition(f"Escrow for shipment {shipment.id} was already released.")
        if escrow.status not in LIVE_ESCROW:
            raise precondition(f"Escrow for shipment {shipment.id} is {escrow.status} and cannot be released.")
        self._assert_no_settlement_in_flight(db, shipment)

        tx_hash = self.ledger.release_payment(sender=sender, shipment_id=shipment.chain_id_hex)
        escrow.settle_tx = tx_hash
        self.tracker.record(db, tx_hash=tx_hash, kind=LedgerTxKind.release, sender=sender, shipment_id=shipment.id)
        self.audit.write(
            db, entity="shipment", entity_id=shipment.id, actor_participant_id=actor_participant_id,
            action=AuditAction.ESCROW_RELEASE_SUBMITTED, tx_hash=tx_hash, details={"amount": escrow.amount},
        )
        return tx_hash

    def refund(self, db: Session, *, principal: Principal, shipment_id: str) -> str:
        require_role(principal, MANAGER_ROLES, "refund escrow")
        shipment = get_shipment(db, shipment_id, for_update=True)
        escrow = self._live_escrow(db, shipment)
        self._assert_no_settlement_in_flight(db, shipment)

        tx_hash = self.ledger.refund_payment(sender=principal.wallet_address, shipment_id=shipment.chain_id_hex)
        escrow.settle_tx = tx_hash
        self.tracker.record(db, tx_hash=tx_hash, kind=LedgerTxKind.refund, sender=principal.wallet_address,
                            shipment_id=shipment.id)
        self.audit.write(
            db, entity="shipment", entity_id=shipment.id, actor_participant_id=principal.participant_id,
            action=AuditAction.ESCROW_REFUND_SUBMITTED, tx_hash=tx_hash, details={"amount": escrow.amount},
        )
        db.commit()
        return tx_hash

    def cancel_by_payer(self, db: Session, *, principal: Principal, shipment: ShipmentRecord) -> str:
        """Payer pulls the deposit back inside the cancellation window. Not committed."""
        escrow = db.get(EscrowRecord, shipment.chain_id_hex)
        if escrow is None or escrow.status != EscrowStatus.deposited.value:
            raise precondition(f"Shipment {shipment.id} has no cancellable deposit.")
        if not same_address(principal.wallet_address, escrow.payer):
            raise wrong_actor("Only the payer may cancel the escrow.", shipment_id=shipment.id)

        elapsed = (self._clock() - as_utc(escrow.deposited_at)).total_seconds()
        if elapsed > self.cancellation_window_seconds:
            raise precondition(
                f"Cancellation window of {self.cancellation_window_seconds}s has passed "
                f"({int(elapsed)}s since deposit)."
            )
        self._assert_no_settlement_in_flight(db, shipment)

        tx_hash = self.ledger.cancel_by_payer(sender=principal.wallet_address, shipment_id=shipment.chain_id_hex)
        escrow.settle_tx = tx_hash
        self.tracker.record(db, tx_hash=tx_hash, kind=LedgerTxKind.cancel_by_payer,
                            sender=principal.wallet_address, shipment_id=shipment.id)
        self.audit.write(
            db, entity="shipment", entity_id=shipment.id, actor_participant_id=principal.participant_id,
            action=AuditAction.ESCROW_CANCEL_SUBMITTED, tx_hash=tx_hash, details={"elapsedSeconds": int(elapsed)},
        )
        return tx_hash

    # ─────────────────────────────────────────────
    # CONFIRMATIONS / EVENTS
    # ─────────────────────────────────────────────

    def _mark(self, db: Session, chain_id_hex: str, status: EscrowStatus, *, tx_hash: str,
              at: Optional[datetime] = None) -> Optional[EscrowRecord]:
        escrow = db.get(EscrowRecord, chain_id_hex)
        if escrow is None:
            logger.warning("[escrow] %s for unknown escrow %s", status.value, chain_id_hex)
            return None
        escrow.status = status.value
        if status != EscrowStatus.held:
            escrow.settle_tx = tx_hash
            escrow.settled_at = at or _now()
        return escrow

    def _settled_event(self, status: EscrowStatus):
        def handler(db: Session, ev: LedgerEvent) -> None:
            self._mark(db, ev.args["shipmentId"].lower(), status, tx_hash=ev.tx_hash,
                       at=from_block_time(ev.block_timestamp))
        return handler

    def _on_release_confirmed(self, db: Session, tx: LedgerTransaction, receipt) -> None:
        shipment = db.get(ShipmentRecord, tx.shipment_id)
        if shipment is None:
            return
        self._mark(db, shipment.chain_id_hex, EscrowStatus.released, tx_hash=tx.tx_hash)
        if status_of(shipment) == ShipmentStatus.CLAIMED:
            self.queue.enqueue(db, shipment=shipment, current_state=LedgerState.VERIFIED, target_state=LedgerState.PAID)

    def _on_cancel_confirmed(self, db: Session, tx: LedgerTransaction, receipt) -> None:
        shipment = db.get(ShipmentRecord, tx.shipment_id)
        if shipment is None:
            return
        self._mark(db, shipment.chain_id_hex, EscrowStatus.refunded, tx_hash=tx.tx_hash)
        if status_of(shipment) == ShipmentStatus.CANCELLED:
            try:
                onchain = self.ledger.get_shipment(shipment.chain_id_hex)
            except NetworkTimeout as exc:
                # the worker re-reads the ledger before signing
                logger.warning("[escrow] could not read ledger state for %s: %s", shipment.id, exc)
                onchain = None
            current = onchain.state if onchain is not None else int(LedgerState.ASSIGNED)
            if current != LedgerState.CANCELLED:
                self.queue.enqueue(db, shipment=shipment, current_state=current, target_state=LedgerState.CANCELLED)

    def sync_from_ledger(self, db: Session, shipment: ShipmentRecord) -> Optional[EscrowRecord]:
        onchain = self.ledger.get_escrow(shipment.chain_id_hex)
        if onchain is None:
            return None
        escrow = db.get(EscrowRecord, shipment.chain_id_hex)
        if escrow is None:
            escrow = EscrowRecord(chain_id_hex=shipment.chain_id_hex, shipment_id=shipment.id)
            db.add(escrow)
        escrow.token = onchain.token
        escrow.amount = str(onchain.amount)
        escrow.payer = onchain.payer
        escrow.farmer = onchain.farmer
        escrow.transporter = onchain.transporter
        escrow.farmer_bps = onchain.farmer_bps
        escrow.transporter_bps = onchain.transporter_bps
        escrow.platform_bps = onchain.platform_bps
        escrow.status = STATUS_BY_LEDGER[LedgerEscrowStatus(onchain.status)].value
        escrow.deposited_at = from_block_time(onchain.created_at)
        if escrow.status not in LIVE_ESCROW and escrow.settled_at is None:
            escrow.settled_at = from_block_time(onchain.updated_at)
        db.flush()
        return escrow
