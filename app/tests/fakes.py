"""
In-memory ledger with the contract rules the coordinator relies on.

Every accepted transaction is mined into its own block right away unless the
ledger is stalled, in which case it waits in a mempool until resume().
"""
from __future__ import annotations

import itertools
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple

from app.chain.client import (
    LedgerClient,
    LedgerEvent,
    OnChainEscrow,
    OnChainShipment,
    TxReceipt,
    normalize_address,
    same_address,
)
from app.core.errors import LedgerRejected, NetworkTimeout, SignatureError
from app.core.shipment_states import LedgerState
from app.models.enums import LedgerDisputeStatus, LedgerEscrowStatus, Resolution
from app.services import payload_codec
from app.services.signers import recover_signer

ZERO_ADDRESS = "0x0000000000000000000000000000000000000000"
ESCROW_CONTRACT = "0x" + "00" * 18 + "e5c4"

L = LedgerState

LEDGER_EDGES: Dict[LedgerState, Tuple[LedgerState, ...]] = {
    L.OPEN: (L.ASSIGNED, L.DISPUTED, L.CANCELLED),
    L.ASSIGNED: (L.IN_TRANSIT, L.DISPUTED, L.CANCELLED),
    L.IN_TRANSIT: (L.DELIVERED, L.DISPUTED, L.CANCELLED),
    L.DELIVERED: (L.VERIFIED, L.DISPUTED, L.CANCELLED),
    L.VERIFIED: (L.PAID, L.CANCELLED),
    L.PAID: (),
    L.DISPUTED: (),
    L.CANCELLED: (),
}


class Revert(Exception):
    pass


@dataclass
class _Shipment:
    metadata_hash: str
    farmer: str
    state: LedgerState = L.OPEN
    industry: str = ZERO_ADDRESS
    transporter: str = ZERO_ADDRESS
    created_at: int = 0
    updated_at: int = 0


@dataclass
class _Escrow:
    token: str
    amount: int
    payer: str
    farmer: str
    transporter: str
    farmer_bps: int
    transporter_bps: int
    platform_bps: int
    status: LedgerEscrowStatus
    created_at: int
    updated_at: int


@dataclass
class _Dispute:
    shipment_id: str
    raised_by: str
    status: LedgerDisputeStatus = LedgerDisputeStatus.OPEN
    evidence: List[str] = field(default_factory=list)


Emit = List[Tuple[str, Dict[str, Any]]]


class FakeLedger(LedgerClient):
    def __init__(
        self,
        *,
        chain_id: int = 31337,
        oracles: Iterable[str] = (),
        managers: Iterable[str] = (),
        cancellation_period: int = 3600,
    ):
        self._chain_id = chain_id
        self.oracles = {a.lower() for a in oracles}
        self.managers = {a.lower() for a in managers}
        self.cancellation_period = cancellation_period

        self.block = 0
        self.shipments: Dict[str, _Shipment] = {}
        self.escrows: Dict[str, _Escrow] = {}
        self.disputes: Dict[int, _Dispute] = {}
        self.allowances: Dict[Tuple[str, str, str], int] = {}
        self.kyc: Dict[str, bool] = {}
        self.used_nonces: set = set()
        self.proposals: List[Tuple[str, int, str]] = []  # (shipment, kg, proposer)

        self.events: List[LedgerEvent] = []
        self.receipts: Dict[str, TxReceipt] = {}
        self.submitted: List[Tuple[str, str]] = []  # (function, tx hash)

        self.stalled = False
        self.offline = False
        self._mempool: List[Tuple[str, Callable[[], Emit]]] = []
        self._revert_next: Optional[str] = None
        self._reject_next: Optional[str] = None
        self._hashes = itertools.count(1)
        self._dispute_ids = itertools.count(1)

    # ─────────── test controls ───────────

    def stall(self) -> None:
        self.stalled = True

    def resume(self) -> None:
        self.stalled = False
        pending, self._mempool = self._mempool, []
        for tx_hash, fn in pending:
            self._mine(tx_hash, fn)

    def revert_next(self, reason: str) -> None:
        """Next transaction is accepted but reverts when mined."""
        self._revert_next = reason

    def reject_next(self, reason: str) -> None:
        """Next submission is refused by the node."""
        self._reject_next = reason

    def set_allowance(self, *, token: str, owner: str, amount: int) -> None:
        self.allowances[(token.lower(), owner.lower(), ESCROW_CONTRACT.lower())] = amount

    def force_state(self, shipment_id: str, state: LedgerState) -> None:
        """Move a shipment on the ledger without emitting anything."""
        self.shipments[shipment_id.lower()].state = state

    def calls(self, name: Optional[str] = None) -> List[str]:
        return [fn for fn, _ in self.submitted if name is None or fn == name]

    # ─────────── plumbing ───────────

    def _online(self) -> None:
        if self.offline:
            raise NetworkTimeout("ledger node unreachable")

    def _submit(self, name: str, fn: Callable[[], Emit]) -> str:
        self._online()
        if self._reject_next is not None:
            reason, self._reject_next = self._reject_next, None
            raise LedgerRejected(f"node rejected transaction: {reason}")

        tx_hash = "0x%064x" % next(self._hashes)
        self.submitted.append((name, tx_hash))
        if self._revert_next is not None:
            reason, self._revert_next = self._revert_next, None

            def fn() -> Emit:
                raise Revert(reason)

        if self.stalled:
            self._mempool.append((tx_hash, fn))
        else:
            self._mine(tx_hash, fn)
        return tx_hash

    def _mine(self, tx_hash: str, fn: Callable[[], Emit]) -> None:
        self.block += 1
        now = int(time.time())
        try:
            emitted = fn()
        except Revert as exc:
            self.receipts[tx_hash] = TxReceipt(
                tx_hash=tx_hash, succeeded=False, block_number=self.block, revert_reason=str(exc)
            )
            return

        events = [
            LedgerEvent(
                name=name,
                args=args,
                tx_hash=tx_hash,
                log_index=i,
                block_number=self.block,
                block_timestamp=now,
            )
            for i, (name, args) in enumerate(emitted)
        ]
        self.events.extend(events)
        self.receipts[tx_hash] = TxReceipt(
            tx_hash=tx_hash, succeeded=True, block_number=self.block, events=events
        )

    def _shipment(self, shipment_id: str) -> _Shipment:
        s = self.shipments.get(shipment_id.lower())
        if s is None:
            raise Revert("shipment does not exist")
        return s

    def _check_attestation(self, digest: bytes, signature: str, nonce: int) -> str:
        try:
            signer = recover_signer(digest, signature)
        except SignatureError:
            raise Revert("invalid oracle signature")
        if signer.lower() not in self.oracles:
            raise Revert("signer is not an authorised oracle")
        if (signer.lower(), nonce) in self.used_nonces:
            raise Revert("nonce already used")
        self.used_nonces.add((signer.lower(), nonce))
        return signer

    def _move(self, sid: str, shipment: _Shipment, new_state: LedgerState) -> Emit:
        if new_state not in LEDGER_EDGES[shipment.state]:
            raise Revert(f"invalid state transition {shipment.state.name} -> {new_state.name}")
        shipment.state = new_state
        shipment.updated_at = int(time.time())
        return [("ShipmentStateChanged", {"shipmentId": sid, "newState": int(new_state), "timestamp": shipment.updated_at})]

    # ─────────── LedgerClient ───────────

    @property
    def chain_id(self) -> int:
        return self._chain_id

    @property
    def escrow_address(self) -> str:
        return normalize_address(ESCROW_CONTRACT)

    def create_shipment(self, *, sender, shipment_id, metadata_hash):
        sid = shipment_id.lower()
        sender = normalize_address(sender)

        def run() -> Emit:
            if sid in self.shipments:
                raise Revert("shipment already exists")
            now = int(time.time())
            self.shipments[sid] = _Shipment(metadata_hash=metadata_hash, farmer=sender, created_at=now, updated_at=now)
            return [("ShipmentCreated", {"shipmentId": sid, "creator": sender})]

        return self._submit("createShipment", run)

    def set_industry(self, *, sender, shipment_id, industry):
        sid = shipment_id.lower()
        industry = normalize_address(industry)

        def run() -> Emit:
            s = self._shipment(sid)
            if s.state != L.OPEN or s.industry != ZERO_ADDRESS:
                raise Revert("industry already set")
            s.industry = industry
            return []

        return self._submit("setIndustry", run)

    def assign_transporter(self, *, sender, shipment_id, transporter):
        sid = shipment_id.lower()
        sender = normalize_address(sender)
        transporter = normalize_address(transporter)

        def run() -> Emit:
            s = self._shipment(sid)
            if not (same_address(sender, s.farmer) or same_address(sender, s.industry)):
                raise Revert("caller is not a trading party")
            if s.industry == ZERO_ADDRESS:
                raise Revert("industry not set")
            emitted = self._move(sid, s, L.ASSIGNED)
            s.transporter = transporter
            return [("TransporterAssigned", {
                "shipmentId": sid, "transporter": transporter, "assignedBy": sender, "timestamp": s.updated_at,
            })] + emitted

        return self._submit("assignTransporter", run)

    def update_shipment_state(self, *, sender, shipment_id, new_state, timestamp, nonce, signature):
        sid = shipment_id.lower()
        digest = payload_codec.state_update_hash(
            chain_id=self._chain_id, shipment_id=sid, new_state=int(new_state), timestamp=int(timestamp), nonce=int(nonce)
        )

        def run() -> Emit:
            s = self._shipment(sid)
            self._check_attestation(digest, signature, int(nonce))
            return self._move(sid, s, LedgerState(int(new_state)))

        return self._submit("updateShipmentState", run)

    def propose_weighment(self, *, sender, shipment_id, weight_kg):
        sid = shipment_id.lower()
        sender = normalize_address(sender)

        def run() -> Emit:
            s = self._shipment(sid)
            if not same_address(sender, s.transporter):
                raise Revert("caller is not the assigned transporter")
            if int(weight_kg) <= 0:
                raise Revert("weight must be positive")
            self.proposals.append((sid, int(weight_kg), sender))
            return []

        return self._submit("proposeWeighment", run)

    def attach_weighment(self, *, sender, shipment_id, weigh_kg, weigh_hash, timestamp, nonce, signature):
        sid = shipment_id.lower()
        digest = payload_codec.weighment_hash(
            chain_id=self._chain_id, shipment_id=sid, weigh_kg=int(weigh_kg), weigh_hash=weigh_hash,
            timestamp=int(timestamp), nonce=int(nonce),
        )

        def run() -> Emit:
            self._shipment(sid)
            self._check_attestation(digest, signature, int(nonce))
            return []

        return self._submit("attachWeighment", run)

    def attach_proof(self, *, sender, shipment_id, proof_type, proof_hash, timestamp, nonce, signature):
        sid = shipment_id.lower()
        digest = payload_codec.proof_hash(
            chain_id=self._chain_id, shipment_id=sid, proof_type=int(proof_type), proof_hash=proof_hash,
            timestamp=int(timestamp), nonce=int(nonce),
        )

        def run() -> Emit:
            self._shipment(sid)
            self._check_attestation(digest, signature, int(nonce))
            return []

        return self._submit("attachProof", run)

    def get_shipment(self, shipment_id):
        self._online()
        s = self.shipments.get(shipment_id.lower())
        if s is None:
            return None
        return OnChainShipment(
            shipment_id=shipment_id.lower(),
            state=int(s.state),
            farmer=s.farmer,
            industry=s.industry,
            transporter=s.transporter,
            metadata_hash=s.metadata_hash,
            updated_at=s.updated_at,
        )

    # ─────────── escrow / token ───────────

    def allowance(self, *, token, owner, spender):
        self._online()
        return self.allowances.get((token.lower(), owner.lower(), spender.lower()), 0)

    def approve(self, *, sender, token, spender, amount):
        key = (token.lower(), sender.lower(), spender.lower())

        def run() -> Emit:
            self.allowances[key] = int(amount)
            return []

        return self._submit("approve", run)

    def deposit_payment(self, *, sender, shipment_id, token, amount, farmer, transporter,
                        farmer_bps, transporter_bps, platform_bps):
        sid = shipment_id.lower()
        sender = normalize_address(sender)

        def run() -> Emit:
            self._shipment(sid)
            existing = self.escrows.get(sid)
            if existing is not None and existing.status != LedgerEscrowStatus.REFUNDED:
                raise Revert("escrow already exists")
            if farmer_bps + transporter_bps + platform_bps > 10_000:
                raise Revert("invalid splits")
            key = (token.lower(), sender.lower(), ESCROW_CONTRACT.lower())
            if self.allowances.get(key, 0) < int(amount):
                raise Revert("ERC20: insufficient allowance")
            self.allowances[key] -= int(amount)
            now = int(time.time())
            self.escrows[sid] = _Escrow(
                token=normalize_address(token), amount=int(amount), payer=sender,
                farmer=normalize_address(farmer), transporter=normalize_address(transporter),
                farmer_bps=farmer_bps, transporter_bps=transporter_bps, platform_bps=platform_bps,
                status=LedgerEscrowStatus.DEPOSITED, created_at=now, updated_at=now,
            )
            return [("PaymentDeposited", {
                "shipmentId": sid, "payer": sender, "token": normalize_address(token), "amount": int(amount),
                "farmer": normalize_address(farmer), "transporter": normalize_address(transporter),
                "farmerBps": farmer_bps, "transporterBps": transporter_bps, "platformBps": platform_bps,
                "timestamp": now,
            })]

        return self._submit("depositPayment", run)

    def _escrow(self, sid: str) -> _Escrow:
        e = self.escrows.get(sid)
        if e is None:
            raise Revert("no escrow")
        return e

    def _settle(self, sid: str, e: _Escrow, status: LedgerEscrowStatus) -> Emit:
        e.status = status
        e.updated_at = int(time.time())
        if status == LedgerEscrowStatus.RELEASED:
            return [("PaymentReleased", {
                "shipmentId": sid,
                "farmerAmount": e.amount * e.farmer_bps // 10_000,
                "transporterAmount": e.amount * e.transporter_bps // 10_000,
                "platformAmount": e.amount * e.platform_bps // 10_000,
                "timestamp": e.updated_at,
            })]
        return [("PaymentRefunded", {"shipmentId": sid, "amount": e.amount, "timestamp": e.updated_at})]

    def hold_payment(self, *, sender, shipment_id):
        sid = shipment_id.lower()

        def run() -> Emit:
            if sender.lower() not in self.managers:
                raise Revert("caller is not an escrow manager")
            e = self._escrow(sid)
            if e.status != LedgerEscrowStatus.DEPOSITED:
                raise Revert("escrow not deposited")
            e.status = LedgerEscrowStatus.HELD
            e.updated_at = int(time.time())
            return [("PaymentHeld", {"shipmentId": sid, "timestamp": e.updated_at})]

        return self._submit("holdPayment", run)

    def release_payment(self, *, sender, shipment_id):
        sid = shipment_id.lower()

        def run() -> Emit:
            e = self._escrow(sid)
            if sender.lower() in self.managers:
                if e.status not in (LedgerEscrowStatus.DEPOSITED, LedgerEscrowStatus.HELD):
                    raise Revert("escrow not releasable")
            else:
                if e.status != LedgerEscrowStatus.DEPOSITED:
                    raise Revert("escrow not releasable")
                if not (same_address(sender, e.payer) or same_address(sender, e.farmer)):
                    raise Revert("caller may not release")
                if self._shipment(sid).state not in (L.VERIFIED, L.PAID):
                    raise Revert("shipment not verified")
            return self._settle(sid, e, LedgerEscrowStatus.RELEASED)

        return self._submit("releasePayment", run)

    def refund_payment(self, *, sender, shipment_id):
        sid = shipment_id.lower()

        def run() -> Emit:
            if sender.lower() not in self.managers:
                raise Revert("caller is not an escrow manager")
            e = self._escrow(sid)
            if e.status not in (LedgerEscrowStatus.DEPOSITED, LedgerEscrowStatus.HELD):
                raise Revert("escrow not refundable")
            return self._settle(sid, e, LedgerEscrowStatus.REFUNDED)

        return self._submit("refundPayment", run)

    def cancel_by_payer(self, *, sender, shipment_id):
        sid = shipment_id.lower()

        def run() -> Emit:
            e = self._escrow(sid)
            if not same_address(sender, e.payer):
                raise Revert("caller is not the payer")
            if e.status != LedgerEscrowStatus.DEPOSITED:
                raise Revert("escrow not cancellable")
            if int(time.time()) - e.created_at > self.cancellation_period:
                raise Revert("cancellation period over")
            e.status = LedgerEscrowStatus.REFUNDED
            e.updated_at = int(time.time())
            return [("PaymentCancelled", {
                "shipmentId": sid, "payer": e.payer, "amount": e.amount, "timestamp": e.updated_at,
            })]

        return self._submit("cancelByPayer", run)

    def get_escrow(self, shipment_id):
        self._online()
        e = self.escrows.get(shipment_id.lower())
        if e is None:
            return None
        return OnChainEscrow(
            token=e.token, amount=e.amount, payer=e.payer, farmer=e.farmer, transporter=e.transporter,
            farmer_bps=e.farmer_bps, transporter_bps=e.transporter_bps, platform_bps=e.platform_bps,
            status=int(e.status), created_at=e.created_at, updated_at=e.updated_at,
        )

    # ─────────── disputes / registration ───────────

    def raise_dispute(self, *, sender, shipment_id, evidence_hash):
        sid = shipment_id.lower()
        sender = normalize_address(sender)

        def run() -> Emit:
            s = self._shipment(sid)
            if any(d.shipment_id == sid and d.status == LedgerDisputeStatus.OPEN for d in self.disputes.values()):
                raise Revert("dispute already open")
            emitted = self._move(sid, s, L.DISPUTED)
            dispute_id = next(self._dispute_ids)
            self.disputes[dispute_id] = _Dispute(shipment_id=sid, raised_by=sender, evidence=[evidence_hash])
            out: Emit = [("DisputeRaised", {"disputeId": dispute_id, "shipmentId": sid, "raisedBy": sender})]
            out += emitted
            e = self.escrows.get(sid)
            if e is not None and e.status == LedgerEscrowStatus.DEPOSITED:
                e.status = LedgerEscrowStatus.HELD
                out.append(("PaymentHeld", {"shipmentId": sid, "timestamp": s.updated_at}))
            return out

        return self._submit("raiseDispute", run)

    def add_evidence(self, *, sender, dispute_id, evidence_hash, oracle_signature, oracle_signed_hash):
        sender = normalize_address(sender)

        def run() -> Emit:
            d = self.disputes.get(int(dispute_id))
            if d is None or d.status != LedgerDisputeStatus.OPEN:
                raise Revert("dispute not open")
            try:
                signer = recover_signer(bytes.fromhex(oracle_signed_hash[2:]), oracle_signature)
            except SignatureError:
                raise Revert("invalid oracle signature")
            if signer.lower() not in self.oracles:
                raise Revert("signer is not an authorised oracle")
            d.evidence.append(evidence_hash)
            return [("EvidenceAdded", {"disputeId": int(dispute_id), "evidenceHash": evidence_hash, "submittedBy": sender})]

        return self._submit("addEvidence", run)

    def resolve_dispute(self, *, sender, dispute_id, resolution, note):
        sender = normalize_address(sender)

        def run() -> Emit:
            if sender.lower() not in self.managers:
                raise Revert("caller is not a resolver")
            d = self.disputes.get(int(dispute_id))
            if d is None or d.status != LedgerDisputeStatus.OPEN:
                raise Revert("dispute not open")
            resolved = Resolution(int(resolution))
            if resolved == Resolution.NONE:
                raise Revert("resolution required")
            d.status = LedgerDisputeStatus.RESOLVED
            out: Emit = [("DisputeResolved", {"disputeId": int(dispute_id), "resolution": int(resolved), "resolvedBy": sender})]
            e = self.escrows.get(d.shipment_id)
            if e is not None and e.status in (LedgerEscrowStatus.DEPOSITED, LedgerEscrowStatus.HELD):
                target = (
                    LedgerEscrowStatus.REFUNDED if resolved == Resolution.REFUND_PAYER else LedgerEscrowStatus.RELEASED
                )
                out += self._settle(d.shipment_id, e, target)
            return out

        return self._submit("resolveDispute", run)

    def kyc_attestation(self, *, sender, participant, role, metadata_hash, timestamp, nonce, signature):
        digest = payload_codec.kyc_hash(
            chain_id=self._chain_id, participant=participant, role=int(role), metadata_hash=metadata_hash,
            timestamp=int(timestamp), nonce=int(nonce),
        )

        def run() -> Emit:
            self._check_attestation(digest, signature, int(nonce))
            self.kyc[participant.lower()] = True
            return []

        return self._submit("kycAttestation", run)

    # ─────────── blocks / receipts / events ───────────

    def block_number(self) -> int:
        self._online()
        return self.block

    def get_receipt(self, tx_hash):
        self._online()
        return self.receipts.get(tx_hash)

    def wait_for_receipt(self, tx_hash, timeout):
        self._online()
        receipt = self.receipts.get(tx_hash)
        if receipt is None:
            raise NetworkTimeout(f"no receipt for {tx_hash} after {timeout}s", tx_hash=tx_hash)
        return receipt

    def get_events(self, from_block, to_block):
        self._online()
        return [e for e in self.events if from_block <= e.block_number <= to_block]
