# app/chain/client.py
"""
Ledger client surface.

Writes return the transaction hash as soon as the node accepts the
transaction; confirmation is a separate step (get_receipt / wait_for_receipt).
Implementations translate reverts into LedgerRejected and transport failures
into NetworkTimeout.
"""
from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from eth_utils import is_address, to_checksum_address

# block * EVENT_SEQ_STRIDE + log_index orders events across the whole chain
EVENT_SEQ_STRIDE = 1_000_000


def normalize_address(value: str) -> str:
    if not value or not is_address(value):
        raise ValueError(f"Invalid address: {value!r}")
    return to_checksum_address(value)


def same_address(a: Optional[str], b: Optional[str]) -> bool:
    if not a or not b:
        return False
    return a.lower() == b.lower()


@dataclass(frozen=True)
class LedgerEvent:
    name: str
    args: Dict[str, Any]
    tx_hash: str
    log_index: int
    block_number: int
    block_timestamp: int

    @property
    def key(self) -> str:
        return f"{self.tx_hash}:{self.log_index}"

    @property
    def sequence(self) -> int:
        return self.block_number * EVENT_SEQ_STRIDE + self.log_index


@dataclass(frozen=True)
class TxReceipt:
    tx_hash: str
    succeeded: bool
    block_number: int
    events: List[LedgerEvent] = field(default_factory=list)
    revert_reason: Optional[str] = None

    def first(self, name: str) -> Optional[LedgerEvent]:
        for ev in self.events:
            if ev.name == name:
                return ev
        return None


@dataclass(frozen=True)
class OnChainShipment:
    shipment_id: str
    state: int
    farmer: str
    industry: str
    transporter: str
    metadata_hash: str
    updated_at: int


@dataclass(frozen=True)
class OnChainEscrow:
    token: str
    amount: int
    payer: str
    farmer: str
    transporter: str
    farmer_bps: int
    transporter_bps: int
    platform_bps: int
    status: int
    created_at: int
    updated_at: int


class LedgerClient(ABC):
    """Consumed contract surface of ShipmentToken, EscrowPayment, DisputeManager and Registration."""

    @property
    @abstractmethod
    def chain_id(self) -> int: ...

    @property
    @abstractmethod
    def escrow_address(self) -> str: ...

    # ─────────── ShipmentToken ───────────

    @abstractmethod
    def create_shipment(self, *, sender: str, shipment_id: str, metadata_hash: str) -> str: ...

    @abstractmethod
    def set_industry(self, *, sender: str, shipment_id: str, industry: str) -> str: ...

    @abstractmethod
    def assign_transporter(self, *, sender: str, shipment_id: str, transporter: str) -> str: ...

    @abstractmethod
    def update_shipment_state(
        self, *, sender: str, shipment_id: str, new_state: int, timestamp: int, nonce: int, signature: str
    ) -> str: ...

    @abstractmethod
    def propose_weighment(self, *, sender: str, shipment_id: str, weight_kg: int) -> str: ...

    @abstractmethod
    def attach_weighment(
        self, *, sender: str, shipment_id: str, weigh_kg: int, weigh_hash: str,
        timestamp: int, nonce: int, signature: str,
    ) -> str: ...

    @abstractmethod
    def attach_proof(
        self, *, sender: str, shipment_id: str, proof_type: int, proof_hash: str,
        timestamp: int, nonce: int, signature: str,
    ) -> str: ...

    @abstractmethod
    def get_shipment(self, shipment_id: str) -> Optional[OnChainShipment]: ...

    # ─────────── EscrowPayment / ERC20 ───────────

    @abstractmethod
    def allowance(self, *, token: str, owner: str, spender: str) -> int: ...

    @abstractmethod
    def approve(self, *, sender: str, token: str, spender: str, amount: int) -> str: ...

    @abstractmethod
    def deposit_payment(
        self, *, sender: str, shipment_id: str, token: str, amount: int, farmer: str, transporter: str,
        farmer_bps: int, transporter_bps: int, platform_bps: int,
    ) -> str: ...

    @abstractmethod
    def hold_payment(self, *, sender: str, shipment_id: str) -> str: ...

    @abstractmethod
    def release_payment(self, *, sender: str, shipment_id: str) -> str: ...

    @abstractmethod
    def refund_payment(self, *, sender: str, shipment_id: str) -> str: ...

    @abstractmethod
    def cancel_by_payer(self, *, sender: str, shipment_id: str) -> str: ...

    @abstractmethod
    def get_escrow(self, shipment_id: str) -> Optional[OnChainEscrow]: ...

    # ─────────── DisputeManager ───────────

    @abstractmethod
    def raise_dispute(self, *, sender: str, shipment_id: str, evidence_hash: str) -> str: ...

    @abstractmethod
    def add_evidence(
        self, *, sender: str, dispute_id: int, evidence_hash: str, oracle_signature: str, oracle_signed_hash: str
    ) -> str: ...

    @abstractmethod
    def resolve_dispute(self, *, sender: str, dispute_id: int, resolution: int, note: str) -> str: ...

    # ─────────── Registration ───────────

    @abstractmethod
    def kyc_attestation(
        self, *, sender: str, participant: str, role: int, metadata_hash: str,
        timestamp: int, nonce: int, signature: str,
    ) -> str: ...

    # ─────────── Blocks / receipts / events ───────────

    @abstractmethod
    def block_number(self) -> int: ...

    @abstractmethod
    def get_receipt(self, tx_hash: str) -> Optional[TxReceipt]:
        """Receipt if mined, None while pending. Never blocks."""

    @abstractmethod
    def wait_for_receipt(self, tx_hash: str, timeout: float) -> TxReceipt:
        """Blocks up to `timeout` seconds, then raises NetworkTimeout."""

    @abstractmethod
    def get_events(self, from_block: int, to_block: int) -> List[LedgerEvent]:
        """Projected events in [from_block, to_block], ordered by (block, log index)."""
