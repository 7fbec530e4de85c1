# app/services/payload_codec.py
"""
Attestation payload encoding.

Each payload hash is keccak256 over the ABI encoding (32-byte words, fixed
order) of its fields. Free-text fields are keccak-hashed first and folded in
as bytes32. Field order and widths must match the contracts exactly or the
ledger recovers a different signer.
"""
from __future__ import annotations

import re
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, List, Tuple

from eth_abi import encode
from eth_utils import keccak, to_bytes

from app.chain.client import normalize_address

UINT256_MAX = 2**256 - 1
UINT8_MAX = 2**8 - 1
# bytes32 string encoding keeps a trailing zero byte
MAX_SHIPMENT_ID_BYTES = 31

_CANONICAL_ID = re.compile(r"^0x[0-9a-fA-F]{64}$")


class PayloadKind(str, Enum):
    WEIGHMENT = "weighment"
    PROOF = "proof"
    STATE_UPDATE = "state_update"
    KYC = "kyc"
    EVIDENCE = "evidence"


def canonical_shipment_id(shipment_id: str) -> str:
    """
    32-byte ledger id for an off-chain shipment id.

    Already-canonical ids pass through (lower-cased). Anything else is its
    UTF-8 bytes zero-padded on the right, the bytes32 string encoding the
    shipment contract expects. Ids over 31 bytes are refused rather than cut,
    so two ids can never share a ledger id.
    """
    if not shipment_id:
        raise ValueError("shipment id must not be empty")
    if _CANONICAL_ID.match(shipment_id):
        return shipment_id.lower()
    raw = shipment_id.encode("utf-8")
    if len(raw) > MAX_SHIPMENT_ID_BYTES:
        raise ValueError(
            f"shipment id is {len(raw)} bytes; at most {MAX_SHIPMENT_ID_BYTES} fit a ledger id"
        )
    return "0x" + raw.ljust(32, b"\x00").hex()


def _bytes32(value: str) -> bytes:
    raw = to_bytes(hexstr=value)
    if len(raw) != 32:
        raise ValueError(f"expected bytes32, got {len(raw)} bytes")
    return raw


def _uint(name: str, value: int, bound: int = UINT256_MAX) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValueError(f"{name} must be an integer")
    if value < 0 or value > bound:
        raise ValueError(f"{name} out of range: {value}")
    return value


def text_hash(value: str) -> bytes:
    return keccak(text=value)


def _digest(types: List[str], values: List[Any]) -> bytes:
    return keccak(encode(types, values))


# ─────────────────────────────────────────────
# PAYLOAD HASHES
# ─────────────────────────────────────────────

def weighment_hash(
    *, chain_id: int, shipment_id: str, weigh_kg: int, weigh_hash: str, timestamp: int, nonce: int
) -> bytes:
    return _digest(
        ["uint256", "bytes32", "uint256", "bytes32", "uint256", "uint256"],
        [
            _uint("chain_id", chain_id),
            _bytes32(shipment_id),
            _uint("weigh_kg", weigh_kg),
            text_hash(weigh_hash),
            _uint("timestamp", timestamp),
            _uint("nonce", nonce),
        ],
    )


def proof_hash(
    *, chain_id: int, shipment_id: str, proof_type: int, proof_hash: str, timestamp: int, nonce: int
) -> bytes:
    return _digest(
        ["uint256", "bytes32", "uint8", "bytes32", "uint256", "uint256"],
        [
            _uint("chain_id", chain_id),
            _bytes32(shipment_id),
            _uint("proof_type", proof_type, UINT8_MAX),
            text_hash(proof_hash),
            _uint("timestamp", timestamp),
            _uint("nonce", nonce),
        ],
    )


def state_update_hash(*, chain_id: int, shipment_id: str, new_state: int, timestamp: int, nonce: int) -> bytes:
    return _digest(
        ["uint256", "bytes32", "uint8", "uint256", "uint256"],
        [
            _uint("chain_id", chain_id),
            _bytes32(shipment_id),
            _uint("new_state", new_state, UINT8_MAX),
            _uint("timestamp", timestamp),
            _uint("nonce", nonce),
        ],
    )


def kyc_hash(
    *, chain_id: int, participant: str, role: int, metadata_hash: str, timestamp: int, nonce: int
) -> bytes:
    return _digest(
        ["uint256", "address", "uint8", "bytes32", "uint256", "uint256"],
        [
            _uint("chain_id", chain_id),
            normalize_address(participant),
            _uint("role", role, UINT8_MAX),
            text_hash(metadata_hash),
            _uint("timestamp", timestamp),
            _uint("nonce", nonce),
        ],
    )


def evidence_hash(*, chain_id: int, dispute_id: int, evidence_hash: str, timestamp: int, nonce: int) -> bytes:
    return _digest(
        ["uint256", "uint256", "bytes32", "uint256", "uint256"],
        [
            _uint("chain_id", chain_id),
            _uint("dispute_id", dispute_id),
            text_hash(evidence_hash),
            _uint("timestamp", timestamp),
            _uint("nonce", nonce),
        ],
    )


# subject field name and typed field names, in wire order
_LAYOUT: Dict[PayloadKind, Tuple[str, Tuple[str, ...]]] = {
    PayloadKind.WEIGHMENT: ("shipment_id", ("weigh_kg", "weigh_hash")),
    PayloadKind.PROOF: ("shipment_id", ("proof_type", "proof_hash")),
    PayloadKind.STATE_UPDATE: ("shipment_id", ("new_state",)),
    PayloadKind.KYC: ("participant", ("role", "metadata_hash")),
    PayloadKind.EVIDENCE: ("dispute_id", ("evidence_hash",)),
}

_HASHERS = {
    PayloadKind.WEIGHMENT: weighment_hash,
    PayloadKind.PROOF: proof_hash,
    PayloadKind.STATE_UPDATE: state_update_hash,
    PayloadKind.KYC: kyc_hash,
    PayloadKind.EVIDENCE: evidence_hash,
}


@dataclass(frozen=True)
class AttestationPayload:
    kind: PayloadKind
    chain_id: int
    subject: Any
    fields: Tuple[Tuple[str, Any], ...]
    timestamp: int
    nonce: int

    @classmethod
    def build(cls, kind: PayloadKind, *, chain_id: int, subject: Any, timestamp: int, nonce: int,
              **fields: Any) -> "AttestationPayload":
        _, names = _LAYOUT[kind]
        missing = [n for n in names if n not in fields]
        extra = [n for n in fields if n not in names]
        if missing or extra:
            raise ValueError(f"{kind.value} payload fields mismatch: missing={missing} unexpected={extra}")
        return cls(
            kind=kind,
            chain_id=chain_id,
            subject=subject,
            fields=tuple((n, fields[n]) for n in names),
            timestamp=timestamp,
            nonce=nonce,
        )

    def field(self, name: str) -> Any:
        return dict(self.fields)[name]

    def digest(self) -> bytes:
        subject_name, _ = _LAYOUT[self.kind]
        kwargs = dict(self.fields)
        kwargs[subject_name] = self.subject
        return _HASHERS[self.kind](
            chain_id=self.chain_id, timestamp=self.timestamp, nonce=self.nonce, **kwargs
        )

    def digest_hex(self) -> str:
        return "0x" + self.digest().hex()
