# app/services/attestation_service.py
from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Any, Callable, Optional, Set, Tuple

from app.core.errors import SignatureError, precondition
from app.services.nonces import NonceSource
from app.services.payload_codec import AttestationPayload, PayloadKind
from app.services.signers import Signer, recover_signer

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SignedAttestation:
    payload: AttestationPayload
    digest: str
    signature: str
    signer: str


class AttestationService:
    """
    Builds attestation payloads, has the injected signer sign them and checks
    the signature recovers to that signer before anything is submitted.

    The service does not care how the signer holds its key.
    """

    def __init__(
        self,
        *,
        chain_id: int,
        signer: Signer,
        nonce_source: NonceSource,
        max_skew_seconds: int,
        clock: Callable[[], float] = time.time,
    ):
        self.chain_id = chain_id
        self.signer = signer
        self.nonce_source = nonce_source
        self.max_skew_seconds = max_skew_seconds
        self._clock = clock
        self._issued: Set[Tuple[str, int]] = set()

    @property
    def signer_address(self) -> str:
        return self.signer.address

    def _nonce_for(self, subject: Any) -> int:
        key = str(subject).lower()
        while True:
            nonce = self.nonce_source.next(self.signer.address)
            if (key, nonce) not in self._issued:
                self._issued.add((key, nonce))
                return nonce

    def _check_timestamp(self, timestamp: int) -> None:
        now = int(self._clock())
        if abs(now - timestamp) > self.max_skew_seconds:
            raise precondition(
                f"attestation timestamp {timestamp} is outside the accepted skew of "
                f"{self.max_skew_seconds}s around {now}"
            )

    def build(self, kind: PayloadKind, *, subject: Any, timestamp: Optional[int] = None, **fields: Any) -> AttestationPayload:
        ts = int(self._clock()) if timestamp is None else int(timestamp)
        self._check_timestamp(ts)
        return AttestationPayload.build(
            kind,
            chain_id=self.chain_id,
            subject=subject,
            timestamp=ts,
            nonce=self._nonce_for(subject),
            **fields,
        )

    def sign(self, payload: AttestationPayload) -> SignedAttestation:
        digest = payload.digest()
        signature = self.signer.sign(digest)

        recovered = recover_signer(digest, signature)
        if recovered.lower() != self.signer.address.lower():
            logger.error(
                "[attestation] %s signature recovered to %s, expected %s",
                payload.kind.value, recovered, self.signer.address,
            )
            raise SignatureError(
                f"{payload.kind.value} signature recovers to {recovered}, not attestor {self.signer.address}"
            )

        return SignedAttestation(
            payload=payload,
            digest="0x" + digest.hex(),
            signature=signature,
            signer=self.signer.address,
        )

    # ─────────────────────────────────────────────
    # PAYLOAD SHORTCUTS
    # ─────────────────────────────────────────────

    def state_update(self, shipment_id: str, new_state: int) -> SignedAttestation:
        return self.sign(self.build(PayloadKind.STATE_UPDATE, subject=shipment_id, new_state=int(new_state)))

    def weighment(self, shipment_id: str, weigh_kg: int, weigh_hash: str, timestamp: Optional[int] = None) -> SignedAttestation:
        return self.sign(self.build(
            PayloadKind.WEIGHMENT, subject=shipment_id, timestamp=timestamp,
            weigh_kg=int(weigh_kg), weigh_hash=weigh_hash,
        ))

    def proof(self, shipment_id: str, proof_type: int, proof_hash: str) -> SignedAttestation:
        return self.sign(self.build(
            PayloadKind.PROOF, subject=shipment_id, proof_type=int(proof_type), proof_hash=proof_hash,
        ))

    def kyc(self, participant: str, role: int, metadata_hash: str) -> SignedAttestation:
        return self.sign(self.build(
            PayloadKind.KYC, subject=participant, role=int(role), metadata_hash=metadata_hash,
        ))

    def evidence(self, dispute_id: int, evidence_hash: str) -> SignedAttestation:
        return self.sign(self.build(PayloadKind.EVIDENCE, subject=int(dispute_id), evidence_hash=evidence_hash))
