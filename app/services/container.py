# app/services/container.py
from __future__ import annotations

import logging
from dataclasses import dataclass

from app.chain.client import LedgerClient
from app.core.config import Settings
from app.services.attestation_service import AttestationService
from app.services.audit_service import AuditService
from app.services.dispute_resolver import DisputeResolver
from app.services.escrow_coordinator import EscrowCoordinator
from app.services.event_projector import EventProjector
from app.services.nonces import nonce_source_for
from app.services.oracle_service import OracleService
from app.services.participant_service import ParticipantService
from app.services.retry_queue import PendingUpdateQueue
from app.services.shipment_state_machine import ShipmentStateMachine
from app.services.signers import LocalKeySigner, RemoteSigner, Signer
from app.services.transaction_tracker import TransactionTracker

logger = logging.getLogger(__name__)


@dataclass
class Services:
    settings: Settings
    ledger: LedgerClient
    audit: AuditService
    attestation: AttestationService
    tracker: TransactionTracker
    projector: EventProjector
    queue: PendingUpdateQueue
    escrow: EscrowCoordinator
    disputes: DisputeResolver
    shipments: ShipmentStateMachine
    oracle: OracleService
    participants: ParticipantService


def build_signer(settings: Settings) -> Signer:
    """Remote signing backend when configured, else a locally held attestor key."""
    if settings.oracle_signer_url:
        if not settings.oracle_signer_address:
            raise RuntimeError("ORACLE_SIGNER_ADDRESS is required with ORACLE_SIGNER_URL")
        return RemoteSigner(
            settings.oracle_signer_url,
            settings.oracle_signer_address,
            timeout=settings.oracle_signer_timeout_seconds,
        )
    if settings.oracle_private_key:
        return LocalKeySigner(settings.oracle_private_key)
    raise RuntimeError("No attestor signer configured (ORACLE_PRIVATE_KEY or ORACLE_SIGNER_URL)")


def build_services(settings: Settings, ledger: LedgerClient, signer: Signer) -> Services:
    audit = AuditService()
    attestation = AttestationService(
        chain_id=ledger.chain_id,
        signer=signer,
        nonce_source=nonce_source_for(settings.nonce_strategy),
        max_skew_seconds=settings.attestation_max_skew_seconds,
    )
    tracker = TransactionTracker(ledger, confirmation_timeout=settings.confirmation_timeout_seconds, audit=audit)
    projector = EventProjector(ledger, confirmations=settings.event_confirmations, audit=audit)
    # receipt events are projected before any confirmation handler runs
    tracker.add_event_sink(projector.apply_events)

    queue = PendingUpdateQueue(
        ledger, attestation, tracker,
        max_attempts=settings.retry_max_attempts,
        backoff_seconds=settings.retry_backoff_seconds,
        processing_lease_seconds=settings.retry_processing_lease_seconds,
        audit=audit,
    )
    escrow = EscrowCoordinator(
        ledger, tracker, queue,
        payment_token=settings.payment_token_address,
        token_decimals=settings.payment_token_decimals,
        cancellation_window_seconds=settings.cancellation_window_seconds,
        audit=audit,
    )
    escrow.register_projections(projector)

    disputes = DisputeResolver(ledger, attestation, tracker, audit=audit)
    disputes.register_projections(projector)

    shipments = ShipmentStateMachine(ledger, attestation, tracker, escrow, disputes, projector, audit=audit)
    oracle = OracleService(ledger, attestation, tracker, nonce_strategy=settings.nonce_strategy, audit=audit)

    logger.info("[container] services wired, attestor=%s chain=%s", signer.address, ledger.chain_id)
    return Services(
        settings=settings,
        ledger=ledger,
        audit=audit,
        attestation=attestation,
        tracker=tracker,
        projector=projector,
        queue=queue,
        escrow=escrow,
        disputes=disputes,
        shipments=shipments,
        oracle=oracle,
        participants=ParticipantService(audit),
    )


def build_default_services(settings: Settings) -> Services:
    from app.chain.web3_client import Web3LedgerClient

    signer = build_signer(settings)
    keys = [settings.oracle_private_key] if settings.oracle_private_key else []
    ledger = Web3LedgerClient(settings, signing_keys=keys)
    return build_services(settings, ledger, signer)
