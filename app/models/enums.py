#app/models/enums.py
from __future__ import annotations
from enum import Enum, IntEnum


class ParticipantRole(str, Enum):
    FARMER = "FARMER"
    TRANSPORTER = "TRANSPORTER"
    INDUSTRY = "INDUSTRY"
    ORACLE = "ORACLE"
    RESOLVER = "RESOLVER"
    GOVERNMENT = "GOVERNMENT"
    ADMIN = "ADMIN"


class KycRole(IntEnum):
    # Registration contract Role enum
    FARMER = 1
    TRANSPORTER = 2
    INDUSTRY = 3
    GOVERNMENT = 4
    ADMIN = 5
    ORACLE = 6


KYC_ROLE_BY_PARTICIPANT_ROLE = {
    ParticipantRole.FARMER: KycRole.FARMER,
    ParticipantRole.TRANSPORTER: KycRole.TRANSPORTER,
    ParticipantRole.INDUSTRY: KycRole.INDUSTRY,
    ParticipantRole.GOVERNMENT: KycRole.GOVERNMENT,
    ParticipantRole.ADMIN: KycRole.ADMIN,
    ParticipantRole.ORACLE: KycRole.ORACLE,
}


class EscrowStatus(str, Enum):
    deposited = "Deposited"
    held = "Held"
    released = "Released"
    refunded = "Refunded"


class LedgerEscrowStatus(IntEnum):
    # EscrowPayment.getEscrow().status
    NONE = 0
    DEPOSITED = 1
    HELD = 2
    RELEASED = 3
    REFUNDED = 4


class DisputeStatus(str, Enum):
    open = "Open"
    resolved = "Resolved"
    rejected = "Rejected"


class LedgerDisputeStatus(IntEnum):
    NONE = 0
    OPEN = 1
    RESOLVED = 2
    REJECTED = 3


class Resolution(IntEnum):
    NONE = 0
    REFUND_PAYER = 1
    RELEASE_FUNDS = 2


class WeighmentProposalStatus(str, Enum):
    pending = "pending"
    approved = "approved"
    rejected = "rejected"


class PendingUpdateStatus(str, Enum):
    pending = "pending"
    processing = "processing"
    completed = "completed"
    failed = "failed"


class LedgerTxStatus(str, Enum):
    submitted = "submitted"
    confirmed = "confirmed"
    failed = "failed"


class LedgerTxKind(str, Enum):
    create_shipment = "create_shipment"
    set_industry = "set_industry"
    assign_transporter = "assign_transporter"
    state_update = "state_update"
    approve = "approve"
    deposit = "deposit"
    hold = "hold"
    release = "release"
    refund = "refund"
    cancel_by_payer = "cancel_by_payer"
    raise_dispute = "raise_dispute"
    add_evidence = "add_evidence"
    resolve_dispute = "resolve_dispute"
    weighment = "weighment"
    weighment_proposal = "weighment_proposal"
    proof = "proof"
    kyc = "kyc"


class ProofType(IntEnum):
    PICKUP = 0
    DELIVERY = 1
    QUALITY = 2
