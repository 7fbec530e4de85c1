from app.schemas.shipments import ShipmentCreate, ShipmentOut, TransitionRequest, NominateCarrierRequest, TimelineEntryOut
from app.schemas.escrow import DepositRequest, DepositResponse, EscrowOut, TxResponse
from app.schemas.disputes import DisputeRaiseRequest, EvidenceRequest, ResolveRequest, DisputeOut
from app.schemas.oracle import (
    WeighmentRequest,
    WeighmentProposalRequest,
    ProposalApproveRequest,
    ProposalRejectRequest,
    WeighmentProposalOut,
    ProofRequest,
    KycRequest,
    PendingUpdateOut,
)
from app.schemas.participants import ParticipantCreate, ParticipantOut
