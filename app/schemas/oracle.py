# app/schemas/oracle.py
from __future__ import annotations

from datetime import datetime
from typing import Literal, Optional

from pydantic import BaseModel, ConfigDict, Field

from app.models.enums import ProofType


class WeighmentRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    shipmentId: str
    weightKg: int = Field(..., gt=0)
    weighHash: str = Field(..., min_length=1)
    timestamp: Optional[int] = Field(default=None, description="unix seconds of the weighbridge reading")


class WeighmentProposalRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    shipmentId: str
    weightKg: int = Field(..., gt=0)


class ProposalApproveRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    weighHash: str = Field(..., min_length=1)
    weightKg: Optional[int] = Field(default=None, gt=0, description="attested weight when it differs from the proposal")
    timestamp: Optional[int] = None


class ProposalRejectRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    reason: Optional[str] = None


class WeighmentProposalOut(BaseModel):
    id: str
    shipmentId: str
    proposedWeightKg: int
    proposerId: str
    proposerWallet: str
    status: str
    confirmed: bool
    proposeTx: str
    reviewedBy: Optional[str] = None
    reviewNote: Optional[str] = None
    weighmentTx: Optional[str] = None
    createdAt: datetime


class ProofRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    shipmentId: str
    proofType: Literal["PICKUP", "DELIVERY", "QUALITY"]
    proofHash: str = Field(..., min_length=1)

    def proof_type_enum(self) -> ProofType:
        return ProofType[self.proofType]


class KycRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    participantId: str
    metadataHash: str = Field(..., min_length=1)


class PendingUpdateOut(BaseModel):
    id: str
    shipmentId: str
    currentState: str
    targetState: str
    status: str
    attemptCount: int
    lastError: Optional[str] = None
    nextAttemptAt: Optional[datetime] = None
    processingStartedAt: Optional[datetime] = None
    txHash: Optional[str] = None
