# app/schemas/disputes.py
from __future__ import annotations

from datetime import datetime
from typing import List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field

from app.models.enums import Resolution


class DisputeRaiseRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    shipmentId: str = Field(..., min_length=1)
    evidenceHash: str = Field(..., min_length=1)


class EvidenceRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    evidenceHash: str = Field(..., min_length=1)


class ResolveRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    resolution: Literal["REFUND_PAYER", "RELEASE_FUNDS"]
    note: str = Field(default="", max_length=2000)

    def resolution_enum(self) -> Resolution:
        return Resolution[self.resolution]


class EvidenceOut(BaseModel):
    submitterId: str
    evidenceHash: str
    timestamp: datetime
    txHash: Optional[str] = None


class DisputeOut(BaseModel):
    disputeId: int
    shipmentId: str
    raisedBy: str
    status: str
    priorStatus: str
    resolution: Optional[str] = None
    resolutionNote: Optional[str] = None
    resolvedBy: Optional[str] = None
    evidence: List[EvidenceOut] = Field(default_factory=list)
