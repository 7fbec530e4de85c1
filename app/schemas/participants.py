# app/schemas/participants.py
from __future__ import annotations

from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict, Field

from app.models.enums import ParticipantRole


class ParticipantCreate(BaseModel):
    model_config = ConfigDict(extra="forbid")

    participantId: str = Field(..., min_length=1, max_length=128)
    role: ParticipantRole
    displayName: str = Field(..., min_length=1)
    walletAddress: str = Field(..., min_length=42, max_length=42)
    profile: Dict[str, Any] = Field(default_factory=dict)


class ParticipantOut(BaseModel):
    participantId: str
    role: ParticipantRole
    displayName: str
    walletAddress: str
    kycVerified: bool
    kycMetadataHash: Optional[str] = None
