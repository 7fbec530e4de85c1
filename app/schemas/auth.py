from __future__ import annotations
from pydantic import BaseModel, Field


class WalletLoginRequest(BaseModel):
    participantId: str = Field(..., min_length=1)
    issuedAt: int = Field(..., description="unix seconds embedded in the signed login message")
    signature: str = Field(..., min_length=4)


class ChallengeResponse(BaseModel):
    participantId: str
    issuedAt: int
    message: str


class TokenResponse(BaseModel):
    access_token: str
    token_type: str = "bearer"
