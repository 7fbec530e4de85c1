#app/api/v1/auth.py
from __future__ import annotations

import time

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.orm import Session

from app.core.auth_deps import get_current_principal
from app.core.security import create_access_token, login_message
from app.db.session import get_db
from app.schemas.auth import ChallengeResponse, TokenResponse, WalletLoginRequest
from app.services.auth_service import authenticate_wallet

router = APIRouter(prefix="/auth")


@router.get("/challenge/{participant_id}", response_model=ChallengeResponse)
def challenge(participant_id: str):
    issued_at = int(time.time())
    return ChallengeResponse(
        participantId=participant_id,
        issuedAt=issued_at,
        message=login_message(participant_id, issued_at),
    )


@router.post("/login", response_model=TokenResponse)
def login(req: WalletLoginRequest, db: Session = Depends(get_db)):
    principal = authenticate_wallet(db, req.participantId, req.issuedAt, req.signature)
    if not principal:
        raise HTTPException(status_code=401, detail="Invalid credentials.")

    token = create_access_token(
        subject=principal.participant_id,
        claims={
            "participant_id": principal.participant_id,
            "role": principal.role.value,
            "wallet": principal.wallet_address,
            "display_name": principal.display_name,
        },
    )
    return TokenResponse(access_token=token)


@router.get("/me")
def get_me(principal=Depends(get_current_principal)):
    return {
        "participant_id": principal.participant_id,
        "role": principal.role.value,
        "wallet": principal.wallet_address,
        "display_name": principal.display_name,
    }
