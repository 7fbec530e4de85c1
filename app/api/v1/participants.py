# app/api/v1/participants.py
from __future__ import annotations

from typing import List, Optional

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from app.core.auth_deps import get_current_principal, require_admin
from app.core.deps import get_services
from app.db.session import get_db
from app.models.enums import ParticipantRole
from app.models.participant import Participant
from app.schemas.participants import ParticipantCreate, ParticipantOut

router = APIRouter(prefix="/participants")


def _to_out(p: Participant) -> ParticipantOut:
    return ParticipantOut(
        participantId=p.id,
        role=ParticipantRole(p.role),
        displayName=p.display_name,
        walletAddress=p.wallet_address,
        kycVerified=bool(p.kyc_verified),
        kycMetadataHash=p.kyc_metadata_hash,
    )


@router.post("", response_model=ParticipantOut, status_code=201)
def register_participant(
    req: ParticipantCreate,
    db: Session = Depends(get_db),
    services=Depends(get_services),
    principal=Depends(require_admin),
):
    p = services.participants.register(
        db,
        participant_id=req.participantId,
        role=req.role,
        display_name=req.displayName,
        wallet_address=req.walletAddress,
        profile=req.profile,
        actor_participant_id=principal.participant_id,
    )
    return _to_out(p)


@router.get("", response_model=List[ParticipantOut])
def list_participants(
    role: Optional[ParticipantRole] = None,
    db: Session = Depends(get_db),
    services=Depends(get_services),
    principal=Depends(get_current_principal),
):
    return [_to_out(p) for p in services.participants.list(db, role=role)]


@router.get("/{participant_id}", response_model=ParticipantOut)
def get_participant(
    participant_id: str,
    db: Session = Depends(get_db),
    services=Depends(get_services),
    principal=Depends(get_current_principal),
):
    return _to_out(services.participants.get(db, participant_id))
