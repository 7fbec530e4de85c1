# app/services/participant_service.py
from __future__ import annotations

from typing import Any, Dict, List, Optional

from sqlalchemy import select
from sqlalchemy.orm import Session

from app.chain.client import normalize_address
from app.core.errors import precondition
from app.models.enums import ParticipantRole
from app.models.participant import Participant
from app.services.audit_service import AuditAction, AuditService
from app.services.shipment_projection import find_participant_by_wallet, get_participant


class ParticipantService:
    def __init__(self, audit: AuditService | None = None):
        self.audit = audit or AuditService()

    def register(
        self,
        db: Session,
        *,
        participant_id: str,
        role: ParticipantRole,
        display_name: str,
        wallet_address: str,
        profile: Optional[Dict[str, Any]] = None,
        actor_participant_id: Optional[str] = None,
    ) -> Participant:
        try:
            wallet = normalize_address(wallet_address)
        except ValueError as exc:
            raise precondition(f"Invalid wallet address: {wallet_address}") from exc

        if db.get(Participant, participant_id) is not None:
            raise precondition(f"Participant {participant_id} already exists.")
        if find_participant_by_wallet(db, wallet) is not None:
            raise precondition(f"Wallet {wallet} is already registered.")

        p = Participant(
            id=participant_id,
            role=role.value,
            display_name=display_name,
            wallet_address=wallet,
            kyc_verified=False,
            profile_json=profile or {},
        )
        db.add(p)
        self.audit.write(
            db,
            entity="participant",
            entity_id=participant_id,
            actor_participant_id=actor_participant_id,
            action=AuditAction.PARTICIPANT_REGISTERED,
            details={"role": role.value, "wallet": wallet},
        )
        db.commit()
        db.refresh(p)
        return p

    def get(self, db: Session, participant_id: str) -> Participant:
        return get_participant(db, participant_id)

    def list(self, db: Session, *, role: Optional[ParticipantRole] = None) -> List[Participant]:
        stmt = select(Participant).order_by(Participant.id.asc())
        if role is not None:
            stmt = stmt.where(Participant.role == role.value)
        return list(db.execute(stmt).scalars())
