# app/services/auth_service.py
import logging
import time

from sqlalchemy.orm import Session

from app.chain.client import same_address
from app.core.security import LOGIN_WINDOW_SECONDS, login_message, recover_wallet
from app.models.enums import ParticipantRole
from app.models.participant import Participant
from app.policies.rbac import Principal

logger = logging.getLogger(__name__)


def authenticate_wallet(db: Session, participant_id: str, issued_at: int, signature: str) -> Principal | None:
    """
    Wallet login: the participant signs login_message() with the key behind
    its registered wallet. Returns None on any mismatch.
    """
    if abs(int(time.time()) - int(issued_at)) > LOGIN_WINDOW_SECONDS:
        return None

    p = db.get(Participant, participant_id)
    if not p:
        return None

    try:
        recovered = recover_wallet(login_message(participant_id, issued_at), signature)
    except Exception:
        logger.info("[auth] unreadable login signature for %s", participant_id)
        return None

    if not same_address(recovered, p.wallet_address):
        return None

    return principal_for(p)


def principal_for(p: Participant) -> Principal:
    return Principal(
        participant_id=p.id,
        role=ParticipantRole(p.role),
        wallet_address=p.wallet_address,
        display_name=p.display_name,
    )
