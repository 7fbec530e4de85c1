# app/core/security.py
from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

from eth_account import Account
from eth_account.messages import encode_defunct
from jose import jwt

from app.core.config import get_settings

LOGIN_WINDOW_SECONDS = 300


def login_message(participant_id: str, issued_at: int) -> str:
    """Text the wallet signs (personal_sign) to obtain an API token."""
    return f"Agri shipment ledger login\nparticipant: {participant_id}\nissued-at: {int(issued_at)}"


def recover_wallet(message: str, signature: str) -> str:
    return Account.recover_message(encode_defunct(text=message), signature=signature)


def create_access_token(subject: str, claims: Dict[str, Any], expires_minutes: Optional[int] = None) -> str:
    settings = get_settings()
    exp_minutes = expires_minutes or settings.jwt_access_token_minutes
    now = datetime.now(timezone.utc)
    payload = {
        "sub": subject,
        "iat": int(now.timestamp()),
        "exp": int((now + timedelta(minutes=exp_minutes)).timestamp()),
        **claims,
    }
    return jwt.encode(payload, settings.jwt_secret_key, algorithm=settings.jwt_algorithm)


def decode_token(token: str) -> Dict[str, Any]:
    settings = get_settings()
    return jwt.decode(token, settings.jwt_secret_key, algorithms=[settings.jwt_algorithm])
