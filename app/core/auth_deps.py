#app/core/auth_deps.py
from __future__ import annotations

from typing import Any, Dict, Iterable

from fastapi import Depends, HTTPException, Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from app.chain.client import normalize_address
from app.core.security import decode_token
from app.models.enums import ParticipantRole
from app.policies.rbac import Principal

bearer = HTTPBearer(auto_error=True)

REQUIRED_CLAIMS = ("participant_id", "role", "wallet")


def principal_from_claims(payload: Dict[str, Any]) -> Principal:
    """
    Token claims -> Principal. KYC is deliberately not a claim: services read
    it from the participant row at the time of the action.
    """
    missing = [c for c in REQUIRED_CLAIMS if not payload.get(c)]
    if missing:
        raise HTTPException(status_code=401, detail=f"Token missing required claims: {', '.join(missing)}.")

    try:
        role = ParticipantRole(payload["role"])
    except ValueError:
        raise HTTPException(status_code=401, detail="Invalid role in token.")

    try:
        wallet = normalize_address(str(payload["wallet"]))
    except ValueError:
        raise HTTPException(status_code=401, detail="Invalid wallet in token.")

    return Principal(
        participant_id=str(payload["participant_id"]),
        role=role,
        wallet_address=wallet,
        display_name=str(payload.get("display_name") or payload["participant_id"]),
    )


def get_current_principal(
    request: Request,
    creds: HTTPAuthorizationCredentials = Depends(bearer),
) -> Principal:
    try:
        payload = decode_token(creds.credentials)
    except Exception:
        raise HTTPException(status_code=401, detail="Invalid or expired token.")

    principal = principal_from_claims(payload)
    request.state.principal = principal
    return principal


def require_roles(roles: Iterable[ParticipantRole]):
    allowed = frozenset(roles)

    def _dep(principal: Principal = Depends(get_current_principal)) -> Principal:
        if principal.role not in allowed:
            raise HTTPException(status_code=403, detail=f"Role {principal.role.value} not permitted.")
        return principal

    return _dep


# queue/ledger maintenance and the audit trail
require_operator = require_roles([ParticipantRole.ORACLE, ParticipantRole.ADMIN])
require_auditor = require_roles([ParticipantRole.ADMIN, ParticipantRole.RESOLVER, ParticipantRole.GOVERNMENT])
require_admin = require_roles([ParticipantRole.ADMIN])
