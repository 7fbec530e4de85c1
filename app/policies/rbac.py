#app/policies/rbac.py
from __future__ import annotations
from dataclasses import dataclass
from typing import Iterable

from app.core.errors import wrong_actor
from app.models.enums import ParticipantRole


@dataclass(frozen=True)
class Principal:
    participant_id: str
    role: ParticipantRole
    wallet_address: str
    display_name: str


def require_role(principal: Principal, roles: Iterable[ParticipantRole], action: str) -> None:
    """
    Pure RBAC: may this role attempt the action at all.
    Party checks (is this *the* farmer of the shipment) live in the services.
    """
    allowed = set(roles)
    if principal.role not in allowed:
        raise wrong_actor(
            f"Role {principal.role.value} not permitted for action {action}.",
            participant_id=principal.participant_id,
        )
