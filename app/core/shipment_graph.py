# app/core/shipment_graph.py
from typing import Dict, FrozenSet, Optional, Set, Tuple

from app.core.shipment_states import LedgerState, ShipmentStatus
from app.models.enums import ParticipantRole

S = ShipmentStatus
R = ParticipantRole

ALLOWED_SHIPMENT_TRANSITIONS: Dict[ShipmentStatus, Set[ShipmentStatus]] = {
    S.PENDING: {S.OFFER_MADE},
    S.OFFER_MADE: {S.AWAITING_PAYMENT, S.DISPUTED, S.CANCELLED},
    S.AWAITING_PAYMENT: {S.READY_FOR_PICKUP, S.DISPUTED, S.CANCELLED},
    S.READY_FOR_PICKUP: {S.IN_TRANSIT, S.DISPUTED, S.CANCELLED},
    S.IN_TRANSIT: {S.DELIVERED, S.DISPUTED, S.CANCELLED},
    S.DELIVERED: {S.VERIFIED, S.DISPUTED, S.CANCELLED},
    S.VERIFIED: {S.CLAIMED, S.CANCELLED},
    S.CLAIMED: set(),
    S.CANCELLED: set(),
    S.DISPUTED: set(),
}

TRANSITION_ACTORS: Dict[Tuple[ShipmentStatus, ShipmentStatus], FrozenSet[ParticipantRole]] = {
    (S.PENDING, S.OFFER_MADE): frozenset({R.INDUSTRY}),
    (S.OFFER_MADE, S.AWAITING_PAYMENT): frozenset({R.FARMER, R.INDUSTRY}),
    (S.AWAITING_PAYMENT, S.READY_FOR_PICKUP): frozenset({R.INDUSTRY}),
    (S.READY_FOR_PICKUP, S.IN_TRANSIT): frozenset({R.TRANSPORTER}),
    (S.IN_TRANSIT, S.DELIVERED): frozenset({R.TRANSPORTER}),
    (S.DELIVERED, S.VERIFIED): frozenset({R.INDUSTRY}),
    (S.VERIFIED, S.CLAIMED): frozenset({R.FARMER}),
}

# Disputes are opened by any KYC-verified party of the shipment; cancellation
# by either trading party.
SIDE_BRANCH_ACTORS: Dict[ShipmentStatus, FrozenSet[ParticipantRole]] = {
    S.DISPUTED: frozenset({R.FARMER, R.TRANSPORTER, R.INDUSTRY}),
    S.CANCELLED: frozenset({R.FARMER, R.INDUSTRY}),
}

# Transitions carried to the ledger by an attestor-signed updateShipmentState.
ORACLE_SIGNED_TARGETS: Dict[ShipmentStatus, LedgerState] = {
    S.IN_TRANSIT: LedgerState.IN_TRANSIT,
    S.DELIVERED: LedgerState.DELIVERED,
    S.VERIFIED: LedgerState.VERIFIED,
    S.CANCELLED: LedgerState.CANCELLED,
}


def is_allowed(source: ShipmentStatus, target: ShipmentStatus) -> bool:
    return target in ALLOWED_SHIPMENT_TRANSITIONS.get(source, set())


def actors_for(source: ShipmentStatus, target: ShipmentStatus) -> Optional[FrozenSet[ParticipantRole]]:
    if target in SIDE_BRANCH_ACTORS:
        return SIDE_BRANCH_ACTORS[target]
    return TRANSITION_ACTORS.get((source, target))
