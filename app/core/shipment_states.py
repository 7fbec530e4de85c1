# app/core/shipment_states.py
from enum import Enum, IntEnum
from typing import Dict, FrozenSet


class ShipmentStatus(str, Enum):
    PENDING = "Pending"
    OFFER_MADE = "OfferMade"
    AWAITING_PAYMENT = "AwaitingPayment"
    READY_FOR_PICKUP = "ReadyForPickup"
    IN_TRANSIT = "In-Transit"
    DELIVERED = "Delivered"
    VERIFIED = "Verified"
    CLAIMED = "Claimed"
    CANCELLED = "Cancelled"
    DISPUTED = "Disputed"


class LedgerState(IntEnum):
    """ShipmentToken state enum, numeric values are the wire encoding."""

    OPEN = 0
    ASSIGNED = 1
    IN_TRANSIT = 2
    DELIVERED = 3
    VERIFIED = 4
    PAID = 5
    DISPUTED = 6
    CANCELLED = 7


TERMINAL_STATUSES: FrozenSet[ShipmentStatus] = frozenset({
    ShipmentStatus.CLAIMED,
    ShipmentStatus.CANCELLED,
    ShipmentStatus.DISPUTED,
})

DISPUTABLE_STATUSES: FrozenSet[ShipmentStatus] = frozenset({
    ShipmentStatus.OFFER_MADE,
    ShipmentStatus.AWAITING_PAYMENT,
    ShipmentStatus.READY_FOR_PICKUP,
    ShipmentStatus.IN_TRANSIT,
    ShipmentStatus.DELIVERED,
})

CANCELLABLE_STATUSES: FrozenSet[ShipmentStatus] = DISPUTABLE_STATUSES | {ShipmentStatus.VERIFIED}


# The ledger has one state for AwaitingPayment and ReadyForPickup. The finer
# status lives only off-chain and is decided by escrow funding (see reconcile).
# Claimed is also compatible with VERIFIED: the farmer's release settles before
# the attestor's PAID update is mined.
COMPATIBLE_LEDGER_STATES: Dict[ShipmentStatus, FrozenSet[LedgerState]] = {
    ShipmentStatus.PENDING: frozenset({LedgerState.OPEN}),
    ShipmentStatus.OFFER_MADE: frozenset({LedgerState.OPEN}),
    ShipmentStatus.AWAITING_PAYMENT: frozenset({LedgerState.ASSIGNED}),
    ShipmentStatus.READY_FOR_PICKUP: frozenset({LedgerState.ASSIGNED}),
    ShipmentStatus.IN_TRANSIT: frozenset({LedgerState.IN_TRANSIT}),
    ShipmentStatus.DELIVERED: frozenset({LedgerState.DELIVERED}),
    ShipmentStatus.VERIFIED: frozenset({LedgerState.VERIFIED}),
    ShipmentStatus.CLAIMED: frozenset({LedgerState.VERIFIED, LedgerState.PAID}),
    ShipmentStatus.DISPUTED: frozenset({LedgerState.DISPUTED}),
    ShipmentStatus.CANCELLED: frozenset({LedgerState.CANCELLED}),
}

# Main-line progress, used to decide whether a tentative local write is ahead
# of an event that was mined before it.
LEDGER_PROGRESS: Dict[LedgerState, int] = {
    LedgerState.OPEN: 0,
    LedgerState.ASSIGNED: 1,
    LedgerState.IN_TRANSIT: 2,
    LedgerState.DELIVERED: 3,
    LedgerState.VERIFIED: 4,
    LedgerState.PAID: 5,
    LedgerState.DISPUTED: 9,
    LedgerState.CANCELLED: 9,
}


def ledger_state_for(status: ShipmentStatus) -> LedgerState:
    """The ledger state a shipment in `status` is expected to hold once settled."""
    if status == ShipmentStatus.CLAIMED:
        return LedgerState.PAID
    return min(COMPATIBLE_LEDGER_STATES[status])


def is_compatible(status: ShipmentStatus, ledger_state: LedgerState) -> bool:
    return ledger_state in COMPATIBLE_LEDGER_STATES[status]


def reconcile_status(
    current: ShipmentStatus,
    ledger_state: LedgerState,
    *,
    industry_assigned: bool,
    escrow_funded: bool,
) -> ShipmentStatus:
    """
    Map an observed ledger state onto the off-chain vocabulary.

    A status already compatible with the ledger state is kept, so replaying
    ASSIGNED never demotes ReadyForPickup back to AwaitingPayment. Otherwise
    the ledger wins and the finer status is derived from off-chain facts.
    """
    if is_compatible(current, ledger_state):
        return current

    if ledger_state == LedgerState.OPEN:
        return ShipmentStatus.OFFER_MADE if industry_assigned else ShipmentStatus.PENDING
    if ledger_state == LedgerState.ASSIGNED:
        return ShipmentStatus.READY_FOR_PICKUP if escrow_funded else ShipmentStatus.AWAITING_PAYMENT

    return {
        LedgerState.IN_TRANSIT: ShipmentStatus.IN_TRANSIT,
        LedgerState.DELIVERED: ShipmentStatus.DELIVERED,
        LedgerState.VERIFIED: ShipmentStatus.VERIFIED,
        LedgerState.PAID: ShipmentStatus.CLAIMED,
        LedgerState.DISPUTED: ShipmentStatus.DISPUTED,
        LedgerState.CANCELLED: ShipmentStatus.CANCELLED,
    }[ledger_state]
