# app/services/shipment_projection.py
"""
Shared read/write helpers for the shipment projection.

Every status change goes through append_timeline so that status always equals
the last timeline entry.
"""
from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Dict, Optional

from sqlalchemy import select
from sqlalchemy.orm import Session

from app.core.errors import NotFound
from app.core.hashing import json_safe
from app.core.shipment_states import ShipmentStatus
from app.models.participant import Participant
from app.models.shipment import ShipmentRecord, ShipmentTimelineEntry


def _now():
    return datetime.now(timezone.utc)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    # sqlite hands back naive datetimes
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)


def from_block_time(ts: int) -> datetime:
    return datetime.fromtimestamp(int(ts), tz=timezone.utc)


def get_shipment(db: Session, shipment_id: str, *, for_update: bool = False) -> ShipmentRecord:
    stmt = select(ShipmentRecord).where(ShipmentRecord.id == shipment_id)
    if for_update:
        # serialize writers per shipment
        stmt = stmt.with_for_update()
    row = db.execute(stmt).scalar_one_or_none()
    if row is None:
        raise NotFound(f"Shipment {shipment_id} not found", shipment_id=shipment_id)
    return row


def find_by_chain_id(db: Session, chain_id_hex: str, *, for_update: bool = False) -> Optional[ShipmentRecord]:
    stmt = select(ShipmentRecord).where(ShipmentRecord.chain_id_hex == chain_id_hex.lower())
    if for_update:
        stmt = stmt.with_for_update()
    return db.execute(stmt).scalar_one_or_none()


def get_participant(db: Session, participant_id: str) -> Participant:
    row = db.get(Participant, participant_id)
    if row is None:
        raise NotFound(f"Participant {participant_id} not found", participant_id=participant_id)
    return row


def find_participant_by_wallet(db: Session, wallet: str) -> Optional[Participant]:
    return db.execute(
        select(Participant).where(Participant.wallet_address.ilike(wallet))
    ).scalar_one_or_none()


def status_of(shipment: ShipmentRecord) -> ShipmentStatus:
    return ShipmentStatus(shipment.status)


def append_timeline(
    db: Session,
    shipment: ShipmentRecord,
    status: ShipmentStatus,
    *,
    details: Optional[Dict[str, Any]] = None,
    timestamp: Optional[datetime] = None,
    tx_hash: Optional[str] = None,
    tentative: bool = False,
    event_key: Optional[str] = None,
) -> ShipmentTimelineEntry:
    entry = ShipmentTimelineEntry(
        position=len(shipment.timeline),
        status=status.value,
        timestamp=timestamp or _now(),
        details=json_safe(details or {}),
        tx_hash=tx_hash,
        tentative=tentative,
        event_key=event_key,
    )
    shipment.timeline.append(entry)
    shipment.status = status.value
    if tentative:
        shipment.pending_tx = tx_hash
    return entry


def promote_tentative(
    db: Session,
    shipment: ShipmentRecord,
    tx_hash: str,
    *,
    block_time: Optional[datetime] = None,
) -> int:
    """Mark entries written for `tx_hash` as durable. Block time replaces the local timestamp."""
    promoted = 0
    for entry in shipment.timeline:
        if entry.tx_hash == tx_hash and entry.tentative:
            entry.tentative = False
            if block_time is not None:
                entry.timestamp = block_time
            promoted += 1
    if shipment.pending_tx == tx_hash:
        shipment.pending_tx = None
    return promoted


def tentative_entry(shipment: ShipmentRecord, tx_hash: str) -> Optional[ShipmentTimelineEntry]:
    for entry in reversed(shipment.timeline):
        if entry.tx_hash == tx_hash and entry.tentative:
            return entry
    return None


def snapshot(shipment: ShipmentRecord) -> Dict[str, Any]:
    """Plain-data view of a shipment and its timeline, used for change detection."""
    return json_safe({
        "id": shipment.id,
        "chainId": shipment.chain_id_hex,
        "status": shipment.status,
        "askPrice": shipment.ask_price,
        "farmerId": shipment.farmer_id,
        "industryId": shipment.industry_id,
        "transporterRef": shipment.transporter_ref,
        "farmerNominee": shipment.farmer_nominee,
        "industryNominee": shipment.industry_nominee,
        "ledgerSeq": shipment.ledger_seq,
        "pendingTx": shipment.pending_tx,
        "revision": shipment.revision,
        "timeline": [
            {
                "status": e.status,
                "timestamp": as_utc(e.timestamp),
                "details": e.details,
                "txHash": e.tx_hash,
                "tentative": e.tentative,
            }
            for e in shipment.timeline
        ],
    })

