# app/api/v1/ledger.py

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.orm import Session

from app.core.auth_deps import require_operator
from app.core.deps import get_services
from app.db.session import get_db
from app.models.ledger_transaction import LedgerTransaction
from app.services.shipment_projection import as_utc

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/ledger", tags=["ledger"])



@router.post("/poll")
def poll_events(db: Session = Depends(get_db), services=Depends(get_services), principal=Depends(require_operator)):
    """Project new ledger events once (the background loop does this continuously)."""
    applied = services.projector.poll_once(db)
    return {"applied": applied}


@router.post("/sweep")
def sweep_transactions(db: Session = Depends(get_db), services=Depends(get_services), principal=Depends(require_operator)):
    settled = services.tracker.sweep(db)
    return {"settled": settled}


@router.get("/transactions/{tx_hash}")
def get_transaction(tx_hash: str, db: Session = Depends(get_db), principal=Depends(require_operator)):
    tx = db.get(LedgerTransaction, tx_hash)
    if tx is None:
        raise HTTPException(status_code=404, detail="Transaction not tracked.")
    return {
        "txHash": tx.tx_hash,
        "kind": tx.kind,
        "shipmentId": tx.shipment_id,
        "sender": tx.sender,
        "status": tx.status,
        "error": tx.error,
        "blockNumber": tx.block_number,
        "submittedAt": as_utc(tx.submitted_at),
        "settledAt": as_utc(tx.settled_at),
    }
