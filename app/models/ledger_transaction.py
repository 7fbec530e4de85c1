# app/models/ledger_transaction.py
from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, Optional

from sqlalchemy import BigInteger, DateTime, Index, String, Text, func
from sqlalchemy.orm import Mapped, mapped_column

from app.db.base import Base, JSONDict


class LedgerTransaction(Base):
    """
    Two-phase record of a submitted ledger write.

    submitted -> confirmed | failed. payload_json carries whatever the
    confirmation handler for `kind` needs (e.g. the deferred deposit).
    """

    __tablename__ = "ledger_transactions"

    tx_hash: Mapped[str] = mapped_column(String(66), primary_key=True)
    kind: Mapped[str] = mapped_column(String(32), nullable=False)
    shipment_id: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    sender: Mapped[str] = mapped_column(String(42), nullable=False)

    status: Mapped[str] = mapped_column(String(16), nullable=False)
    payload_json: Mapped[Dict[str, Any]] = mapped_column(JSONDict, nullable=False, default=dict)
    error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    block_number: Mapped[Optional[int]] = mapped_column(BigInteger, nullable=True)

    submitted_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=func.now()
    )
    settled_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        Index("ix_ledger_tx_status", "status"),
        Index("ix_ledger_tx_shipment", "shipment_id"),
    )
