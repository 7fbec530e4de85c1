# app/models/dispute.py
from __future__ import annotations

import uuid
from datetime import datetime
from typing import List, Optional

from sqlalchemy import BigInteger, DateTime, ForeignKey, Index, Integer, String, Text, Uuid, func
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.db.base import Base


class DisputeRecord(Base):
    """
    Keyed by the id DisputeManager assigns in its DisputeRaised event.
    """

    __tablename__ = "disputes"

    id: Mapped[int] = mapped_column(BigInteger, primary_key=True, autoincrement=False)
    shipment_id: Mapped[str] = mapped_column(
        String(128), ForeignKey("shipments.id", ondelete="CASCADE"), nullable=False
    )
    chain_id_hex: Mapped[str] = mapped_column(String(66), nullable=False)

    raised_by: Mapped[str] = mapped_column(String(128), nullable=False)
    raised_by_wallet: Mapped[str] = mapped_column(String(42), nullable=False)
    status: Mapped[str] = mapped_column(String(16), nullable=False)
    # Shipment status at the moment the dispute was raised
    prior_status: Mapped[str] = mapped_column(String(32), nullable=False)

    resolution: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)
    resolution_note: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    resolved_by: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    resolved_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    raise_tx: Mapped[Optional[str]] = mapped_column(String(66), nullable=True)
    resolve_tx: Mapped[Optional[str]] = mapped_column(String(66), nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=func.now()
    )

    evidence: Mapped[List["DisputeEvidence"]] = relationship(
        back_populates="dispute",
        order_by="DisputeEvidence.position",
        cascade="all, delete-orphan",
    )

    __table_args__ = (
        Index("ix_disputes_shipment", "shipment_id"),
        Index("ix_disputes_status", "status"),
    )


class DisputeEvidence(Base):
    __tablename__ = "dispute_evidence"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    dispute_id: Mapped[int] = mapped_column(
        BigInteger, ForeignKey("disputes.id", ondelete="CASCADE"), nullable=False
    )
    position: Mapped[int] = mapped_column(Integer, nullable=False)

    submitter_id: Mapped[str] = mapped_column(String(128), nullable=False)
    evidence_hash: Mapped[str] = mapped_column(String(256), nullable=False)
    oracle_address: Mapped[Optional[str]] = mapped_column(String(42), nullable=True)
    timestamp: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    tx_hash: Mapped[Optional[str]] = mapped_column(String(66), nullable=True)

    dispute: Mapped[DisputeRecord] = relationship(back_populates="evidence")

    __table_args__ = (
        Index("ix_evidence_dispute", "dispute_id", "position"),
    )
