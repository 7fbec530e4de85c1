# app/models/weighment_proposal.py
from __future__ import annotations

import uuid
from datetime import datetime
from typing import Optional

from sqlalchemy import BigInteger, Boolean, DateTime, ForeignKey, Index, String, Text, Uuid, false, func
from sqlalchemy.orm import Mapped, mapped_column

from app.db.base import Base


class WeighmentProposal(Base):
    """
    A carrier's weight reading waiting for an attestor. Approval submits the
    signed weighment; the proposal keeps the hash of that transaction.
    """

    __tablename__ = "weighment_proposals"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    shipment_id: Mapped[str] = mapped_column(
        String(128), ForeignKey("shipments.id", ondelete="CASCADE"), nullable=False
    )

    proposed_weight_kg: Mapped[int] = mapped_column(BigInteger, nullable=False)
    proposer_id: Mapped[str] = mapped_column(String(128), nullable=False)
    proposer_wallet: Mapped[str] = mapped_column(String(42), nullable=False)

    # pending | approved | rejected
    status: Mapped[str] = mapped_column(String(16), nullable=False)
    propose_tx: Mapped[str] = mapped_column(String(66), nullable=False)
    confirmed: Mapped[bool] = mapped_column(
        Boolean, nullable=False, default=False, server_default=false()
    )

    reviewed_by: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    review_note: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    weighment_tx: Mapped[Optional[str]] = mapped_column(String(66), nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=func.now(), onupdate=func.now()
    )

    __table_args__ = (
        Index("ix_weighment_proposals_shipment", "shipment_id", "status"),
    )
