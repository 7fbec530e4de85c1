# app/models/pending_state_update.py
from __future__ import annotations

import uuid
from datetime import datetime
from typing import Optional

from sqlalchemy import DateTime, ForeignKey, Index, Integer, String, Text, UniqueConstraint, Uuid, func
from sqlalchemy.orm import Mapped, mapped_column

from app.db.base import Base


class PendingStateUpdate(Base):
    """
    Durable attestor obligation: an updateShipmentState the initiating actor
    could not sign for. Enqueue is idempotent on (shipment_id, target_state).
    """

    __tablename__ = "pending_state_updates"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)

    shipment_id: Mapped[str] = mapped_column(
        String(128), ForeignKey("shipments.id", ondelete="CASCADE"), nullable=False
    )
    chain_id_hex: Mapped[str] = mapped_column(String(66), nullable=False)

    # LedgerState numeric values
    current_state: Mapped[int] = mapped_column(Integer, nullable=False)
    target_state: Mapped[int] = mapped_column(Integer, nullable=False)

    status: Mapped[str] = mapped_column(String(16), nullable=False)
    attempt_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    next_attempt_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    tx_hash: Mapped[Optional[str]] = mapped_column(String(66), nullable=True)
    # lease: a processing row older than the lease is reclaimed by the worker
    processing_started_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=func.now(), onupdate=func.now()
    )

    __table_args__ = (
        UniqueConstraint("shipment_id", "target_state", name="uq_pending_update_target"),
        Index("ix_pending_updates_due", "status", "next_attempt_at"),
    )
