# app/models/escrow.py
from __future__ import annotations

from datetime import datetime
from typing import Optional

from sqlalchemy import DateTime, ForeignKey, Index, Integer, String, func
from sqlalchemy.orm import Mapped, mapped_column

from app.db.base import Base


class EscrowRecord(Base):
    """
    Projection of the EscrowPayment entry for one shipment.

    Keyed by the canonical shipment id. Amounts are uint256 base units, kept as
    decimal strings. Released and Refunded are terminal; a fresh deposit may
    replace a Refunded row only.
    """

    __tablename__ = "escrows"

    chain_id_hex: Mapped[str] = mapped_column(String(66), primary_key=True)
    shipment_id: Mapped[str] = mapped_column(
        String(128), ForeignKey("shipments.id", ondelete="CASCADE"), nullable=False
    )

    token: Mapped[str] = mapped_column(String(42), nullable=False)
    amount: Mapped[str] = mapped_column(String(80), nullable=False)
    payer: Mapped[str] = mapped_column(String(42), nullable=False)
    farmer: Mapped[str] = mapped_column(String(42), nullable=False)
    transporter: Mapped[str] = mapped_column(String(42), nullable=False)

    farmer_bps: Mapped[int] = mapped_column(Integer, nullable=False)
    transporter_bps: Mapped[int] = mapped_column(Integer, nullable=False)
    platform_bps: Mapped[int] = mapped_column(Integer, nullable=False)

    status: Mapped[str] = mapped_column(String(16), nullable=False)

    deposit_tx: Mapped[Optional[str]] = mapped_column(String(66), nullable=True)
    settle_tx: Mapped[Optional[str]] = mapped_column(String(66), nullable=True)

    deposited_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    settled_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=func.now(), onupdate=func.now()
    )

    __table_args__ = (
        Index("ix_escrows_shipment", "shipment_id"),
        Index("ix_escrows_status", "status"),
    )

    @property
    def amount_units(self) -> int:
        return int(self.amount)
