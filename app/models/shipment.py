# app/models/shipment.py
from __future__ import annotations

import uuid
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional

from sqlalchemy import (
    BigInteger,
    Boolean,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    UniqueConstraint,
    Uuid,
    false,
    func,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.db.base import Base, JSONDict


class ShipmentRecord(Base):
    """
    Off-chain projection of a ShipmentToken shipment.

    Invariants:
    - status == timeline[-1].status
    - ledger_seq only moves forward (block * 1e6 + log index of the last applied event)
    - revision is bumped on every flush; a stale writer fails with StaleDataError
    """

    __tablename__ = "shipments"

    id: Mapped[str] = mapped_column(String(128), primary_key=True)
    chain_id_hex: Mapped[str] = mapped_column(String(66), nullable=False)

    status: Mapped[str] = mapped_column(String(32), nullable=False)
    ask_price: Mapped[Decimal] = mapped_column(Numeric(36, 6), nullable=False)
    metadata_hash: Mapped[str] = mapped_column(String(256), nullable=False)

    farmer_id: Mapped[str] = mapped_column(String(128), nullable=False)
    farmer_wallet: Mapped[str] = mapped_column(String(42), nullable=False)

    industry_id: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    industry_wallet: Mapped[Optional[str]] = mapped_column(String(42), nullable=True)

    # carrier is referenced by address, nominations by participant id
    transporter_ref: Mapped[Optional[str]] = mapped_column(String(42), nullable=True)
    farmer_nominee: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    industry_nominee: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)

    ledger_seq: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    pending_tx: Mapped[Optional[str]] = mapped_column(String(66), nullable=True)
    revision: Mapped[int] = mapped_column(Integer, nullable=False)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=func.now(), onupdate=func.now()
    )

    timeline: Mapped[List["ShipmentTimelineEntry"]] = relationship(
        back_populates="shipment",
        order_by="ShipmentTimelineEntry.position",
        cascade="all, delete-orphan",
    )
    weighments: Mapped[List["WeighmentRecord"]] = relationship(
        back_populates="shipment",
        order_by="WeighmentRecord.recorded_at",
        cascade="all, delete-orphan",
    )

    __mapper_args__ = {"version_id_col": revision}

    __table_args__ = (
        UniqueConstraint("chain_id_hex", name="uq_shipment_chain_id"),
        Index("ix_shipments_status", "status"),
        Index("ix_shipments_farmer", "farmer_id"),
        Index("ix_shipments_industry", "industry_id"),
    )


class ShipmentTimelineEntry(Base):
    """
    Append-only. A tentative entry is written when a ledger write is submitted
    and promoted (tentative=False) once the transaction confirms. A failed
    transaction never deletes its entry; a compensating entry is appended.
    """

    __tablename__ = "shipment_timeline_entries"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    shipment_id: Mapped[str] = mapped_column(
        String(128), ForeignKey("shipments.id", ondelete="CASCADE"), nullable=False
    )
    position: Mapped[int] = mapped_column(Integer, nullable=False)

    status: Mapped[str] = mapped_column(String(32), nullable=False)
    timestamp: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    details: Mapped[Dict[str, Any]] = mapped_column(JSONDict, nullable=False, default=dict)

    tx_hash: Mapped[Optional[str]] = mapped_column(String(66), nullable=True)
    tentative: Mapped[bool] = mapped_column(
        Boolean, nullable=False, default=False, server_default=false()
    )
    event_key: Mapped[Optional[str]] = mapped_column(String(96), nullable=True)

    shipment: Mapped[ShipmentRecord] = relationship(back_populates="timeline")

    __table_args__ = (
        UniqueConstraint("shipment_id", "position", name="uq_timeline_position"),
        UniqueConstraint("event_key", name="uq_timeline_event_key"),
        Index("ix_timeline_tx", "tx_hash"),
    )


class WeighmentRecord(Base):
    __tablename__ = "shipment_weighments"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    shipment_id: Mapped[str] = mapped_column(
        String(128), ForeignKey("shipments.id", ondelete="CASCADE"), nullable=False
    )

    weight_kg: Mapped[int] = mapped_column(BigInteger, nullable=False)
    weigh_hash: Mapped[str] = mapped_column(String(256), nullable=False)
    attestor_ref: Mapped[str] = mapped_column(String(42), nullable=False)
    nonce: Mapped[str] = mapped_column(String(80), nullable=False)
    recorded_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    tx_hash: Mapped[Optional[str]] = mapped_column(String(66), nullable=True)
    confirmed: Mapped[bool] = mapped_column(
        Boolean, nullable=False, default=False, server_default=false()
    )

    shipment: Mapped[ShipmentRecord] = relationship(back_populates="weighments")

    __table_args__ = (
        UniqueConstraint("shipment_id", "nonce", name="uq_weighment_nonce"),
    )
