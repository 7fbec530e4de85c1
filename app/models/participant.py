# app/models/participant.py
from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, Optional

from sqlalchemy import Boolean, String, DateTime, Index, UniqueConstraint, false, func
from sqlalchemy.orm import Mapped, mapped_column

from app.db.base import Base, JSONDict


class Participant(Base):
    """
    Projection of a registered ledger participant.

    kyc_verified is flipped only after a kycAttestation transaction confirms.
    """

    __tablename__ = "participants"

    id: Mapped[str] = mapped_column(String(128), primary_key=True)

    role: Mapped[str] = mapped_column(String(32), nullable=False)
    display_name: Mapped[str] = mapped_column(String(256), nullable=False)
    wallet_address: Mapped[str] = mapped_column(String(42), nullable=False)

    kyc_verified: Mapped[bool] = mapped_column(
        Boolean, nullable=False, default=False, server_default=false()
    )
    kyc_metadata_hash: Mapped[Optional[str]] = mapped_column(String(256), nullable=True)

    profile_json: Mapped[Dict[str, Any]] = mapped_column(JSONDict, nullable=False, default=dict)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=func.now()
    )

    __table_args__ = (
        UniqueConstraint("wallet_address", name="uq_participant_wallet"),
        Index("ix_participants_role", "role"),
    )
