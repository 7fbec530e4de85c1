# app/schemas/shipments.py
from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, condecimal

from app.core.shipment_states import ShipmentStatus


class ShipmentCreate(BaseModel):
    model_config = ConfigDict(extra="forbid")

    shipmentId: Optional[str] = Field(default=None, min_length=1, max_length=128)
    askPrice: condecimal(gt=0, max_digits=36, decimal_places=6)
    metadataHash: str = Field(..., min_length=1, description="content id of the shipment metadata document")


class TransitionRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    target: ShipmentStatus
    carrierId: Optional[str] = Field(default=None, description="required for AwaitingPayment")
    evidenceHash: Optional[str] = Field(default=None, description="required for Disputed")
    note: Optional[str] = None


class NominateCarrierRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    carrierId: str = Field(..., min_length=1)


class TimelineEntryOut(BaseModel):
    status: ShipmentStatus
    timestamp: datetime
    details: Dict[str, Any] = Field(default_factory=dict)
    txHash: Optional[str] = None
    tentative: bool = False


class WeighmentOut(BaseModel):
    weightKg: int
    weighHash: str
    attestorRef: str
    recordedAt: datetime
    txHash: Optional[str] = None
    confirmed: bool


class ShipmentOut(BaseModel):
    shipmentId: str
    chainId: str
    status: ShipmentStatus
    askPrice: Decimal
    metadataHash: str
    farmerId: str
    industryId: Optional[str] = None
    transporterRef: Optional[str] = None
    farmerNominee: Optional[str] = None
    industryNominee: Optional[str] = None
    pendingTx: Optional[str] = None
    timeline: List[TimelineEntryOut] = Field(default_factory=list)
    weighments: List[WeighmentOut] = Field(default_factory=list)
