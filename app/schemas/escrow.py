# app/schemas/escrow.py
from __future__ import annotations

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field


class DepositRequest(BaseModel):
    """
    amount is in token base units (string, uint256). Splits default to the
    configured platform split when omitted.
    """
    model_config = ConfigDict(extra="forbid")

    amount: str = Field(..., pattern=r"^[0-9]+$")
    token: Optional[str] = None
    farmer: Optional[str] = None
    transporter: Optional[str] = None
    farmerBps: Optional[int] = None
    transporterBps: Optional[int] = None
    platformBps: Optional[int] = None


class DepositResponse(BaseModel):
    shipmentId: str
    stage: str
    txHash: str


class TxResponse(BaseModel):
    shipmentId: str
    txHash: str


class EscrowOut(BaseModel):
    shipmentId: str
    chainId: str
    token: str
    amount: str
    payer: str
    farmer: str
    transporter: str
    farmerBps: int
    transporterBps: int
    platformBps: int
    status: str
    depositTx: Optional[str] = None
    settleTx: Optional[str] = None
    depositedAt: datetime
    settledAt: Optional[datetime] = None
