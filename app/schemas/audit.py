from __future__ import annotations
from datetime import datetime
from typing import Any, Dict, List, Optional
from pydantic import BaseModel, Field


class AuditLogRecordResponse(BaseModel):
    id: str
    createdAt: datetime
    requestId: Optional[str] = None

    entity: str
    entityId: str
    actorParticipantId: Optional[str] = None

    action: str
    txHash: Optional[str] = None
    payloadHash: str
    details: Dict[str, Any] = Field(default_factory=dict)


class AuditLogListResponse(BaseModel):
    entity: str
    entityId: str
    records: List[AuditLogRecordResponse]
