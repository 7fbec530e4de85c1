from typing import Literal

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from app.core.auth_deps import require_auditor
from app.core.deps import get_services
from app.db.session import get_db
from app.schemas.audit import AuditLogListResponse, AuditLogRecordResponse
from app.services.shipment_projection import as_utc

router = APIRouter(prefix="/audit")



@router.get("/{entity}/{entity_id}", response_model=AuditLogListResponse)
def get_audit_log(
    entity: Literal["shipment", "dispute", "participant", "pending_state_update"],
    entity_id: str,
    db: Session = Depends(get_db),
    services=Depends(get_services),
    _principal=Depends(require_auditor),
):
    rows = services.audit.history(db, entity=entity, entity_id=entity_id)
    return AuditLogListResponse(
        entity=entity,
        entityId=entity_id,
        records=[
            AuditLogRecordResponse(
                id=str(r.id),
                createdAt=as_utc(r.created_at),
                requestId=r.request_id,
                entity=r.entity,
                entityId=r.entity_id,
                actorParticipantId=r.actor_participant_id,
                action=r.action,
                txHash=r.tx_hash,
                payloadHash=r.payload_hash,
                details=r.details_json or {},
            )
            for r in rows
        ],
    )
