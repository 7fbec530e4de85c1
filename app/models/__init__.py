# Importing the package registers every table on Base.metadata.
from app.models.audit_log import AuditLog  # noqa: F401
from app.models.dispute import DisputeEvidence, DisputeRecord  # noqa: F401
from app.models.escrow import EscrowRecord  # noqa: F401
from app.models.ledger_transaction import LedgerTransaction  # noqa: F401
from app.models.participant import Participant  # noqa: F401
from app.models.pending_state_update import PendingStateUpdate  # noqa: F401
from app.models.projector import ProcessedEvent, ProjectorCursor  # noqa: F401
from app.models.shipment import ShipmentRecord, ShipmentTimelineEntry, WeighmentRecord  # noqa: F401
from app.models.weighment_proposal import WeighmentProposal  # noqa: F401
