# app/core/errors.py
"""
Error taxonomy for shipment coordination.

ValidationError is raised before any ledger I/O and never reaches the ledger.
LedgerRejected and SignatureError are surfaced to the initiator as-is.
NetworkTimeout is the only failure the retry queue retries on its own.
ProjectionConflict means the cached projection disagreed with the ledger and
the shipment has been re-synced.
"""
from __future__ import annotations

from enum import Enum
from typing import Any, Dict, Optional


class RejectionReason(str, Enum):
    WRONG_ACTOR = "WrongActor"
    WRONG_STATE = "WrongState"
    PRECONDITION_NOT_MET = "PreconditionNotMet"


class ShipmentLedgerError(Exception):
    code = "ShipmentLedgerError"

    def __init__(self, message: str, **context: Any):
        super().__init__(message)
        self.message = message
        self.context = context

    def to_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {"error": self.code, "message": self.message}
        if self.context:
            out["context"] = {k: v for k, v in self.context.items() if v is not None}
        return out


class ValidationError(ShipmentLedgerError, ValueError):
    code = "ValidationError"

    def __init__(self, reason: RejectionReason, message: str, **context: Any):
        super().__init__(message, **context)
        self.reason = reason

    def __str__(self) -> str:
        return f"{self.reason.value}: {self.message}"

    def to_dict(self) -> Dict[str, Any]:
        out = super().to_dict()
        out["reason"] = self.reason.value
        return out


class SignatureError(ShipmentLedgerError):
    code = "SignatureError"


class LedgerRejected(ShipmentLedgerError):
    code = "LedgerRejected"

    def __init__(self, message: str, *, tx_hash: Optional[str] = None, **context: Any):
        super().__init__(message, tx_hash=tx_hash, **context)
        self.tx_hash = tx_hash


class NetworkTimeout(ShipmentLedgerError):
    code = "NetworkTimeout"

    def __init__(self, message: str, *, tx_hash: Optional[str] = None, **context: Any):
        super().__init__(message, tx_hash=tx_hash, **context)
        self.tx_hash = tx_hash


class ProjectionConflict(ShipmentLedgerError):
    code = "ProjectionConflict"


class NotFound(ShipmentLedgerError, LookupError):
    code = "NotFound"


def wrong_actor(message: str, **context: Any) -> ValidationError:
    return ValidationError(RejectionReason.WRONG_ACTOR, message, **context)


def wrong_state(message: str, **context: Any) -> ValidationError:
    return ValidationError(RejectionReason.WRONG_STATE, message, **context)


def precondition(message: str, **context: Any) -> ValidationError:
    return ValidationError(RejectionReason.PRECONDITION_NOT_MET, message, **context)
