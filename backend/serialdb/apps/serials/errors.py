from __future__ import annotations

import enum
from dataclasses import dataclass, field
from typing import Dict, List, Optional


class SerialErrorKind(str, enum.Enum):
    VALIDATION_FAILED = "validation_failed"
    DUPLICATE_SERIAL = "duplicate_serial"
    NOT_FOUND = "not_found"
    INVALID_TRANSITION = "invalid_transition"
    CONCURRENCY_CONFLICT = "concurrency_conflict"
    GENERATION_EXHAUSTED = "generation_exhausted"
    STORE_UNAVAILABLE = "store_unavailable"


@dataclass(eq=False)
class SerialLedgerError(Exception):
    message: str
    stock_id: Optional[str] = None
    serial_no: Optional[str] = None
    line_no: Optional[int] = None
    current: Optional[str] = None
    requested: Optional[str] = None
    detail: List[Dict[str, str]] = field(default_factory=list)

    kind = SerialErrorKind.VALIDATION_FAILED
    # Recoverable errors are returned to the caller; fatal ones abort the call.
    fatal = False

    def __post_init__(self) -> None:
        super().__init__(self.message)

    def __str__(self) -> str:
        return self.message

    def as_dict(self) -> dict:
        return {
            "kind": self.kind.value,
            "message": self.message,
            "stock_id": self.stock_id,
            "serial_no": self.serial_no,
            "line_no": self.line_no,
            "current": self.current,
            "requested": self.requested,
            "detail": list(self.detail),
        }


class ValidationFailed(SerialLedgerError):
    kind = SerialErrorKind.VALIDATION_FAILED


class DuplicateSerial(SerialLedgerError):
    kind = SerialErrorKind.DUPLICATE_SERIAL


class NotFound(SerialLedgerError):
    kind = SerialErrorKind.NOT_FOUND


class InvalidTransition(SerialLedgerError):
    kind = SerialErrorKind.INVALID_TRANSITION


class ConcurrencyConflict(SerialLedgerError):
    kind = SerialErrorKind.CONCURRENCY_CONFLICT


class GenerationExhausted(SerialLedgerError):
    kind = SerialErrorKind.GENERATION_EXHAUSTED


class StoreUnavailable(SerialLedgerError):
    kind = SerialErrorKind.STORE_UNAVAILABLE
    fatal = True
