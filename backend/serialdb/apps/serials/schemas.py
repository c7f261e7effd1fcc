from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, field_validator, model_validator

from . import models
from .errors import SerialLedgerError


def _strip(value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    value = value.strip()
    return value or None


class SerialItemCreate(BaseModel):
    stock_id: str
    serial_no: str
    location: str
    status: models.SerialStatusEnum = models.SerialStatusEnum.ACTIVE

    @field_validator("stock_id", "serial_no", "location")
    @classmethod
    def _required_text(cls, value: str) -> str:
        value = (value or "").strip()
        if not value:
            raise ValueError("value is required")
        return value


class SerialItemRead(BaseModel):
    id: int
    stock_id: str
    serial_no: str
    status: models.SerialStatusEnum
    location: str
    version: int
    created_at: datetime
    updated_at: datetime

    class Config:
        from_attributes = True


class SerialMovementRead(BaseModel):
    id: int
    serial_item_id: int
    trans_type: int
    trans_no: int
    movement_type: models.SerialOperationEnum
    stock_id: str
    serial_no: str
    location_from: Optional[str] = None
    location_to: Optional[str] = None
    status_from: Optional[models.SerialStatusEnum] = None
    status_to: models.SerialStatusEnum
    quantity: Decimal
    reference: Optional[str] = None
    reversal_of_id: Optional[int] = None
    reversed_at: Optional[datetime] = None
    created_at: datetime

    class Config:
        from_attributes = True


class SerialAttributeRead(BaseModel):
    id: int
    serial_item_id: int
    attribute_name: str
    attribute_value: Optional[str] = None
    created_at: datetime
    updated_at: datetime

    class Config:
        from_attributes = True


class SerialItemSearch(BaseModel):
    stock_id: Optional[str] = None
    serial_no: Optional[str] = None
    status: Optional[models.SerialStatusEnum] = None
    location: Optional[str] = None

    @field_validator("stock_id", "serial_no", "location")
    @classmethod
    def _blank_is_none(cls, value: Optional[str]) -> Optional[str]:
        return _strip(value)


class SerialHistory(BaseModel):
    item: SerialItemRead
    movements: List[SerialMovementRead]
    attributes: Dict[str, Optional[str]]


class SerialState(BaseModel):
    status: Optional[models.SerialStatusEnum] = None
    location: Optional[str] = None


# -------------------------------------------------------------------
# TRANSACTION CONTEXT
# -------------------------------------------------------------------


class TransactionLine(BaseModel):
    line_no: int = 0
    stock_id: str
    serial_no: Optional[str] = None
    quantity: Decimal = Decimal("1")
    operation: Optional[models.SerialOperationEnum] = None
    from_location: Optional[str] = None
    to_location: Optional[str] = None
    reference: Optional[str] = None
    serialized: bool = True
    attributes: Dict[str, Optional[str]] = Field(default_factory=dict)

    @field_validator("stock_id")
    @classmethod
    def _stock_id(cls, value: str) -> str:
        return (value or "").strip()

    @field_validator("serial_no", "from_location", "to_location", "reference")
    @classmethod
    def _optional_text(cls, value: Optional[str]) -> Optional[str]:
        return _strip(value)


class SerialClaim(BaseModel):
    """What validation saw for one line; commit refuses to act if it changed."""

    serial_item_id: Optional[int] = None
    version: Optional[int] = None
    status: Optional[models.SerialStatusEnum] = None
    location: Optional[str] = None


class TransactionContext(BaseModel):
    trans_type: int
    trans_no: int
    location: Optional[str] = None
    reference: Optional[str] = None
    lines: List[TransactionLine] = Field(default_factory=list)
    claims: Dict[int, SerialClaim] = Field(default_factory=dict)

    @field_validator("location", "reference")
    @classmethod
    def _optional_text(cls, value: Optional[str]) -> Optional[str]:
        return _strip(value)

    @model_validator(mode="after")
    def _number_lines(self) -> "TransactionContext":
        for index, line in enumerate(self.lines, start=1):
            if not line.line_no:
                line.line_no = index
        return self

    def serial_lines(self) -> List[TransactionLine]:
        return [line for line in self.lines if line.serialized]


# -------------------------------------------------------------------
# RESULTS
# -------------------------------------------------------------------


@dataclass
class LedgerResult:
    trans_type: int
    trans_no: int
    success: bool = True
    noop: bool = False
    message: str = ""
    error: Optional[SerialLedgerError] = None
    movements: List[models.SerialMovement] = field(default_factory=list)
    events: List[Any] = field(default_factory=list)

    @classmethod
    def failure(cls, trans_type: int, trans_no: int, error: SerialLedgerError) -> "LedgerResult":
        return cls(
            trans_type=trans_type,
            trans_no=trans_no,
            success=False,
            message=error.message,
            error=error,
        )

    @property
    def error_kind(self):
        return self.error.kind if self.error else None

    @property
    def failed_line(self) -> Optional[int]:
        return self.error.line_no if self.error else None
