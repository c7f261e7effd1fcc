"""
Typed lifecycle events.

Inbound events are requests from the host or a collaborator module; outbound
``serial.*`` events announce ledger changes after they are committed. Each
variant carries a literal ``name`` so raw payloads can be parsed back into the
right class with :func:`parse_event`.
"""
from __future__ import annotations

from datetime import date
from typing import Annotated, Any, ClassVar, Dict, Literal, Optional, Union

from pydantic import AliasChoices, BaseModel, Field, TypeAdapter, ValidationError, model_validator

from serialdb.apps.serials import models
from serialdb.apps.serials.errors import ValidationFailed
from serialdb.apps.serials.schemas import TransactionContext


class LedgerEvent(BaseModel):
    name: str


# -------------------------------------------------------------------
# INBOUND: host transaction hooks
# -------------------------------------------------------------------


class HostTransactionEvent(LedgerEvent):
    """
    Host write hook carrying the pending transaction.

    The host sends its cart under ``cart`` (or ``context``) with ``trans_type``
    and ``trans_no`` alongside it; they are folded into the cart so handlers
    only read :attr:`context`.
    """

    trans_type: Optional[int] = None
    trans_no: Optional[int] = None
    context: TransactionContext = Field(validation_alias=AliasChoices("context", "cart"))

    # Prewrite runs before the host has numbered the transaction.
    default_trans_no: ClassVar[Optional[int]] = None

    @model_validator(mode="before")
    @classmethod
    def _fold_header_into_cart(cls, data: Any) -> Any:
        if not isinstance(data, dict):
            return data
        data = dict(data)
        cart = data.pop("cart", None)
        data.setdefault("context", cart)
        if not isinstance(data["context"], dict):
            return data
        context = dict(data["context"])
        for key in ("trans_type", "trans_no"):
            if data.get(key) is not None:
                context.setdefault(key, data[key])
        if context.get("trans_no") is None and cls.default_trans_no is not None:
            context["trans_no"] = cls.default_trans_no
        data["context"] = context
        return data

    @model_validator(mode="after")
    def _mirror_header(self) -> "HostTransactionEvent":
        self.trans_type = self.context.trans_type
        self.trans_no = self.context.trans_no
        return self


class TransactionPrewrite(HostTransactionEvent):
    name: Literal["transaction.prewrite"] = "transaction.prewrite"

    default_trans_no: ClassVar[Optional[int]] = 0


class TransactionPostwrite(HostTransactionEvent):
    name: Literal["transaction.postwrite"] = "transaction.postwrite"


class TransactionPrevoid(LedgerEvent):
    name: Literal["transaction.prevoid"] = "transaction.prevoid"
    trans_type: int
    trans_no: int


# -------------------------------------------------------------------
# INBOUND: asset management collaborator
# -------------------------------------------------------------------


class AssetEvent(LedgerEvent):
    serial_no: str
    stock_id: Optional[str] = None
    location: Optional[str] = None


class AssetLoanRequested(AssetEvent):
    name: Literal["assets.employee.loan"] = "assets.employee.loan"
    loan_id: int
    employee_id: str
    loan_date: Optional[date] = None
    expected_return: Optional[date] = None


class AssetReturnRequested(AssetEvent):
    name: Literal["assets.employee.return"] = "assets.employee.return"
    loan_id: int
    return_date: Optional[date] = None


class AssetMaintenanceLogged(AssetEvent):
    name: Literal["assets.maintenance"] = "assets.maintenance"
    maintenance_id: int
    maintenance_date: Optional[date] = None
    next_maintenance_due: Optional[date] = Field(
        None, validation_alias=AliasChoices("next_maintenance_due", "next_due")
    )
    notes: Optional[str] = None


class AssetDisposalRequested(AssetEvent):
    name: Literal["assets.disposal"] = "assets.disposal"
    disposal_id: int
    disposal_date: Optional[date] = None
    reason: Optional[str] = None


# -------------------------------------------------------------------
# OUTBOUND
# -------------------------------------------------------------------


class SerialEvent(LedgerEvent):
    serial_item_id: int
    stock_id: str
    serial_no: str


class SerialMovementRecorded(SerialEvent):
    name: Literal["serial.movement"] = "serial.movement"
    trans_type: int
    trans_no: int
    movement_id: Optional[int] = None
    movement_type: models.SerialOperationEnum
    status_from: Optional[models.SerialStatusEnum] = None
    status_to: models.SerialStatusEnum
    location_from: Optional[str] = None
    location_to: Optional[str] = None
    reversal_of_id: Optional[int] = None


class SerialLoaned(SerialEvent):
    name: Literal["serial.employee.loan"] = "serial.employee.loan"
    loan_id: int
    employee_id: str
    loan_date: Optional[date] = None
    expected_return: Optional[date] = None


class SerialLoanReturned(SerialEvent):
    name: Literal["serial.employee.return"] = "serial.employee.return"
    loan_id: int
    return_date: Optional[date] = None
    location: str


class SerialMaintenanceRecorded(SerialEvent):
    name: Literal["serial.maintenance"] = "serial.maintenance"
    maintenance_id: int
    maintenance_date: Optional[date] = None
    next_maintenance_due: Optional[date] = None


class SerialDisposed(SerialEvent):
    name: Literal["serial.disposal"] = "serial.disposal"
    disposal_id: int
    disposal_date: Optional[date] = None
    reason: Optional[str] = None


AnyEvent = Annotated[
    Union[
        TransactionPrewrite,
        TransactionPostwrite,
        TransactionPrevoid,
        AssetLoanRequested,
        AssetReturnRequested,
        AssetMaintenanceLogged,
        AssetDisposalRequested,
        SerialMovementRecorded,
        SerialLoaned,
        SerialLoanReturned,
        SerialMaintenanceRecorded,
        SerialDisposed,
    ],
    Field(discriminator="name"),
]

_event_adapter = TypeAdapter(AnyEvent)


def parse_event(payload: Dict[str, Any]) -> LedgerEvent:
    try:
        return _event_adapter.validate_python(payload)
    except ValidationError as exc:
        raise ValidationFailed(
            f"Malformed event payload: {payload.get('name') if isinstance(payload, dict) else payload!r}",
            detail=[
                {"field": ".".join(str(part) for part in err["loc"]) or "name", "reason": err["msg"]}
                for err in exc.errors()
            ],
        ) from exc
