from __future__ import annotations

import logging
from datetime import date
from typing import Any, Callable, Dict, List, Optional, Protocol

from sqlalchemy.orm import Session

from serialdb.apps.events import EventGateway
from serialdb.apps.events import schemas as event_schemas
from serialdb.apps.serials import models, repository
from serialdb.apps.serials import services as serial_services
from serialdb.apps.serials.errors import NotFound, SerialLedgerError, ValidationFailed
from serialdb.apps.serials.schemas import LedgerResult
from serialdb.settings import SerialSettings

logger = logging.getLogger(__name__)


class AssetsCollaborator(Protocol):
    """What an asset-management module offers the serial ledger."""

    def loan_asset(
        self,
        serial_no: str,
        employee_id: str,
        loan_date: date,
        expected_return: Optional[date] = None,
    ) -> int:
        ...

    def return_asset(self, loan_id: int, return_date: Optional[date] = None) -> bool:
        ...

    def log_maintenance(
        self,
        serial_no: str,
        maintenance_date: date,
        notes: Optional[str] = None,
        next_maintenance_due: Optional[date] = None,
    ) -> int:
        ...

    def dispose_asset(self, serial_no: str, disposal_date: date, reason: Optional[str] = None) -> int:
        ...

    def get_loaned_assets(self, employee_id: Optional[str] = None) -> List[Dict[str, Any]]:
        ...


def _iso(value: Optional[date]) -> Optional[str]:
    return value.isoformat() if value else None


class AssetsIntegration:
    """
    Applies asset-management events to the serial ledger.

    Each inbound event runs in its own session. After the ledger commits, the
    movement events and a ``serial.*`` mirror of the request are published.
    """

    def __init__(
        self,
        gateway: EventGateway,
        settings: Optional[SerialSettings] = None,
        *,
        session_factory: Callable[[], Session],
    ) -> None:
        self.gateway = gateway
        self.settings = settings or SerialSettings()
        self.session_factory = session_factory
        gateway.register_inbound(event_schemas.AssetLoanRequested, self.handle_loan)
        gateway.register_inbound(event_schemas.AssetReturnRequested, self.handle_return)
        gateway.register_inbound(event_schemas.AssetMaintenanceLogged, self.handle_maintenance)
        gateway.register_inbound(event_schemas.AssetDisposalRequested, self.handle_disposal)

    def resolve_item(
        self,
        db: Session,
        *,
        serial_no: str,
        stock_id: Optional[str] = None,
    ) -> models.SerialItem:
        if stock_id:
            item = repository.get_item_by_serial(db, stock_id=stock_id, serial_no=serial_no)
            if item is None:
                raise NotFound(f"Serial {serial_no} is not registered for {stock_id}.", stock_id=stock_id, serial_no=serial_no)
            return item

        matches = repository.find_items_by_serial_no(db, serial_no)
        if not matches:
            raise NotFound(f"Serial {serial_no} is not registered.", serial_no=serial_no)
        if len(matches) > 1:
            raise ValidationFailed(
                f"Serial {serial_no} exists for several stock items; pass stock_id.",
                serial_no=serial_no,
                detail=[{"field": "stock_id", "reason": "required to disambiguate serial"}],
            )
        return matches[0]

    def _apply(
        self,
        event: event_schemas.AssetEvent,
        *,
        trans_type: int,
        trans_no: int,
        operation: Callable[[Session, models.SerialItem], LedgerResult],
        mirror: Callable[[models.SerialItem], event_schemas.SerialEvent],
    ) -> LedgerResult:
        db = self.session_factory()
        try:
            try:
                item = self.resolve_item(db, serial_no=event.serial_no, stock_id=event.stock_id)
            except SerialLedgerError as exc:
                logger.info(
                    "Asset event rejected",
                    extra={"event_name": event.name, "serial_no": event.serial_no, "reason": exc.message},
                )
                return LedgerResult.failure(trans_type, trans_no, exc)

            result = operation(db, item)
            if not result.success or result.noop:
                return result

            mirrored = mirror(item)
            result.events.append(mirrored)
            self.gateway.publish_all(result.events)
            return result
        finally:
            db.close()

    def handle_loan(self, event: event_schemas.AssetLoanRequested) -> LedgerResult:
        loan_date = event.loan_date or date.today()
        return self._apply(
            event,
            trans_type=models.TransType.ASSET_LOAN,
            trans_no=event.loan_id,
            operation=lambda db, item: serial_services.loan_item(
                db,
                item_id=item.id,
                to_location=event.location,
                trans_no=event.loan_id,
                reference=f"Loan {event.loan_id} to {event.employee_id}",
                attributes={
                    "loan_id": str(event.loan_id),
                    "employee_id": event.employee_id,
                    "loan_date": _iso(loan_date),
                    "expected_return": _iso(event.expected_return),
                },
                settings=self.settings,
            ),
            mirror=lambda item: event_schemas.SerialLoaned(
                serial_item_id=item.id,
                stock_id=item.stock_id,
                serial_no=item.serial_no,
                loan_id=event.loan_id,
                employee_id=event.employee_id,
                loan_date=loan_date,
                expected_return=event.expected_return,
            ),
        )

    def handle_return(self, event: event_schemas.AssetReturnRequested) -> LedgerResult:
        return_date = event.return_date or date.today()
        return self._apply(
            event,
            trans_type=models.TransType.ASSET_LOAN_RETURN,
            trans_no=event.loan_id,
            operation=lambda db, item: serial_services.return_loaned_item(
                db,
                item_id=item.id,
                to_location=event.location,
                trans_no=event.loan_id,
                reference=f"Return of loan {event.loan_id}",
                attributes={"loan_return_date": _iso(return_date)},
                settings=self.settings,
            ),
            mirror=lambda item: event_schemas.SerialLoanReturned(
                serial_item_id=item.id,
                stock_id=item.stock_id,
                serial_no=item.serial_no,
                loan_id=event.loan_id,
                return_date=return_date,
                location=item.location,
            ),
        )

    def handle_maintenance(self, event: event_schemas.AssetMaintenanceLogged) -> LedgerResult:
        maintenance_date = event.maintenance_date or date.today()
        return self._apply(
            event,
            trans_type=models.TransType.ASSET_MAINTENANCE,
            trans_no=event.maintenance_id,
            operation=lambda db, item: serial_services.log_maintenance(
                db,
                item_id=item.id,
                trans_no=event.maintenance_id,
                reference=(event.notes or f"Maintenance {event.maintenance_id}"),
                attributes={
                    "maintenance_id": str(event.maintenance_id),
                    "last_maintenance": _iso(maintenance_date),
                    "next_maintenance_due": _iso(event.next_maintenance_due),
                },
                settings=self.settings,
            ),
            mirror=lambda item: event_schemas.SerialMaintenanceRecorded(
                serial_item_id=item.id,
                stock_id=item.stock_id,
                serial_no=item.serial_no,
                maintenance_id=event.maintenance_id,
                maintenance_date=maintenance_date,
                next_maintenance_due=event.next_maintenance_due,
            ),
        )

    def handle_disposal(self, event: event_schemas.AssetDisposalRequested) -> LedgerResult:
        disposal_date = event.disposal_date or date.today()
        return self._apply(
            event,
            trans_type=models.TransType.ASSET_DISPOSAL,
            trans_no=event.disposal_id,
            operation=lambda db, item: serial_services.dispose_item(
                db,
                item_id=item.id,
                trans_no=event.disposal_id,
                reference=(event.reason or f"Disposal {event.disposal_id}"),
                attributes={
                    "disposal_id": str(event.disposal_id),
                    "disposal_date": _iso(disposal_date),
                    "disposal_reason": event.reason,
                },
                settings=self.settings,
            ),
            mirror=lambda item: event_schemas.SerialDisposed(
                serial_item_id=item.id,
                stock_id=item.stock_id,
                serial_no=item.serial_no,
                disposal_id=event.disposal_id,
                disposal_date=disposal_date,
                reason=event.reason,
            ),
        )
