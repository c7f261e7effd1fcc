from __future__ import annotations

import logging
from typing import Any, Callable, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from serialdb.apps.events import EventGateway
from serialdb.apps.events import schemas as event_schemas
from serialdb.apps.serials import services as serial_services
from serialdb.apps.serials.errors import StoreUnavailable
from serialdb.apps.serials.schemas import LedgerResult, TransactionContext
from serialdb.settings import SerialSettings

logger = logging.getLogger(__name__)

HostWrite = Callable[[Session], Any]


class LedgerCommitFailed(Exception):
    """The ledger refused a commit after the host wrote; the host must roll back."""

    def __init__(self, result: LedgerResult) -> None:
        super().__init__(result.message)
        self.result = result

    @property
    def error(self):
        return self.result.error


def _untracked(trans_type: int, trans_no: int) -> LedgerResult:
    return LedgerResult(
        trans_type=trans_type,
        trans_no=trans_no,
        noop=True,
        message=f"Transaction type {trans_type} is not serial tracked.",
    )


class TransactionCoordinator:
    """
    Binds the serial ledger to a host's transaction lifecycle.

    ``pre_write`` blocks the host write on a validation failure, ``post_write``
    records the movements and raises when it cannot, and ``pre_void`` reverses
    them. ``run`` and ``void`` do the whole sequence in one database transaction.
    """

    def __init__(
        self,
        gateway: EventGateway,
        settings: Optional[SerialSettings] = None,
        *,
        session_factory: Optional[Callable[[], Session]] = None,
    ) -> None:
        self.gateway = gateway
        self.settings = settings or SerialSettings()
        self.session_factory = session_factory
        gateway.register_inbound(event_schemas.TransactionPrewrite, self._on_prewrite)
        gateway.register_inbound(event_schemas.TransactionPostwrite, self._on_postwrite)
        gateway.register_inbound(event_schemas.TransactionPrevoid, self._on_prevoid)

    # ---------------------------------------------------------------
    # HOOKS
    # ---------------------------------------------------------------

    def pre_write(self, db: Session, ctx: TransactionContext) -> LedgerResult:
        if not self.settings.tracks(ctx.trans_type):
            return _untracked(ctx.trans_type, ctx.trans_no)
        return serial_services.validate_transaction(db, ctx, self.settings)

    def post_write(self, db: Session, ctx: TransactionContext, *, autocommit: bool = True) -> LedgerResult:
        if not self.settings.tracks(ctx.trans_type):
            return _untracked(ctx.trans_type, ctx.trans_no)
        result = serial_services.commit_transaction(db, ctx, self.settings, autocommit=autocommit)
        if not result.success:
            logger.warning(
                "Serial ledger commit failed after host write",
                extra={"trans_type": ctx.trans_type, "trans_no": ctx.trans_no, "reason": result.message},
            )
            raise LedgerCommitFailed(result)
        if autocommit:
            self.gateway.publish_all(result.events)
        return result

    def pre_void(
        self,
        db: Session,
        trans_type: int,
        trans_no: int,
        *,
        autocommit: bool = True,
    ) -> LedgerResult:
        if not self.settings.tracks(trans_type):
            return _untracked(trans_type, trans_no)
        result = serial_services.reverse_transaction(db, trans_type, trans_no, self.settings, autocommit=autocommit)
        if result.success and autocommit:
            self.gateway.publish_all(result.events)
        return result

    # ---------------------------------------------------------------
    # FULL SEQUENCES
    # ---------------------------------------------------------------

    def run(self, db: Session, ctx: TransactionContext, host_write: HostWrite) -> LedgerResult:
        """
        Validate, run ``host_write(db)``, record the movements, then commit once.

        A validation failure returns before the host writes. Any later failure
        rolls back the host rows and the ledger rows together and propagates.
        """
        validation = self.pre_write(db, ctx)
        if not validation.success:
            return validation

        try:
            host_write(db)
            result = self.post_write(db, ctx, autocommit=False)
            db.commit()
        except LedgerCommitFailed:
            db.rollback()
            raise
        except SQLAlchemyError as exc:
            db.rollback()
            logger.warning(
                "Host transaction failed",
                extra={"trans_type": ctx.trans_type, "trans_no": ctx.trans_no, "error": str(exc)},
            )
            raise StoreUnavailable(f"Host transaction could not be committed: {exc}") from exc
        except Exception:
            db.rollback()
            raise

        self.gateway.publish_all(result.events)
        return result

    def void(
        self,
        db: Session,
        trans_type: int,
        trans_no: int,
        host_void: Optional[HostWrite] = None,
    ) -> LedgerResult:
        try:
            result = self.pre_void(db, trans_type, trans_no, autocommit=False)
            if not result.success:
                db.rollback()
                return result
            if host_void is not None:
                host_void(db)
            db.commit()
        except SQLAlchemyError as exc:
            db.rollback()
            raise StoreUnavailable(f"Void could not be committed: {exc}") from exc
        except Exception:
            db.rollback()
            raise

        self.gateway.publish_all(result.events)
        return result

    # ---------------------------------------------------------------
    # INBOUND EVENTS
    # ---------------------------------------------------------------

    def _in_session(self, work: Callable[[Session], LedgerResult]) -> LedgerResult:
        if self.session_factory is None:
            raise RuntimeError("TransactionCoordinator needs a session_factory to handle inbound events")
        db = self.session_factory()
        try:
            return work(db)
        finally:
            db.close()

    def _on_prewrite(self, event: event_schemas.TransactionPrewrite) -> LedgerResult:
        return self._in_session(lambda db: self.pre_write(db, event.context))

    def _on_postwrite(self, event: event_schemas.TransactionPostwrite) -> LedgerResult:
        return self._in_session(lambda db: self.post_write(db, event.context))

    def _on_prevoid(self, event: event_schemas.TransactionPrevoid) -> LedgerResult:
        return self._in_session(lambda db: self.pre_void(db, event.trans_type, event.trans_no))
