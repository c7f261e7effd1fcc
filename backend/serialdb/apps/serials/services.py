"""
Serial lifecycle services.

Responsibilities:
- Validate the serialized lines of a host transaction without writing.
- Commit them as movements plus item status/location updates in one unit of
  work, idempotently per (trans_type, trans_no).
- Reverse a committed transaction when the host voids it.
- Generate serial numbers, and fold movements back into item state.

Status rules live in ``serialdb.apps.workflow``; this module decides where an
item goes and records what happened.
"""
from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Dict, Iterable, List, Optional, Set, Tuple

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from serialdb.apps.events import schemas as event_schemas
from serialdb.apps.workflow import TransitionError, plan_transition
from serialdb.settings import SerialSettings
from serialdb.utils.identifiers import build_serial

from . import models, repository, schemas
from .errors import (
    ConcurrencyConflict,
    DuplicateSerial,
    GenerationExhausted,
    InvalidTransition,
    NotFound,
    SerialLedgerError,
    StoreUnavailable,
    ValidationFailed,
)

logger = logging.getLogger(__name__)

Op = models.SerialOperationEnum
Status = models.SerialStatusEnum

MAX_SERIAL_LENGTH = models.SERIAL_NO_LENGTH
SERIAL_PATTERN = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._/-]*$")

DEFAULT_OPERATIONS: Dict[int, models.SerialOperationEnum] = {
    models.TransType.SALES_INVOICE: Op.SELL,
    models.TransType.CUSTOMER_DELIVERY: Op.SELL,
    models.TransType.CUSTOMER_CREDIT: Op.RETURN,
    models.TransType.LOCATION_TRANSFER: Op.TRANSFER,
    models.TransType.SUPPLIER_RECEIPT: Op.RECEIVE,
    models.TransType.MANUFACTURING_RECEIPT: Op.RECEIVE,
    models.TransType.SERIAL_ENTRY: Op.RECEIVE,
    models.TransType.ASSET_LOAN: Op.LOAN,
    models.TransType.ASSET_LOAN_RETURN: Op.LOAN_RETURN,
    models.TransType.ASSET_MAINTENANCE: Op.MAINTENANCE,
    models.TransType.ASSET_DISPOSAL: Op.DISPOSE,
}

# Operations whose context location names where the item comes from rather
# than where it goes.
_SOURCE_LOCATION_OPS = {Op.SELL, Op.TRANSFER}


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _settings(settings: Optional[SerialSettings]) -> SerialSettings:
    return settings or SerialSettings()


# -------------------------------------------------------------------
# SERIAL NUMBERS
# -------------------------------------------------------------------


def serial_format_error(serial_no: Optional[str]) -> Optional[str]:
    if not serial_no:
        return "serial number is required"
    if len(serial_no) > MAX_SERIAL_LENGTH:
        return f"serial number exceeds {MAX_SERIAL_LENGTH} characters"
    if not SERIAL_PATTERN.match(serial_no):
        return "serial number may only contain letters, digits, '.', '_', '/' and '-' and must start with a letter or digit"
    return None


def generate_serial(
    db: Session,
    stock_id: str,
    settings: Optional[SerialSettings] = None,
    *,
    exclude: Iterable[str] = (),
) -> str:
    """
    Return a serial number for ``stock_id`` that is not yet in the ledger.

    Candidates look like ``TES-261019-7K2Q9ZXA``; a collision draws a new
    random block until ``max_generation_attempts`` is spent.
    """
    settings = _settings(settings)
    taken = set(exclude)
    for attempt in range(1, settings.max_generation_attempts + 1):
        candidate = build_serial(stock_id)
        if candidate not in taken and repository.get_item_by_serial(db, stock_id=stock_id, serial_no=candidate) is None:
            return candidate
        taken.add(candidate)
        logger.info(
            "Generated serial collided, retrying",
            extra={"stock_id": stock_id, "serial_no": candidate, "attempt": attempt},
        )
    raise GenerationExhausted(
        f"Could not generate a free serial number for {stock_id} after "
        f"{settings.max_generation_attempts} attempts; enter one manually.",
        stock_id=stock_id,
    )


# -------------------------------------------------------------------
# PLANNING
# -------------------------------------------------------------------


def resolve_operation(trans_type: int, line: schemas.TransactionLine) -> Optional[models.SerialOperationEnum]:
    if line.operation:
        return line.operation
    if int(trans_type) == models.TransType.INVENTORY_ADJUSTMENT:
        if line.quantity > 0:
            return Op.RECEIVE
        if line.quantity < 0:
            return Op.DISPOSE
        return None
    return DEFAULT_OPERATIONS.get(int(trans_type))


def _open_loan(db: Session, item: models.SerialItem) -> Optional[models.SerialMovement]:
    for movement in reversed(repository.list_movements_by_serial(db, item.id)):
        if movement.reversed_at is not None or movement.movement_type == Op.REVERSAL:
            continue
        if movement.movement_type == Op.MAINTENANCE:
            continue
        return movement if movement.movement_type == Op.LOAN else None
    return None


def _current_state(db: Session, item: Optional[models.SerialItem]) -> Dict[str, Any]:
    if item is None:
        return {"status": None, "location": None, "on_loan": False, "loaned_from": None}
    loan = _open_loan(db, item) if item.status == Status.ACTIVE else None
    return {
        "status": item.status,
        "location": item.location,
        "on_loan": loan is not None,
        "loaned_from": loan.location_from if loan else None,
    }


def _target_location(
    operation: models.SerialOperationEnum,
    state: Dict[str, Any],
    line: schemas.TransactionLine,
    ctx: schemas.TransactionContext,
) -> Optional[str]:
    if operation == Op.SELL:
        return models.LOCATION_SOLD
    if operation == Op.DISPOSE:
        return models.LOCATION_SCRAPPED
    if operation == Op.MAINTENANCE:
        return state["location"]
    if operation == Op.TRANSFER:
        return line.to_location
    if operation == Op.LOAN:
        return line.to_location or models.LOCATION_LOAN
    if operation == Op.LOAN_RETURN:
        return line.to_location or ctx.location or state["loaned_from"]
    if operation == Op.REISSUE:
        return line.to_location or ctx.location or state["location"]
    return line.to_location or ctx.location


def _source_location(
    operation: models.SerialOperationEnum,
    line: schemas.TransactionLine,
    ctx: schemas.TransactionContext,
) -> Optional[str]:
    if line.from_location:
        return line.from_location
    if operation in _SOURCE_LOCATION_OPS:
        return ctx.location
    return None


def _transition_failure(
    exc: TransitionError,
    *,
    line: schemas.TransactionLine,
    operation: models.SerialOperationEnum,
    state: Dict[str, Any],
) -> SerialLedgerError:
    current = state["status"].value if state["status"] else None
    reasons = "; ".join(item["reason"] for item in exc.detail)
    if exc.code == "invalid_transition":
        return InvalidTransition(
            f"Serial {line.serial_no}: {reasons}.",
            stock_id=line.stock_id,
            serial_no=line.serial_no,
            line_no=line.line_no,
            current=current,
            requested=operation.value,
            detail=list(exc.detail),
        )
    return ValidationFailed(
        f"Serial {line.serial_no}: {reasons}.",
        stock_id=line.stock_id,
        serial_no=line.serial_no,
        line_no=line.line_no,
        current=current,
        requested=operation.value,
        detail=list(exc.detail),
    )


def _field_failures(
    ctx: schemas.TransactionContext,
    line: schemas.TransactionLine,
    settings: SerialSettings,
) -> List[Dict[str, str]]:
    limits = (
        ("stock_id", line.stock_id, models.STOCK_ID_LENGTH),
        ("from_location", line.from_location, models.LOCATION_LENGTH),
        ("to_location", line.to_location, models.LOCATION_LENGTH),
        ("location", ctx.location, models.LOCATION_LENGTH),
        ("reference", line.reference or ctx.reference, models.REFERENCE_LENGTH),
    )
    failures = [
        {"field": field, "reason": f"{field} exceeds {limit} characters"}
        for field, value, limit in limits
        if value and len(value) > limit
    ]
    if settings.enable_attributes:
        for name in line.attributes:
            reason = repository.attribute_name_error(name)
            if reason:
                failures.append({"field": "attributes", "reason": reason})
    return failures


@dataclass
class _LinePlan:
    operation: models.SerialOperationEnum
    item: Optional[models.SerialItem]
    state: Dict[str, Any]
    status_to: models.SerialStatusEnum
    location_to: str


def _plan_line(
    db: Session,
    ctx: schemas.TransactionContext,
    line: schemas.TransactionLine,
    item: Optional[models.SerialItem],
    operation: models.SerialOperationEnum,
) -> _LinePlan:
    state = _current_state(db, item)
    target = _target_location(operation, state, line, ctx)
    after = {"location": target, "from_location": _source_location(operation, line, ctx)}
    try:
        status_to = plan_transition(
            db,
            operation=operation,
            from_state=state["status"],
            before_obj=state,
            after_obj=after,
        )
    except TransitionError as exc:
        raise _transition_failure(exc, line=line, operation=operation, state=state) from exc
    return _LinePlan(operation=operation, item=item, state=state, status_to=status_to, location_to=target)


def _check_line(
    db: Session,
    ctx: schemas.TransactionContext,
    line: schemas.TransactionLine,
    settings: SerialSettings,
    seen: Set[Tuple[str, str]],
) -> schemas.SerialClaim:
    operation = resolve_operation(ctx.trans_type, line)
    if operation is None:
        raise ValidationFailed(
            f"No serial operation is defined for transaction type {ctx.trans_type}.",
            stock_id=line.stock_id,
            serial_no=line.serial_no,
            line_no=line.line_no,
            detail=[{"field": "operation", "reason": "operation required"}],
        )
    if not line.stock_id:
        raise ValidationFailed(
            "Stock code is required for a serialized line.",
            serial_no=line.serial_no,
            line_no=line.line_no,
            detail=[{"field": "stock_id", "reason": "stock code required"}],
        )
    if abs(line.quantity) != Decimal("1"):
        raise ValidationFailed(
            f"A serialized line covers exactly one unit, got quantity {line.quantity}.",
            stock_id=line.stock_id,
            serial_no=line.serial_no,
            line_no=line.line_no,
            detail=[{"field": "quantity", "reason": "must be 1 or -1"}],
        )
    failures = _field_failures(ctx, line, settings)
    if failures:
        raise ValidationFailed(
            f"Line {line.line_no}: {'; '.join(failure['reason'] for failure in failures)}.",
            stock_id=line.stock_id,
            serial_no=line.serial_no,
            line_no=line.line_no,
            detail=failures,
        )

    if not line.serial_no and operation == Op.RECEIVE and settings.auto_generate:
        pending = {serial for stock, serial in seen if stock == line.stock_id}
        line.serial_no = generate_serial(db, line.stock_id, settings, exclude=pending)

    reason = serial_format_error(line.serial_no)
    if reason:
        raise ValidationFailed(
            f"Line {line.line_no}: {reason}.",
            stock_id=line.stock_id,
            serial_no=line.serial_no,
            line_no=line.line_no,
            detail=[{"field": "serial_no", "reason": reason}],
        )

    key = (line.stock_id, line.serial_no)
    if key in seen:
        raise ValidationFailed(
            f"Serial {line.serial_no} appears more than once in this transaction.",
            stock_id=line.stock_id,
            serial_no=line.serial_no,
            line_no=line.line_no,
            detail=[{"field": "serial_no", "reason": "duplicate within transaction"}],
        )
    seen.add(key)

    item = repository.get_item_by_serial(db, stock_id=line.stock_id, serial_no=line.serial_no)
    if operation == Op.RECEIVE and item is not None:
        raise DuplicateSerial(
            f"Serial {line.serial_no} already exists for {line.stock_id}.",
            stock_id=line.stock_id,
            serial_no=line.serial_no,
            line_no=line.line_no,
            current=item.status.value,
            requested=operation.value,
        )
    if operation != Op.RECEIVE and item is None:
        raise NotFound(
            f"Serial {line.serial_no} is not registered for {line.stock_id}.",
            stock_id=line.stock_id,
            serial_no=line.serial_no,
            line_no=line.line_no,
            requested=operation.value,
        )

    _plan_line(db, ctx, line, item, operation)
    if item is None:
        return schemas.SerialClaim()
    return schemas.SerialClaim(
        serial_item_id=item.id,
        version=item.version,
        status=item.status,
        location=item.location,
    )


def _store_failure(exc: SQLAlchemyError) -> StoreUnavailable:
    logger.warning("Ledger store unavailable", extra={"error": str(exc)})
    return StoreUnavailable(f"Ledger store unavailable: {exc}")


def _key_taken(ctx: schemas.TransactionContext) -> ConcurrencyConflict:
    return ConcurrencyConflict(
        f"Transaction {ctx.trans_type}/{ctx.trans_no} was recorded by a concurrent caller; retry with a new number."
    )


# -------------------------------------------------------------------
# VALIDATE / COMMIT / REVERSE
# -------------------------------------------------------------------


def validate_transaction(
    db: Session,
    ctx: schemas.TransactionContext,
    settings: Optional[SerialSettings] = None,
    *,
    require_new_key: bool = False,
) -> schemas.LedgerResult:
    """
    Check every serialized line of ``ctx`` without writing anything.

    Stops at the first failing line. On success the item id and version seen
    for each line are stored in ``ctx.claims`` for commit to compare against.
    With ``require_new_key`` an identifier that is already recorded is a
    conflict rather than a no-op.
    """
    settings = _settings(settings)
    result = schemas.LedgerResult(trans_type=ctx.trans_type, trans_no=ctx.trans_no)
    if not settings.enable_tracking:
        result.noop = True
        result.message = "Serial tracking is disabled."
        return result

    try:
        if repository.transaction_recorded(db, trans_type=ctx.trans_type, trans_no=ctx.trans_no):
            if require_new_key:
                raise _key_taken(ctx)
            result.noop = True
            result.message = "Transaction already recorded in the serial ledger."
            return result

        seen: Set[Tuple[str, str]] = set()
        claims: Dict[int, schemas.SerialClaim] = {}
        for line in ctx.serial_lines():
            claims[line.line_no] = _check_line(db, ctx, line, settings, seen)
    except SerialLedgerError as exc:
        if exc.fatal:
            raise
        logger.info(
            "Serial validation failed",
            extra={
                "trans_type": ctx.trans_type,
                "trans_no": ctx.trans_no,
                "line_no": exc.line_no,
                "reason": exc.message,
            },
        )
        return schemas.LedgerResult.failure(ctx.trans_type, ctx.trans_no, exc)
    except SQLAlchemyError as exc:
        raise _store_failure(exc) from exc

    ctx.claims = claims
    result.message = f"{len(claims)} serialized line(s) validated."
    return result


def _lock_claimed_item(
    db: Session,
    line: schemas.TransactionLine,
    claim: schemas.SerialClaim,
) -> Optional[models.SerialItem]:
    if claim.serial_item_id is None:
        # Validation saw no item; another receipt may have created it since.
        existing = repository.get_item_by_serial(
            db, stock_id=line.stock_id, serial_no=line.serial_no, for_update=True
        )
        if existing is not None:
            raise ConcurrencyConflict(
                f"Serial {line.serial_no} was registered by a concurrent transaction.",
                stock_id=line.stock_id,
                serial_no=line.serial_no,
                line_no=line.line_no,
                current=existing.status.value,
            )
        return None

    item = repository.get_item(db, claim.serial_item_id, for_update=True)
    if item is None or item.version != claim.version:
        raise ConcurrencyConflict(
            f"Serial {line.serial_no} was changed by a concurrent transaction; retry the whole transaction.",
            stock_id=line.stock_id,
            serial_no=line.serial_no,
            line_no=line.line_no,
            current=item.status.value if item else None,
            requested=claim.status.value if claim.status else None,
        )
    return item


def _apply_line(
    db: Session,
    ctx: schemas.TransactionContext,
    line: schemas.TransactionLine,
    claim: schemas.SerialClaim,
    settings: SerialSettings,
) -> models.SerialMovement:
    item = _lock_claimed_item(db, line, claim)
    operation = resolve_operation(ctx.trans_type, line)
    plan = _plan_line(db, ctx, line, item, operation)

    if item is None:
        item = repository.create_item(
            db,
            data=schemas.SerialItemCreate(
                stock_id=line.stock_id,
                serial_no=line.serial_no,
                location=plan.location_to,
                status=plan.status_to,
            ),
        )
    else:
        item.status = plan.status_to
        item.location = plan.location_to
        item.updated_at = _utcnow()

    movement = repository.create_movement(
        db,
        item=item,
        trans_type=ctx.trans_type,
        trans_no=ctx.trans_no,
        movement_type=operation,
        location_from=plan.state["location"],
        location_to=plan.location_to,
        status_from=plan.state["status"],
        status_to=plan.status_to,
        quantity=line.quantity,
        reference=line.reference or ctx.reference,
    )

    if settings.enable_attributes:
        for name, value in line.attributes.items():
            repository.create_attribute(db, serial_item_id=item.id, attribute_name=name, attribute_value=value)
    return movement


def movement_event(movement: models.SerialMovement) -> event_schemas.SerialMovementRecorded:
    return event_schemas.SerialMovementRecorded(
        serial_item_id=movement.serial_item_id,
        stock_id=movement.stock_id,
        serial_no=movement.serial_no,
        trans_type=movement.trans_type,
        trans_no=movement.trans_no,
        movement_id=movement.id,
        movement_type=movement.movement_type,
        status_from=movement.status_from,
        status_to=movement.status_to,
        location_from=movement.location_from,
        location_to=movement.location_to,
        reversal_of_id=movement.reversal_of_id,
    )


def commit_transaction(
    db: Session,
    ctx: schemas.TransactionContext,
    settings: Optional[SerialSettings] = None,
    *,
    autocommit: bool = True,
    require_new_key: bool = False,
) -> schemas.LedgerResult:
    """
    Record the serialized lines of ``ctx`` as movements and update the items.

    All lines land in one unit of work. A transaction identifier that already
    has live movements is a no-op success, or a concurrency conflict when
    ``require_new_key`` is set. When ``ctx`` carries no claims it is validated
    first. With ``autocommit=False`` the caller commits the session.
    """
    settings = _settings(settings)
    if not settings.enable_tracking:
        return schemas.LedgerResult(
            trans_type=ctx.trans_type, trans_no=ctx.trans_no, noop=True, message="Serial tracking is disabled."
        )

    try:
        already_recorded = repository.transaction_recorded(db, trans_type=ctx.trans_type, trans_no=ctx.trans_no)
    except SQLAlchemyError as exc:
        raise _store_failure(exc) from exc
    if already_recorded and require_new_key:
        conflict = _key_taken(ctx)
        logger.warning(
            "Serial transaction number already taken",
            extra={"trans_type": ctx.trans_type, "trans_no": ctx.trans_no},
        )
        return schemas.LedgerResult.failure(ctx.trans_type, ctx.trans_no, conflict)
    if already_recorded:
        return schemas.LedgerResult(
            trans_type=ctx.trans_type,
            trans_no=ctx.trans_no,
            noop=True,
            message="Transaction already recorded in the serial ledger.",
        )

    lines = ctx.serial_lines()
    if any(line.line_no not in ctx.claims for line in lines):
        validation = validate_transaction(db, ctx, settings, require_new_key=require_new_key)
        if not validation.success or validation.noop:
            return validation

    movements: List[models.SerialMovement] = []
    try:
        with repository.unit_of_work(db, autocommit=autocommit):
            for line in lines:
                movements.append(_apply_line(db, ctx, line, ctx.claims[line.line_no], settings))
    except SerialLedgerError as exc:
        if exc.fatal:
            raise
        log = logger.warning if isinstance(exc, ConcurrencyConflict) else logger.info
        log(
            "Serial commit rejected",
            extra={
                "trans_type": ctx.trans_type,
                "trans_no": ctx.trans_no,
                "line_no": exc.line_no,
                "kind": exc.kind.value,
                "reason": exc.message,
            },
        )
        return schemas.LedgerResult.failure(ctx.trans_type, ctx.trans_no, exc)

    logger.info(
        "Serial transaction committed",
        extra={"trans_type": ctx.trans_type, "trans_no": ctx.trans_no, "movements": len(movements)},
    )
    return schemas.LedgerResult(
        trans_type=ctx.trans_type,
        trans_no=ctx.trans_no,
        message=f"{len(movements)} serial movement(s) recorded.",
        movements=movements,
        events=[movement_event(movement) for movement in movements],
    )


def _reverse_movement(
    db: Session,
    movement: models.SerialMovement,
    settings: SerialSettings,
    now: datetime,
) -> Optional[models.SerialMovement]:
    item = repository.get_item(db, movement.serial_item_id, for_update=True)
    if item is None:
        raise NotFound(
            f"Serial item {movement.serial_item_id} for movement {movement.id} no longer exists.",
            stock_id=movement.stock_id,
            serial_no=movement.serial_no,
        )

    latest = repository.latest_live_movement(db, item.id)
    if (
        latest is None
        or latest.id != movement.id
        or item.status != movement.status_to
        or item.location != movement.location_to
    ):
        raise InvalidTransition(
            f"Serial {item.serial_no} has moved since transaction "
            f"{movement.trans_type}/{movement.trans_no}; reverse the later transaction first.",
            stock_id=item.stock_id,
            serial_no=item.serial_no,
            current=item.status.value,
            requested=Op.REVERSAL.value,
        )

    received = movement.status_from is None
    status_before, location_before = item.status, item.location
    if received:
        # Retired rather than removed so the pair cannot be received again.
        item.status = Status.SCRAPPED
        item.location = models.LOCATION_SCRAPPED
    else:
        item.status = movement.status_from
        item.location = movement.location_from
    item.updated_at = now

    # A receipt keeps its ledger entry even in delete mode: the retired row
    # must still fold to scrapped.
    if settings.reversal_mode == "delete" and not received:
        repository.delete_movement(db, movement)
        return None

    movement.reversed_at = now
    return repository.create_movement(
        db,
        item=item,
        trans_type=movement.trans_type,
        trans_no=movement.trans_no,
        movement_type=Op.REVERSAL,
        location_from=location_before,
        location_to=item.location,
        status_from=status_before,
        status_to=item.status,
        quantity=-(movement.quantity or Decimal("1")),
        reference=f"Reversal of movement {movement.id}",
        reversal_of_id=movement.id,
    )


def _removed_movement_event(
    snapshot: event_schemas.SerialMovementRecorded,
) -> event_schemas.SerialMovementRecorded:
    """Announce a movement deleted in ``delete`` mode as a reversal with no row of its own."""
    return snapshot.model_copy(
        update={
            "movement_type": Op.REVERSAL,
            "status_from": snapshot.status_to,
            "status_to": snapshot.status_from,
            "location_from": snapshot.location_to,
            "location_to": snapshot.location_from,
            "reversal_of_id": snapshot.movement_id,
            "movement_id": None,
        }
    )


def reverse_transaction(
    db: Session,
    trans_type: int,
    trans_no: int,
    settings: Optional[SerialSettings] = None,
    *,
    autocommit: bool = True,
) -> schemas.LedgerResult:
    """
    Undo the live movements of a host transaction, newest first.

    In ``compensate`` mode every original movement is stamped ``reversed_at``
    and answered by a ``reversal`` movement; in ``delete`` mode the originals
    are removed. A transaction with nothing to reverse is a no-op success.
    """
    settings = _settings(settings)
    result = schemas.LedgerResult(trans_type=trans_type, trans_no=trans_no)
    if not settings.enable_tracking:
        result.noop = True
        result.message = "Serial tracking is disabled."
        return result

    try:
        originals = repository.list_movements_by_transaction(
            db, trans_type=trans_type, trans_no=trans_no, live_only=True
        )
    except SQLAlchemyError as exc:
        raise _store_failure(exc) from exc
    if not originals:
        result.noop = True
        result.message = "No serial movements to reverse."
        return result

    compensations: List[models.SerialMovement] = []
    events: List[event_schemas.SerialMovementRecorded] = []
    now = _utcnow()
    try:
        with repository.unit_of_work(db, autocommit=autocommit):
            for movement in reversed(originals):
                snapshot = movement_event(movement)
                compensation = _reverse_movement(db, movement, settings, now)
                if compensation is None:
                    events.append(_removed_movement_event(snapshot))
                else:
                    compensations.append(compensation)
                    events.append(movement_event(compensation))
    except SerialLedgerError as exc:
        if exc.fatal:
            raise
        logger.info(
            "Serial reversal rejected",
            extra={"trans_type": trans_type, "trans_no": trans_no, "reason": exc.message},
        )
        return schemas.LedgerResult.failure(trans_type, trans_no, exc)

    logger.info(
        "Serial transaction reversed",
        extra={"trans_type": trans_type, "trans_no": trans_no, "movements": len(originals)},
    )
    result.message = f"{len(originals)} serial movement(s) reversed."
    result.movements = compensations
    result.events = events
    return result


# -------------------------------------------------------------------
# SINGLE-ITEM OPERATIONS
# -------------------------------------------------------------------


def run_single(
    db: Session,
    *,
    trans_type: int,
    trans_no: Optional[int],
    line: schemas.TransactionLine,
    location: Optional[str] = None,
    reference: Optional[str] = None,
    settings: Optional[SerialSettings] = None,
    autocommit: bool = True,
) -> schemas.LedgerResult:
    """
    Validate and commit a one-line transaction, numbering it when ``trans_no`` is omitted.

    A number handed out here may be taken by a concurrent caller before this
    commit lands; that case is reported as a concurrency conflict.
    """
    require_new_key = trans_no is None
    if require_new_key:
        trans_no = repository.next_trans_no(db, trans_type)
    ctx = schemas.TransactionContext(
        trans_type=trans_type,
        trans_no=trans_no,
        location=location,
        reference=reference,
        lines=[line],
    )
    validation = validate_transaction(db, ctx, settings, require_new_key=require_new_key)
    if not validation.success or validation.noop:
        return validation
    return commit_transaction(db, ctx, settings, autocommit=autocommit, require_new_key=require_new_key)


def _item_failure(trans_type: int, item_id: int) -> schemas.LedgerResult:
    return schemas.LedgerResult.failure(
        trans_type, 0, NotFound(f"Serial item {item_id} not found.")
    )


def register_item(
    db: Session,
    *,
    stock_id: str,
    location: str,
    serial_no: Optional[str] = None,
    trans_no: Optional[int] = None,
    reference: Optional[str] = None,
    attributes: Optional[Dict[str, Optional[str]]] = None,
    settings: Optional[SerialSettings] = None,
) -> schemas.LedgerResult:
    """Serial entry: receive one unit into ``location``."""
    line = schemas.TransactionLine(
        stock_id=stock_id,
        serial_no=serial_no,
        operation=Op.RECEIVE,
        to_location=location,
        reference=reference,
        attributes=attributes or {},
    )
    return run_single(
        db,
        trans_type=models.TransType.SERIAL_ENTRY,
        trans_no=trans_no,
        line=line,
        reference=reference,
        settings=settings,
    )


def _run_for_item(
    db: Session,
    item_id: int,
    *,
    trans_type: int,
    operation: models.SerialOperationEnum,
    trans_no: Optional[int],
    to_location: Optional[str] = None,
    reference: Optional[str] = None,
    attributes: Optional[Dict[str, Optional[str]]] = None,
    settings: Optional[SerialSettings] = None,
    autocommit: bool = True,
) -> schemas.LedgerResult:
    item = repository.get_item(db, item_id)
    if item is None:
        return _item_failure(trans_type, item_id)
    line = schemas.TransactionLine(
        stock_id=item.stock_id,
        serial_no=item.serial_no,
        quantity=Decimal("-1") if operation == Op.DISPOSE else Decimal("1"),
        operation=operation,
        to_location=to_location,
        reference=reference,
        attributes=attributes or {},
    )
    return run_single(
        db,
        trans_type=trans_type,
        trans_no=trans_no,
        line=line,
        reference=reference,
        settings=settings,
        autocommit=autocommit,
    )


def transfer_item(
    db: Session,
    *,
    item_id: int,
    to_location: str,
    trans_no: Optional[int] = None,
    reference: Optional[str] = None,
    settings: Optional[SerialSettings] = None,
) -> schemas.LedgerResult:
    return _run_for_item(
        db,
        item_id,
        trans_type=models.TransType.LOCATION_TRANSFER,
        operation=Op.TRANSFER,
        trans_no=trans_no,
        to_location=to_location,
        reference=reference,
        settings=settings,
    )


def dispose_item(
    db: Session,
    *,
    item_id: int,
    trans_no: Optional[int] = None,
    reference: Optional[str] = None,
    attributes: Optional[Dict[str, Optional[str]]] = None,
    settings: Optional[SerialSettings] = None,
    autocommit: bool = True,
) -> schemas.LedgerResult:
    return _run_for_item(
        db,
        item_id,
        trans_type=models.TransType.ASSET_DISPOSAL,
        operation=Op.DISPOSE,
        trans_no=trans_no,
        reference=reference,
        attributes=attributes,
        settings=settings,
        autocommit=autocommit,
    )


def loan_item(
    db: Session,
    *,
    item_id: int,
    to_location: Optional[str] = None,
    trans_no: Optional[int] = None,
    reference: Optional[str] = None,
    attributes: Optional[Dict[str, Optional[str]]] = None,
    settings: Optional[SerialSettings] = None,
    autocommit: bool = True,
) -> schemas.LedgerResult:
    return _run_for_item(
        db,
        item_id,
        trans_type=models.TransType.ASSET_LOAN,
        operation=Op.LOAN,
        trans_no=trans_no,
        to_location=to_location,
        reference=reference,
        attributes=attributes,
        settings=settings,
        autocommit=autocommit,
    )


def return_loaned_item(
    db: Session,
    *,
    item_id: int,
    to_location: Optional[str] = None,
    trans_no: Optional[int] = None,
    reference: Optional[str] = None,
    attributes: Optional[Dict[str, Optional[str]]] = None,
    settings: Optional[SerialSettings] = None,
    autocommit: bool = True,
) -> schemas.LedgerResult:
    return _run_for_item(
        db,
        item_id,
        trans_type=models.TransType.ASSET_LOAN_RETURN,
        operation=Op.LOAN_RETURN,
        trans_no=trans_no,
        to_location=to_location,
        reference=reference,
        attributes=attributes,
        settings=settings,
        autocommit=autocommit,
    )


def log_maintenance(
    db: Session,
    *,
    item_id: int,
    trans_no: Optional[int] = None,
    reference: Optional[str] = None,
    attributes: Optional[Dict[str, Optional[str]]] = None,
    settings: Optional[SerialSettings] = None,
    autocommit: bool = True,
) -> schemas.LedgerResult:
    return _run_for_item(
        db,
        item_id,
        trans_type=models.TransType.ASSET_MAINTENANCE,
        operation=Op.MAINTENANCE,
        trans_no=trans_no,
        reference=reference,
        attributes=attributes,
        settings=settings,
        autocommit=autocommit,
    )


# -------------------------------------------------------------------
# INQUIRY
# -------------------------------------------------------------------


def get_serial_history(db: Session, item_id: int) -> schemas.SerialHistory:
    item = repository.require_item(db, item_id)
    movements = repository.list_movements_by_serial(db, item.id)
    attributes = repository.list_attributes_by_serial(db, item.id)
    return schemas.SerialHistory(
        item=schemas.SerialItemRead.model_validate(item),
        movements=[schemas.SerialMovementRead.model_validate(movement) for movement in movements],
        attributes={attribute.attribute_name: attribute.attribute_value for attribute in attributes},
    )


def replay_item(db: Session, item_id: int) -> schemas.SerialState:
    """
    Fold the item's movements, oldest first, into a status and location.

    Raises InvalidTransition when a movement does not start from the state the
    previous one left.
    """
    state = schemas.SerialState()
    for movement in repository.list_movements_by_serial(db, item_id):
        if movement.status_from != state.status or movement.location_from != state.location:
            raise InvalidTransition(
                f"Movement {movement.id} starts from {movement.status_from}/{movement.location_from} "
                f"but the ledger was at {state.status}/{state.location}.",
                stock_id=movement.stock_id,
                serial_no=movement.serial_no,
                current=state.status.value if state.status else None,
                requested=movement.movement_type.value,
            )
        state = schemas.SerialState(status=movement.status_to, location=movement.location_to)
    return state


def verify_item(db: Session, item_id: int) -> List[Dict[str, str]]:
    """Differences between the stored item and its replayed ledger; empty when they agree."""
    item = repository.require_item(db, item_id)
    try:
        state = replay_item(db, item_id)
    except InvalidTransition as exc:
        return [{"field": "movements", "reason": exc.message}]
    problems: List[Dict[str, str]] = []
    if state.status != item.status:
        problems.append({"field": "status", "reason": f"stored {item.status.value}, ledger {state.status}"})
    if state.location != item.location:
        problems.append({"field": "location", "reason": f"stored {item.location}, ledger {state.location}"})
    return problems
