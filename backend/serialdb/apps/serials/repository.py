"""
Ledger store for serialized items.

Plain query helpers over the three serial tables plus the unit of work that
makes a group of writes durable together. Nothing here decides whether a
status change is allowed; that lives in the lifecycle services.
"""
from __future__ import annotations

import logging
from contextlib import contextmanager
from datetime import datetime, timezone
from decimal import Decimal
from typing import Dict, Iterator, List, Optional

from sqlalchemy import func
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from serialdb.database import Base

from . import models, schemas
from .errors import (
    ConcurrencyConflict,
    DuplicateSerial,
    NotFound,
    SerialLedgerError,
    StoreUnavailable,
    ValidationFailed,
)

logger = logging.getLogger(__name__)

SERIAL_TABLES = (
    models.SerialItem.__table__,
    models.SerialMovement.__table__,
    models.SerialAttribute.__table__,
)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _is_serial_unique_violation(exc: IntegrityError) -> bool:
    text = str(exc.orig or exc)
    return "uq_serial_items_stock_serial" in text or "serial_items.stock_id, serial_items.serial_no" in text


# -------------------------------------------------------------------
# UNIT OF WORK
# -------------------------------------------------------------------


@contextmanager
def unit_of_work(db: Session, *, autocommit: bool = True) -> Iterator[Session]:
    """
    Group ledger writes so they land together or not at all.

    With ``autocommit=False`` the writes are only flushed; the caller commits,
    which lets a host put its own rows in the same database transaction.
    Store failures are rolled back and re-raised as ledger errors.
    """
    try:
        yield db
        db.flush()
        if autocommit:
            db.commit()
    except SerialLedgerError:
        db.rollback()
        raise
    except StaleDataError as exc:
        db.rollback()
        logger.warning("Serial item changed by a concurrent writer", extra={"error": str(exc)})
        raise ConcurrencyConflict(
            "Serial item was modified by a concurrent transaction; retry the whole transaction."
        ) from exc
    except IntegrityError as exc:
        db.rollback()
        if _is_serial_unique_violation(exc):
            raise DuplicateSerial("Serial number already exists for this item.") from exc
        logger.warning("Ledger write rejected by the store", extra={"error": str(exc.orig)})
        raise StoreUnavailable(f"Ledger write rejected by the store: {exc.orig}") from exc
    except SQLAlchemyError as exc:
        db.rollback()
        logger.warning("Ledger store unavailable", extra={"error": str(exc)})
        raise StoreUnavailable(f"Ledger store unavailable: {exc}") from exc
    except Exception:
        db.rollback()
        raise


def create_tables(engine: Engine) -> None:
    Base.metadata.create_all(bind=engine, tables=list(SERIAL_TABLES))


def drop_tables(engine: Engine) -> None:
    Base.metadata.drop_all(bind=engine, tables=list(SERIAL_TABLES))


# -------------------------------------------------------------------
# SERIAL ITEMS
# -------------------------------------------------------------------


def _item_query(db: Session, *, for_update: bool):
    query = db.query(models.SerialItem)
    if for_update:
        # Re-read the row even if this session already holds it.
        query = query.with_for_update().populate_existing()
    return query


def get_item(db: Session, item_id: int, *, for_update: bool = False) -> Optional[models.SerialItem]:
    return _item_query(db, for_update=for_update).filter(models.SerialItem.id == item_id).first()


def get_item_by_serial(
    db: Session,
    *,
    stock_id: str,
    serial_no: str,
    for_update: bool = False,
) -> Optional[models.SerialItem]:
    return (
        _item_query(db, for_update=for_update)
        .filter(
            models.SerialItem.stock_id == stock_id,
            models.SerialItem.serial_no == serial_no,
        )
        .first()
    )


def require_item(db: Session, item_id: int, *, for_update: bool = False) -> models.SerialItem:
    item = get_item(db, item_id, for_update=for_update)
    if not item:
        raise NotFound(f"Serial item {item_id} not found.")
    return item


def find_items_by_serial_no(db: Session, serial_no: str) -> List[models.SerialItem]:
    return (
        db.query(models.SerialItem)
        .filter(models.SerialItem.serial_no == serial_no)
        .order_by(models.SerialItem.stock_id)
        .all()
    )


def create_item(db: Session, *, data: schemas.SerialItemCreate) -> models.SerialItem:
    existing = get_item_by_serial(db, stock_id=data.stock_id, serial_no=data.serial_no)
    if existing:
        raise DuplicateSerial(
            "This serial number already exists for the selected item.",
            stock_id=data.stock_id,
            serial_no=data.serial_no,
            current=existing.status.value,
        )
    now = _utcnow()
    item = models.SerialItem(
        stock_id=data.stock_id,
        serial_no=data.serial_no,
        status=data.status,
        location=data.location,
        created_at=now,
        updated_at=now,
    )
    db.add(item)
    db.flush()
    return item


def update_item_status(
    db: Session,
    item_id: int,
    *,
    status: models.SerialStatusEnum,
    location: Optional[str] = None,
) -> models.SerialItem:
    item = require_item(db, item_id)
    item.status = status
    if location is not None:
        item.location = location
    item.updated_at = _utcnow()
    db.flush()
    return item


def list_items_by_stock(db: Session, stock_id: str) -> List[models.SerialItem]:
    return (
        db.query(models.SerialItem)
        .filter(models.SerialItem.stock_id == stock_id)
        .order_by(models.SerialItem.serial_no)
        .all()
    )


def search_items(db: Session, filters: schemas.SerialItemSearch) -> List[models.SerialItem]:
    query = db.query(models.SerialItem)
    if filters.stock_id:
        query = query.filter(models.SerialItem.stock_id.contains(filters.stock_id, autoescape=True))
    if filters.serial_no:
        query = query.filter(models.SerialItem.serial_no.contains(filters.serial_no, autoescape=True))
    if filters.status:
        query = query.filter(models.SerialItem.status == filters.status)
    if filters.location:
        query = query.filter(models.SerialItem.location == filters.location)
    return query.order_by(models.SerialItem.stock_id, models.SerialItem.serial_no).all()


def aggregate_statistics(db: Session) -> Dict[str, int]:
    stats = {status.value: 0 for status in models.SerialStatusEnum}
    rows = (
        db.query(models.SerialItem.status, func.count(models.SerialItem.id))
        .group_by(models.SerialItem.status)
        .all()
    )
    for status, count in rows:
        key = status.value if isinstance(status, models.SerialStatusEnum) else str(status)
        stats[key] = int(count)
    stats["total"] = sum(stats[status.value] for status in models.SerialStatusEnum)
    return stats


# -------------------------------------------------------------------
# MOVEMENTS
# -------------------------------------------------------------------


def create_movement(
    db: Session,
    *,
    item: models.SerialItem,
    trans_type: int,
    trans_no: int,
    movement_type: models.SerialOperationEnum,
    location_from: Optional[str],
    location_to: Optional[str],
    status_from: Optional[models.SerialStatusEnum],
    status_to: models.SerialStatusEnum,
    quantity: Decimal = Decimal("1"),
    reference: Optional[str] = None,
    reversal_of_id: Optional[int] = None,
) -> models.SerialMovement:
    movement = models.SerialMovement(
        serial_item_id=item.id,
        trans_type=int(trans_type),
        trans_no=int(trans_no),
        movement_type=movement_type,
        stock_id=item.stock_id,
        serial_no=item.serial_no,
        location_from=location_from,
        location_to=location_to,
        status_from=status_from,
        status_to=status_to,
        quantity=quantity,
        reference=reference or None,
        reversal_of_id=reversal_of_id,
        created_at=_utcnow(),
    )
    db.add(movement)
    db.flush()
    return movement


def list_movements_by_transaction(
    db: Session,
    *,
    trans_type: int,
    trans_no: int,
    live_only: bool = False,
) -> List[models.SerialMovement]:
    """
    Movements recorded for one host transaction, oldest first.

    ``live_only`` keeps the original movements that have not been reversed and
    drops compensating entries.
    """
    query = db.query(models.SerialMovement).filter(
        models.SerialMovement.trans_type == int(trans_type),
        models.SerialMovement.trans_no == int(trans_no),
    )
    if live_only:
        query = query.filter(
            models.SerialMovement.reversed_at.is_(None),
            models.SerialMovement.reversal_of_id.is_(None),
            models.SerialMovement.movement_type != models.SerialOperationEnum.REVERSAL,
        )
    return query.order_by(models.SerialMovement.created_at, models.SerialMovement.id).all()


def transaction_recorded(db: Session, *, trans_type: int, trans_no: int) -> bool:
    return (
        db.query(models.SerialMovement.id)
        .filter(
            models.SerialMovement.trans_type == int(trans_type),
            models.SerialMovement.trans_no == int(trans_no),
            models.SerialMovement.reversed_at.is_(None),
            models.SerialMovement.movement_type != models.SerialOperationEnum.REVERSAL,
        )
        .first()
        is not None
    )


def list_movements_by_serial(db: Session, serial_item_id: int) -> List[models.SerialMovement]:
    return (
        db.query(models.SerialMovement)
        .filter(models.SerialMovement.serial_item_id == serial_item_id)
        .order_by(models.SerialMovement.created_at, models.SerialMovement.id)
        .all()
    )


def latest_live_movement(db: Session, serial_item_id: int) -> Optional[models.SerialMovement]:
    """Newest movement for the item that has not been reversed and is not itself a reversal."""
    return (
        db.query(models.SerialMovement)
        .filter(
            models.SerialMovement.serial_item_id == serial_item_id,
            models.SerialMovement.reversed_at.is_(None),
            models.SerialMovement.movement_type != models.SerialOperationEnum.REVERSAL,
        )
        .order_by(models.SerialMovement.created_at.desc(), models.SerialMovement.id.desc())
        .first()
    )


def next_trans_no(db: Session, trans_type: int) -> int:
    current = (
        db.query(func.max(models.SerialMovement.trans_no))
        .filter(models.SerialMovement.trans_type == int(trans_type))
        .scalar()
    )
    return int(current or 0) + 1


def delete_movement(db: Session, movement: models.SerialMovement) -> None:
    db.delete(movement)
    db.flush()


# -------------------------------------------------------------------
# ATTRIBUTES
# -------------------------------------------------------------------


def attribute_name_error(attribute_name: Optional[str]) -> Optional[str]:
    name = (attribute_name or "").strip()
    if not name:
        return "attribute name is required"
    if len(name) > models.ATTRIBUTE_NAME_LENGTH:
        return f"attribute name exceeds {models.ATTRIBUTE_NAME_LENGTH} characters"
    return None


def get_attribute(db: Session, *, serial_item_id: int, attribute_name: str) -> Optional[models.SerialAttribute]:
    return (
        db.query(models.SerialAttribute)
        .filter(
            models.SerialAttribute.serial_item_id == serial_item_id,
            models.SerialAttribute.attribute_name == attribute_name,
        )
        .first()
    )


def create_attribute(
    db: Session,
    *,
    serial_item_id: int,
    attribute_name: str,
    attribute_value: Optional[str],
) -> models.SerialAttribute:
    """Insert or overwrite a named attribute; the last write wins."""
    attribute_name = (attribute_name or "").strip()
    reason = attribute_name_error(attribute_name)
    if reason:
        raise ValidationFailed(
            f"Attribute name {attribute_name!r}: {reason}.",
            detail=[{"field": "attributes", "reason": reason}],
        )
    require_item(db, serial_item_id)

    attribute = get_attribute(db, serial_item_id=serial_item_id, attribute_name=attribute_name)
    now = _utcnow()
    if attribute:
        attribute.attribute_value = attribute_value
        attribute.updated_at = now
    else:
        attribute = models.SerialAttribute(
            serial_item_id=serial_item_id,
            attribute_name=attribute_name,
            attribute_value=attribute_value,
            created_at=now,
            updated_at=now,
        )
        db.add(attribute)
    db.flush()
    return attribute


def delete_attribute(db: Session, *, serial_item_id: int, attribute_name: str) -> bool:
    attribute = get_attribute(db, serial_item_id=serial_item_id, attribute_name=attribute_name)
    if not attribute:
        return False
    db.delete(attribute)
    db.flush()
    return True


def list_attributes_by_serial(db: Session, serial_item_id: int) -> List[models.SerialAttribute]:
    return (
        db.query(models.SerialAttribute)
        .filter(models.SerialAttribute.serial_item_id == serial_item_id)
        .order_by(models.SerialAttribute.attribute_name)
        .all()
    )
