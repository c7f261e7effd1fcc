from __future__ import annotations

import enum
from datetime import datetime, timezone
from decimal import Decimal

from sqlalchemy import (
    Column,
    DateTime,
    Enum as SAEnum,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import relationship

from serialdb.database import Base


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _enum_values(enum_cls) -> list[str]:
    return [member.value for member in enum_cls]


# Location codes written when an item leaves stock.
LOCATION_SOLD = "SOLD"
LOCATION_SCRAPPED = "SCRAP"
LOCATION_LOAN = "LOAN"

# Column widths; transaction lines are checked against them before any write.
STOCK_ID_LENGTH = 20
SERIAL_NO_LENGTH = 50
LOCATION_LENGTH = 32
REFERENCE_LENGTH = 100
ATTRIBUTE_NAME_LENGTH = 50


class TransType(enum.IntEnum):
    """Host business transaction types (FrontAccounting numbering, plus asset types)."""

    SALES_INVOICE = 10
    CUSTOMER_CREDIT = 11
    CUSTOMER_DELIVERY = 13
    LOCATION_TRANSFER = 16
    INVENTORY_ADJUSTMENT = 17
    SUPPLIER_RECEIPT = 25
    MANUFACTURING_RECEIPT = 29
    SERIAL_ENTRY = 70
    ASSET_LOAN = 80
    ASSET_LOAN_RETURN = 81
    ASSET_MAINTENANCE = 82
    ASSET_DISPOSAL = 83


class SerialStatusEnum(str, enum.Enum):
    ACTIVE = "active"
    SOLD = "sold"
    RETURNED = "returned"
    SCRAPPED = "scrapped"


class SerialOperationEnum(str, enum.Enum):
    RECEIVE = "receive"
    SELL = "sell"
    RETURN = "return"
    REISSUE = "reissue"
    TRANSFER = "transfer"
    DISPOSE = "dispose"
    LOAN = "loan"
    LOAN_RETURN = "loan_return"
    MAINTENANCE = "maintenance"
    REVERSAL = "reversal"


class SerialItem(Base):
    __tablename__ = "serial_items"
    __table_args__ = (
        UniqueConstraint("stock_id", "serial_no", name="uq_serial_items_stock_serial"),
        Index("ix_serial_items_status", "status"),
        Index("ix_serial_items_location", "location"),
    )

    id = Column(Integer, primary_key=True, index=True)
    stock_id = Column(String(STOCK_ID_LENGTH), nullable=False, index=True)
    serial_no = Column(String(SERIAL_NO_LENGTH), nullable=False)
    status = Column(
        SAEnum(
            SerialStatusEnum,
            name="serial_status_enum",
            native_enum=False,
            values_callable=_enum_values,
        ),
        nullable=False,
        default=SerialStatusEnum.ACTIVE,
    )
    location = Column(String(LOCATION_LENGTH), nullable=False)
    version = Column(Integer, nullable=False, default=1)
    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow, onupdate=_utcnow)

    # Every UPDATE is issued as "... WHERE id = :id AND version = :seen", so two
    # writers that read the same version cannot both win.
    __mapper_args__ = {"version_id_col": version}

    movements = relationship(
        "SerialMovement",
        back_populates="item",
        order_by="SerialMovement.id",
        lazy="select",
    )
    attributes = relationship(
        "SerialAttribute",
        back_populates="item",
        order_by="SerialAttribute.attribute_name",
        lazy="select",
    )


class SerialMovement(Base):
    __tablename__ = "serial_movements"
    __table_args__ = (
        Index("ix_serial_movements_trans", "trans_type", "trans_no"),
        Index("ix_serial_movements_stock_serial", "stock_id", "serial_no"),
    )

    id = Column(Integer, primary_key=True, index=True)
    serial_item_id = Column(Integer, ForeignKey("serial_items.id", ondelete="CASCADE"), nullable=False, index=True)
    trans_type = Column(Integer, nullable=False)
    trans_no = Column(Integer, nullable=False)
    movement_type = Column(
        SAEnum(
            SerialOperationEnum,
            name="serial_movement_type_enum",
            native_enum=False,
            values_callable=_enum_values,
        ),
        nullable=False,
    )

    # Denormalized so the ledger stays readable if the item row changes.
    stock_id = Column(String(STOCK_ID_LENGTH), nullable=False)
    serial_no = Column(String(SERIAL_NO_LENGTH), nullable=False)

    location_from = Column(String(LOCATION_LENGTH), nullable=True)
    location_to = Column(String(LOCATION_LENGTH), nullable=True)
    status_from = Column(
        SAEnum(SerialStatusEnum, name="serial_movement_status_from_enum", native_enum=False, values_callable=_enum_values),
        nullable=True,
    )
    status_to = Column(
        SAEnum(SerialStatusEnum, name="serial_movement_status_to_enum", native_enum=False, values_callable=_enum_values),
        nullable=False,
    )
    quantity = Column("qty", Numeric(10, 4), nullable=False, default=Decimal("1"))
    reference = Column(String(REFERENCE_LENGTH), nullable=True)

    reversal_of_id = Column(Integer, ForeignKey("serial_movements.id", ondelete="SET NULL"), nullable=True)
    reversed_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)

    item = relationship("SerialItem", back_populates="movements", lazy="joined")


class SerialAttribute(Base):
    __tablename__ = "serial_attributes"
    __table_args__ = (
        UniqueConstraint("serial_item_id", "attribute_name", name="uq_serial_attributes_item_name"),
        Index("ix_serial_attributes_name", "attribute_name"),
    )

    id = Column(Integer, primary_key=True, index=True)
    serial_item_id = Column(Integer, ForeignKey("serial_items.id", ondelete="CASCADE"), nullable=False, index=True)
    attribute_name = Column(String(ATTRIBUTE_NAME_LENGTH), nullable=False)
    attribute_value = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow, onupdate=_utcnow)

    item = relationship("SerialItem", back_populates="attributes", lazy="joined")
