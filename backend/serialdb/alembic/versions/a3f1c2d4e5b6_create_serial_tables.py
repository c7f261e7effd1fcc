"""Create serial item, movement and attribute tables.

Revision ID: a3f1c2d4e5b6
Revises:
Create Date: 2026-10-19 09:00:00.000000
"""

from __future__ import annotations

from alembic import op
import sqlalchemy as sa
from sqlalchemy import inspect


# revision identifiers, used by Alembic.
revision = "a3f1c2d4e5b6"
down_revision = None
branch_labels = None
depends_on = None

STATUS_VALUES = ("active", "sold", "returned", "scrapped")
MOVEMENT_TYPES = (
    "receive",
    "sell",
    "return",
    "reissue",
    "transfer",
    "dispose",
    "loan",
    "loan_return",
    "maintenance",
    "reversal",
)


def _table_exists(table_name: str) -> bool:
    return bool(inspect(op.get_bind()).has_table(table_name))


def _status_enum(name: str) -> sa.Enum:
    return sa.Enum(*STATUS_VALUES, name=name, native_enum=False)


def upgrade() -> None:
    if not _table_exists("serial_items"):
        op.create_table(
            "serial_items",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column("stock_id", sa.String(length=20), nullable=False),
            sa.Column("serial_no", sa.String(length=50), nullable=False),
            sa.Column("status", _status_enum("serial_status_enum"), nullable=False, server_default="active"),
            sa.Column("location", sa.String(length=32), nullable=False),
            sa.Column("version", sa.Integer(), nullable=False, server_default="1"),
            sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
            sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
            sa.UniqueConstraint("stock_id", "serial_no", name="uq_serial_items_stock_serial"),
        )
        op.create_index("ix_serial_items_id", "serial_items", ["id"])
        op.create_index("ix_serial_items_stock_id", "serial_items", ["stock_id"])
        op.create_index("ix_serial_items_status", "serial_items", ["status"])
        op.create_index("ix_serial_items_location", "serial_items", ["location"])

    if not _table_exists("serial_movements"):
        op.create_table(
            "serial_movements",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column(
                "serial_item_id",
                sa.Integer(),
                sa.ForeignKey("serial_items.id", ondelete="CASCADE"),
                nullable=False,
            ),
            sa.Column("trans_type", sa.Integer(), nullable=False),
            sa.Column("trans_no", sa.Integer(), nullable=False),
            sa.Column(
                "movement_type",
                sa.Enum(*MOVEMENT_TYPES, name="serial_movement_type_enum", native_enum=False),
                nullable=False,
            ),
            sa.Column("stock_id", sa.String(length=20), nullable=False),
            sa.Column("serial_no", sa.String(length=50), nullable=False),
            sa.Column("location_from", sa.String(length=32), nullable=True),
            sa.Column("location_to", sa.String(length=32), nullable=True),
            sa.Column("status_from", _status_enum("serial_movement_status_from_enum"), nullable=True),
            sa.Column("status_to", _status_enum("serial_movement_status_to_enum"), nullable=False),
            sa.Column("qty", sa.Numeric(10, 4), nullable=False, server_default="1"),
            sa.Column("reference", sa.String(length=100), nullable=True),
            sa.Column(
                "reversal_of_id",
                sa.Integer(),
                sa.ForeignKey("serial_movements.id", ondelete="SET NULL"),
                nullable=True,
            ),
            sa.Column("reversed_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        )
        op.create_index("ix_serial_movements_id", "serial_movements", ["id"])
        op.create_index("ix_serial_movements_serial_item_id", "serial_movements", ["serial_item_id"])
        op.create_index("ix_serial_movements_trans", "serial_movements", ["trans_type", "trans_no"])
        op.create_index("ix_serial_movements_stock_serial", "serial_movements", ["stock_id", "serial_no"])

    if not _table_exists("serial_attributes"):
        op.create_table(
            "serial_attributes",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column(
                "serial_item_id",
                sa.Integer(),
                sa.ForeignKey("serial_items.id", ondelete="CASCADE"),
                nullable=False,
            ),
            sa.Column("attribute_name", sa.String(length=50), nullable=False),
            sa.Column("attribute_value", sa.Text(), nullable=True),
            sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
            sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
            sa.UniqueConstraint("serial_item_id", "attribute_name", name="uq_serial_attributes_item_name"),
        )
        op.create_index("ix_serial_attributes_id", "serial_attributes", ["id"])
        op.create_index("ix_serial_attributes_serial_item_id", "serial_attributes", ["serial_item_id"])
        op.create_index("ix_serial_attributes_name", "serial_attributes", ["attribute_name"])


def downgrade() -> None:
    for table_name in ("serial_attributes", "serial_movements", "serial_items"):
        if _table_exists(table_name):
            op.drop_table(table_name)
