"""dispute version column for compare-and-set status writes

Revision ID: c5e8a2d4f6b1
Revises: a1c4e7f9b2d3
Create Date: 2026-10-19 15:30:00.000000
"""

from __future__ import annotations

from alembic import op
import sqlalchemy as sa


revision = "c5e8a2d4f6b1"
down_revision = "a1c4e7f9b2d3"
branch_labels = None
depends_on = None


def _column_exists(bind, table_name: str, column_name: str) -> bool:
    try:
        cols = sa.inspect(bind).get_columns(table_name)
        return any((col.get("name") or "") == column_name for col in cols)
    except Exception:
        return False


def upgrade():
    bind = op.get_bind()
    if not _column_exists(bind, "disputes", "version"):
        with op.batch_alter_table("disputes") as batch_op:
            batch_op.add_column(sa.Column("version", sa.Integer(), nullable=False, server_default="1"))


def downgrade():
    bind = op.get_bind()
    if _column_exists(bind, "disputes", "version"):
        with op.batch_alter_table("disputes") as batch_op:
            batch_op.drop_column("version")
