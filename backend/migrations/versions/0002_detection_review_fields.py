"""detection_review_fields

Revision ID: 0002
Revises: 0001
Create Date: 2026-10-17 09:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy import inspect


revision: str = "0002"
down_revision: Union[str, Sequence[str], None] = "0001"
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _new_columns():
    return [
        sa.Column("price", sa.String(length=20), nullable=True),
        sa.Column("price_currency", sa.String(length=3), nullable=True),
        sa.Column("price_confidence", sa.Float(), nullable=True),
        sa.Column("contextual_brand", sa.String(length=200), nullable=True),
        sa.Column("contextual_brand_confidence", sa.Float(), nullable=True),
        sa.Column("contextual_size", sa.String(length=100), nullable=True),
        sa.Column("contextual_size_confidence", sa.Float(), nullable=True),
        sa.Column("contextual_notes", sa.Text(), nullable=True),
        sa.Column("contextual_left_neighbor_count", sa.Integer(), nullable=True),
        sa.Column("contextual_right_neighbor_count", sa.Integer(), nullable=True),
        sa.Column("contextual_analyzed_at", sa.DateTime(), nullable=True),
        sa.Column(
            "corrected_by_contextual", sa.Boolean(), nullable=False, server_default="false"
        ),
        sa.Column("contextual_correction_notes", sa.Text(), nullable=True),
        sa.Column("selection_method", sa.String(length=20), nullable=True),
        sa.Column("human_validation", sa.Boolean(), nullable=True),
        sa.Column("human_validation_at", sa.DateTime(), nullable=True),
    ]


def upgrade() -> None:
    """Upgrade schema."""
    conn = op.get_bind()
    existing = {c["name"] for c in inspect(conn).get_columns("detections")}
    with op.batch_alter_table("detections") as batch_op:
        for column in _new_columns():
            if column.name not in existing:
                batch_op.add_column(column)
        if "selection_method" not in existing:
            batch_op.create_check_constraint(
                "valid_selection_method",
                "selection_method IN ('auto_select', 'visual_matching') "
                "OR selection_method IS NULL",
            )


def downgrade() -> None:
    """Downgrade schema."""
    with op.batch_alter_table("detections") as batch_op:
        batch_op.drop_constraint("valid_selection_method", type_="check")
        for column in reversed(_new_columns()):
            batch_op.drop_column(column.name)
