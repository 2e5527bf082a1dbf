"""initial_enrichment_schema

Revision ID: 0001
Revises:
Create Date: 2026-10-16 09:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy import inspect
from sqlalchemy.dialects.postgresql import JSONB


revision: str = "0001"
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    """Upgrade schema."""
    conn = op.get_bind()
    existing = inspect(conn).get_table_names()
    if "images" in existing:
        return

    op.create_table(
        "images",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("project_id", sa.Integer(), nullable=True),
        sa.Column("file_path", sa.String(length=500), nullable=False),
        sa.Column("mime_type", sa.String(length=50), nullable=False, server_default="image/jpeg"),
        sa.Column("store_name", sa.String(length=200), nullable=True),
        sa.Column("detection_completed", sa.Boolean(), nullable=False, server_default="false"),
        sa.Column("created_at", sa.DateTime(), server_default=sa.func.now(), nullable=True),
    )
    op.create_index("ix_images_project_id", "images", ["project_id"])

    op.create_table(
        "detections",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column(
            "image_id",
            sa.Integer(),
            sa.ForeignKey("images.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("detection_index", sa.Integer(), nullable=False),
        sa.Column("label", sa.String(length=250), nullable=True),
        sa.Column("confidence", sa.Float(), nullable=True),
        sa.Column("y0", sa.Integer(), nullable=False),
        sa.Column("x0", sa.Integer(), nullable=False),
        sa.Column("y1", sa.Integer(), nullable=False),
        sa.Column("x1", sa.Integer(), nullable=False),
        sa.Column("brand_name", sa.String(length=200), nullable=True),
        sa.Column("brand_confidence", sa.Float(), nullable=False, server_default="0"),
        sa.Column("product_name", sa.String(length=300), nullable=True),
        sa.Column("product_name_confidence", sa.Float(), nullable=False, server_default="0"),
        sa.Column("category", sa.String(length=150), nullable=True),
        sa.Column("category_confidence", sa.Float(), nullable=False, server_default="0"),
        sa.Column("size", sa.String(length=100), nullable=True),
        sa.Column("size_confidence", sa.Float(), nullable=False, server_default="0"),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("description_confidence", sa.Float(), nullable=False, server_default="0"),
        sa.Column("is_product", sa.Boolean(), nullable=True),
        sa.Column("details_visible", sa.Boolean(), nullable=True),
        sa.Column("extraction_notes", sa.Text(), nullable=True),
        sa.Column("brand_extracted", sa.Boolean(), nullable=False, server_default="false"),
        sa.Column("selected_candidate_id", sa.String(length=50), nullable=True),
        sa.Column("fully_analyzed", sa.Boolean(), nullable=False, server_default="false"),
        sa.Column("analysis_completed_at", sa.DateTime(), nullable=True),
        sa.Column("pipeline_status", sa.String(length=20), nullable=False, server_default="pending"),
        sa.Column("error_stage", sa.String(length=30), nullable=True),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.UniqueConstraint("image_id", "detection_index", name="uix_detection_image_index"),
    )

    op.create_table(
        "candidate_results",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column(
            "detection_id",
            sa.Integer(),
            sa.ForeignKey("detections.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("candidate_id", sa.String(length=50), nullable=False),
        sa.Column("processing_stage", sa.String(length=20), nullable=False),
        sa.Column("result_rank", sa.Integer(), nullable=True),
        sa.Column("search_term", sa.String(length=500), nullable=True),
        sa.Column("product_name", sa.String(length=500), nullable=True),
        sa.Column("brand_name", sa.String(length=200), nullable=True),
        sa.Column("category", sa.String(length=200), nullable=True),
        sa.Column("size", sa.String(length=100), nullable=True),
        sa.Column("front_image_url", sa.String(length=1000), nullable=True),
        sa.Column("prefilter_score", sa.Float(), nullable=True),
        sa.Column("match_status", sa.String(length=20), nullable=False, server_default="pending"),
        sa.Column("visual_similarity", sa.Float(), nullable=True),
        sa.Column("match_reason", sa.Text(), nullable=True),
        sa.Column("is_selected", sa.Boolean(), nullable=False, server_default="false"),
        sa.Column("full_data", JSONB(), nullable=True),
        sa.Column("created_at", sa.DateTime(), server_default=sa.func.now(), nullable=True),
        sa.Column("updated_at", sa.DateTime(), server_default=sa.func.now(), nullable=True),
        sa.UniqueConstraint(
            "detection_id",
            "candidate_id",
            "processing_stage",
            name="uix_candidate_detection_stage",
        ),
    )
    op.create_index(
        "uix_candidate_selected_per_detection",
        "candidate_results",
        ["detection_id"],
        unique=True,
        postgresql_where=sa.text("is_selected"),
    )

    op.create_table(
        "prompt_templates",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("project_id", sa.Integer(), nullable=False),
        sa.Column("step_name", sa.String(length=30), nullable=False),
        sa.Column("prompt_template", sa.Text(), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default="true"),
        sa.Column("created_at", sa.DateTime(), server_default=sa.func.now(), nullable=True),
    )
    op.create_index(
        "ix_prompt_templates_project_step", "prompt_templates", ["project_id", "step_name"]
    )

    op.create_table(
        "batch_runs",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("status", sa.String(length=20), nullable=False, server_default="running"),
        sa.Column("project_id", sa.Integer(), nullable=True),
        sa.Column("concurrency", sa.Integer(), nullable=True),
        sa.Column("total", sa.Integer(), nullable=True),
        sa.Column("successful", sa.Integer(), nullable=True),
        sa.Column("errored", sa.Integer(), nullable=True),
        sa.Column("matched", sa.Integer(), nullable=True),
        sa.Column("no_match", sa.Integer(), nullable=True),
        sa.Column("not_dispatched", sa.Integer(), nullable=True),
        sa.Column("error_breakdown", JSONB(), nullable=True),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("started_at", sa.DateTime(), server_default=sa.func.now(), nullable=True),
        sa.Column("finished_at", sa.DateTime(), nullable=True),
        sa.Column("duration_seconds", sa.Float(), nullable=True),
    )


def downgrade() -> None:
    """Downgrade schema."""
    op.drop_table("batch_runs")
    op.drop_index("ix_prompt_templates_project_step", table_name="prompt_templates")
    op.drop_table("prompt_templates")
    op.drop_index("uix_candidate_selected_per_detection", table_name="candidate_results")
    op.drop_table("candidate_results")
    op.drop_table("detections")
    op.drop_index("ix_images_project_id", table_name="images")
    op.drop_table("images")
