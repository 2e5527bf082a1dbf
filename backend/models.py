from datetime import datetime, timezone

from flask_sqlalchemy import SQLAlchemy

from sqlalchemy.dialects.postgresql import JSONB

db = SQLAlchemy()


def _utcnow():
    return datetime.now(timezone.utc)


class Image(db.Model):
    __tablename__ = "images"

    id = db.Column(db.Integer, primary_key=True)
    # Projects live in the external project service; only the id is kept here.
    project_id = db.Column(db.Integer, nullable=True, index=True)
    file_path = db.Column(db.String(500), nullable=False)
    mime_type = db.Column(db.String(50), nullable=False, default="image/jpeg")
    store_name = db.Column(db.String(200), nullable=True)
    detection_completed = db.Column(db.Boolean, nullable=False, default=False)
    created_at = db.Column(db.DateTime, default=_utcnow)


class Detection(db.Model):
    __tablename__ = "detections"
    __table_args__ = (
        db.UniqueConstraint("image_id", "detection_index", name="uix_detection_image_index"),
        db.CheckConstraint(
            "selection_method IN ('auto_select', 'visual_matching') OR selection_method IS NULL",
            name="valid_selection_method",
        ),
    )

    id = db.Column(db.Integer, primary_key=True)
    image_id = db.Column(
        db.Integer, db.ForeignKey("images.id", ondelete="CASCADE"), nullable=False
    )
    image = db.relationship(
        "Image",
        backref=db.backref("detections", lazy=True, order_by="Detection.detection_index"),
    )

    detection_index = db.Column(db.Integer, nullable=False)
    label = db.Column(db.String(250), nullable=True)
    confidence = db.Column(db.Float, nullable=True)

    # Bounding box on the 0-1000 normalized scale
    y0 = db.Column(db.Integer, nullable=False)
    x0 = db.Column(db.Integer, nullable=False)
    y1 = db.Column(db.Integer, nullable=False)
    x1 = db.Column(db.Integer, nullable=False)

    # Extracted attributes
    brand_name = db.Column(db.String(200), nullable=True)
    brand_confidence = db.Column(db.Float, nullable=False, default=0.0)
    product_name = db.Column(db.String(300), nullable=True)
    product_name_confidence = db.Column(db.Float, nullable=False, default=0.0)
    category = db.Column(db.String(150), nullable=True)
    category_confidence = db.Column(db.Float, nullable=False, default=0.0)
    size = db.Column(db.String(100), nullable=True)
    size_confidence = db.Column(db.Float, nullable=False, default=0.0)
    description = db.Column(db.Text, nullable=True)
    description_confidence = db.Column(db.Float, nullable=False, default=0.0)
    is_product = db.Column(db.Boolean, nullable=True)
    details_visible = db.Column(db.Boolean, nullable=True)
    extraction_notes = db.Column(db.Text, nullable=True)
    brand_extracted = db.Column(db.Boolean, nullable=False, default=False)

    # Price tag read below the product
    price = db.Column(db.String(20), nullable=True)
    price_currency = db.Column(db.String(3), nullable=True)
    price_confidence = db.Column(db.Float, nullable=True)

    # Brand and size inferred from neighboring products on the same shelf
    contextual_brand = db.Column(db.String(200), nullable=True)
    contextual_brand_confidence = db.Column(db.Float, nullable=True)
    contextual_size = db.Column(db.String(100), nullable=True)
    contextual_size_confidence = db.Column(db.Float, nullable=True)
    contextual_notes = db.Column(db.Text, nullable=True)
    contextual_left_neighbor_count = db.Column(db.Integer, nullable=True)
    contextual_right_neighbor_count = db.Column(db.Integer, nullable=True)
    contextual_analyzed_at = db.Column(db.DateTime, nullable=True)
    corrected_by_contextual = db.Column(db.Boolean, nullable=False, default=False)
    contextual_correction_notes = db.Column(db.Text, nullable=True)

    # Terminal fields
    selected_candidate_id = db.Column(db.String(50), nullable=True)
    # auto_select | visual_matching, NULL without selection
    selection_method = db.Column(db.String(20), nullable=True)
    fully_analyzed = db.Column(db.Boolean, nullable=False, default=False)
    analysis_completed_at = db.Column(db.DateTime, nullable=True)

    # Human review of the selected candidate
    human_validation = db.Column(db.Boolean, nullable=True)
    human_validation_at = db.Column(db.DateTime, nullable=True)

    # Orchestrator bookkeeping
    pipeline_status = db.Column(db.String(20), nullable=False, default="pending")
    error_stage = db.Column(db.String(30), nullable=True)
    error_message = db.Column(db.Text, nullable=True)


class CandidateResult(db.Model):
    __tablename__ = "candidate_results"
    __table_args__ = (
        db.UniqueConstraint(
            "detection_id",
            "candidate_id",
            "processing_stage",
            name="uix_candidate_detection_stage",
        ),
        db.Index(
            "uix_candidate_selected_per_detection",
            "detection_id",
            unique=True,
            postgresql_where=db.text("is_selected"),
            sqlite_where=db.text("is_selected = 1"),
        ),
    )

    id = db.Column(db.Integer, primary_key=True)
    detection_id = db.Column(
        db.Integer, db.ForeignKey("detections.id", ondelete="CASCADE"), nullable=False
    )
    detection = db.relationship(
        "Detection", backref=db.backref("candidate_results", lazy=True)
    )

    candidate_id = db.Column(db.String(50), nullable=False)
    processing_stage = db.Column(db.String(20), nullable=False)
    result_rank = db.Column(db.Integer, nullable=True)
    search_term = db.Column(db.String(500), nullable=True)

    product_name = db.Column(db.String(500), nullable=True)
    brand_name = db.Column(db.String(200), nullable=True)
    category = db.Column(db.String(200), nullable=True)
    size = db.Column(db.String(100), nullable=True)
    front_image_url = db.Column(db.String(1000), nullable=True)

    prefilter_score = db.Column(db.Float, nullable=True)
    match_status = db.Column(db.String(20), nullable=False, default="pending")
    visual_similarity = db.Column(db.Float, nullable=True)
    match_reason = db.Column(db.Text, nullable=True)
    is_selected = db.Column(db.Boolean, nullable=False, default=False)
    full_data = db.Column(JSONB, nullable=True)

    created_at = db.Column(db.DateTime, default=_utcnow)
    updated_at = db.Column(db.DateTime, default=_utcnow, onupdate=_utcnow)


class PromptTemplate(db.Model):
    __tablename__ = "prompt_templates"
    __table_args__ = (
        db.Index("ix_prompt_templates_project_step", "project_id", "step_name"),
    )

    id = db.Column(db.Integer, primary_key=True)
    project_id = db.Column(db.Integer, nullable=False)
    step_name = db.Column(db.String(30), nullable=False)
    prompt_template = db.Column(db.Text, nullable=False)
    is_active = db.Column(db.Boolean, nullable=False, default=True)
    created_at = db.Column(db.DateTime, default=_utcnow)


class BatchRun(db.Model):
    __tablename__ = "batch_runs"

    id = db.Column(db.Integer, primary_key=True)
    status = db.Column(db.String(20), nullable=False, default="running")
    project_id = db.Column(db.Integer, nullable=True)
    concurrency = db.Column(db.Integer, nullable=True)

    total = db.Column(db.Integer, nullable=True)
    successful = db.Column(db.Integer, nullable=True)
    errored = db.Column(db.Integer, nullable=True)
    matched = db.Column(db.Integer, nullable=True)
    no_match = db.Column(db.Integer, nullable=True)
    not_dispatched = db.Column(db.Integer, nullable=True)
    error_breakdown = db.Column(JSONB, nullable=True)
    error_message = db.Column(db.Text, nullable=True)

    started_at = db.Column(db.DateTime, default=_utcnow)
    finished_at = db.Column(db.DateTime, nullable=True)
    duration_seconds = db.Column(db.Float, nullable=True)
