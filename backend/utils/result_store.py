"""Persistence of detections and candidate results.

All writes go through the Flask-SQLAlchemy session of the current
application context; each batch worker runs in its own context and therefore
its own session.
"""

from __future__ import annotations

import logging
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional

from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from models import CandidateResult, Detection, Image, db
from utils.confidence_filter import DEFAULT_THRESHOLD, filter_by_confidence
from utils.errors import PersistenceFailure
from utils.extraction import ExtractedInfo
from utils.image_utils import BoundingBox
from utils.price_extraction import PriceInfo
from utils.shelf_context import ContextualAnalysis, Correction, Neighbors, plan_correction

logger = logging.getLogger(__name__)

STATUS_PENDING = "pending"
STATUS_DONE = "done"
STATUS_ERRORED = "errored"

_IDENTICAL = "identical"

_CANDIDATE_FIELDS = {
    "result_rank",
    "search_term",
    "product_name",
    "brand_name",
    "category",
    "size",
    "front_image_url",
    "prefilter_score",
    "match_status",
    "visual_similarity",
    "match_reason",
    "full_data",
}


def _utcnow():
    return datetime.now(timezone.utc)


class ResultStore:
    """Idempotent writes keyed by (detection, candidate, stage)."""

    @contextmanager
    def _transaction(self, action: str):
        try:
            yield
            db.session.commit()
        except SQLAlchemyError as exc:
            db.session.rollback()
            logger.error("Database error during %s: %s", action, exc)
            raise PersistenceFailure(f"Erreur base de donnees ({action})", cause=exc) from exc

    # ------------------------------------------------------------------
    # Detections
    # ------------------------------------------------------------------

    def record_detections(
        self,
        image_id: int,
        raw_detections: Iterable[Dict[str, Any]],
        threshold: float = DEFAULT_THRESHOLD,
    ) -> List[Detection]:
        """Store the detector output for an image, keeping confident boxes only.

        Raises ``LookupError`` for an unknown image and ``ValueError`` when the
        image already has its detections.
        """
        image = db.session.get(Image, image_id)
        if image is None:
            raise LookupError(f"Image {image_id} introuvable")
        if image.detection_completed:
            raise ValueError(f"Image {image_id} deja analysee")

        kept = filter_by_confidence(list(raw_detections or []), threshold)
        created: List[Detection] = []
        with self._transaction("record_detections"):
            for raw in kept:
                try:
                    box = BoundingBox.from_box_2d(raw.get("box_2d") or [])
                    box.validate()
                except (TypeError, ValueError) as exc:
                    logger.warning("Skipping detection on image %s: %s", image_id, exc)
                    continue
                detection = Detection(
                    image_id=image_id,
                    detection_index=len(created),
                    label=raw.get("label"),
                    confidence=float(raw.get("confidence") or 0.0),
                    y0=box.y0,
                    x0=box.x0,
                    y1=box.y1,
                    x1=box.x1,
                )
                db.session.add(detection)
                created.append(detection)
            image.detection_completed = True

        logger.info(
            "Image %s: %d detections kept out of %d above threshold",
            image_id, len(created), len(kept),
        )
        return created

    def get_detection(self, detection_id: int) -> Optional[Detection]:
        return db.session.get(Detection, detection_id)

    def _require_detection(self, detection_id: int) -> Detection:
        detection = self.get_detection(detection_id)
        if detection is None:
            raise PersistenceFailure(f"Detection {detection_id} introuvable")
        return detection

    def save_extraction(self, detection_id: int, info: ExtractedInfo) -> None:
        with self._transaction("save_extraction"):
            detection = self._require_detection(detection_id)
            for key, value in info.to_detection_fields().items():
                setattr(detection, key, value)
            detection.brand_extracted = True

    def set_status(self, detection_id: int, status: str) -> None:
        with self._transaction("set_status"):
            detection = self._require_detection(detection_id)
            detection.pipeline_status = status
            detection.error_stage = None
            detection.error_message = None

    def mark_errored(self, detection_id: int, stage: str, message: str) -> None:
        with self._transaction("mark_errored"):
            detection = self._require_detection(detection_id)
            detection.pipeline_status = STATUS_ERRORED
            detection.error_stage = stage
            detection.error_message = message

    def mark_fully_analyzed(
        self,
        detection_id: int,
        selected_candidate_id: Optional[str],
        selection_method: Optional[str] = None,
    ) -> bool:
        """Close the analysis of a detection; returns False when nothing changed.

        ``selection_method`` records how the candidate was chosen and is
        cleared when there is no selection.
        """
        if selected_candidate_id is None:
            selection_method = None
        detection = self._require_detection(detection_id)
        if (
            detection.fully_analyzed
            and detection.pipeline_status == STATUS_DONE
            and detection.selected_candidate_id == selected_candidate_id
            and detection.selection_method == selection_method
        ):
            return False

        with self._transaction("mark_fully_analyzed"):
            rows = CandidateResult.query.filter_by(
                detection_id=detection_id, processing_stage="visual_match"
            ).all()
            # Clear first: the partial unique index allows one selected row.
            for row in rows:
                if row.is_selected and row.candidate_id != selected_candidate_id:
                    row.is_selected = False
            db.session.flush()
            for row in rows:
                if selected_candidate_id is not None and row.candidate_id == selected_candidate_id:
                    row.is_selected = True

            detection.selected_candidate_id = selected_candidate_id
            detection.selection_method = selection_method
            detection.fully_analyzed = True
            detection.analysis_completed_at = _utcnow()
            detection.pipeline_status = STATUS_DONE
            detection.error_stage = None
            detection.error_message = None
        return True

    def save_price(self, detection_id: int, price: PriceInfo) -> None:
        with self._transaction("save_price"):
            detection = self._require_detection(detection_id)
            for key, value in price.to_detection_fields().items():
                setattr(detection, key, value)

    def save_contextual_analysis(
        self,
        detection_id: int,
        analysis: ContextualAnalysis,
        neighbors: Neighbors,
        apply: bool = True,
    ) -> Correction:
        """Store the neighbor analysis; with ``apply``, overwrite less confident values."""
        with self._transaction("save_contextual_analysis"):
            detection = self._require_detection(detection_id)
            correction = plan_correction(detection, analysis)
            detection.contextual_brand = analysis.brand.value
            detection.contextual_brand_confidence = analysis.brand.confidence
            detection.contextual_size = analysis.size.value
            detection.contextual_size_confidence = analysis.size.confidence
            detection.contextual_notes = analysis.notes
            detection.contextual_left_neighbor_count = len(neighbors.left)
            detection.contextual_right_neighbor_count = len(neighbors.right)
            detection.contextual_analyzed_at = _utcnow()
            if apply and correction.corrected:
                if correction.brand is not None:
                    detection.brand_name = correction.brand.value
                    detection.brand_confidence = correction.brand.confidence
                if correction.size is not None:
                    detection.size = correction.size.value
                    detection.size_confidence = correction.size.confidence
                detection.corrected_by_contextual = True
                detection.contextual_correction_notes = "; ".join(correction.notes)
        if apply and correction.corrected:
            logger.info(
                "Detection %s corrected from shelf context: %s",
                detection_id, "; ".join(correction.notes),
            )
        return correction

    def record_validation(self, detection_id: int, is_correct: bool) -> Detection:
        """Store a reviewer's verdict on the selected candidate.

        Raises ``ValueError`` when the detection has no selected candidate.
        """
        detection = self._require_detection(detection_id)
        if detection.selected_candidate_id is None:
            raise ValueError(f"Detection {detection_id} sans produit selectionne")
        with self._transaction("record_validation"):
            detection.human_validation = bool(is_correct)
            detection.human_validation_at = _utcnow()
        return detection

    def pending_detection_ids(
        self,
        project_id: Optional[int] = None,
        image_ids: Optional[List[int]] = None,
        reprocess: bool = False,
    ) -> List[int]:
        query = db.session.query(Detection.id).join(Image, Detection.image_id == Image.id)
        if project_id is not None:
            query = query.filter(Image.project_id == project_id)
        if image_ids:
            query = query.filter(Detection.image_id.in_(image_ids))
        if not reprocess:
            query = query.filter(Detection.fully_analyzed.is_(False))
        query = query.order_by(Detection.image_id, Detection.detection_index)
        return [row[0] for row in query.all()]

    # ------------------------------------------------------------------
    # Candidate results
    # ------------------------------------------------------------------

    def upsert_candidate_result(
        self,
        detection_id: int,
        candidate_id: str,
        stage: str,
        fields: Dict[str, Any],
    ) -> CandidateResult:
        """Insert or update the row for (detection, candidate, stage).

        A row already marked ``identical`` keeps that status.
        """
        unknown = set(fields) - _CANDIDATE_FIELDS
        if unknown:
            raise ValueError(f"Unknown candidate fields: {sorted(unknown)}")

        with self._transaction("upsert_candidate_result"):
            row = self._find_candidate(detection_id, candidate_id, stage)
            if row is None:
                try:
                    with db.session.begin_nested():
                        row = CandidateResult(
                            detection_id=detection_id,
                            candidate_id=candidate_id,
                            processing_stage=stage,
                        )
                        self._apply(row, fields)
                        db.session.add(row)
                except IntegrityError:
                    # Another worker inserted the same key in between.
                    logger.debug(
                        "Concurrent insert on (%s, %s, %s), updating instead",
                        detection_id, candidate_id, stage,
                    )
                    row = self._find_candidate(detection_id, candidate_id, stage)
                    if row is None:
                        raise
                    self._apply(row, fields)
            else:
                self._apply(row, fields)
        return row

    def _find_candidate(
        self, detection_id: int, candidate_id: str, stage: str
    ) -> Optional[CandidateResult]:
        return CandidateResult.query.filter_by(
            detection_id=detection_id,
            candidate_id=candidate_id,
            processing_stage=stage,
        ).first()

    @staticmethod
    def _apply(row: CandidateResult, fields: Dict[str, Any]) -> None:
        for key, value in fields.items():
            if key == "match_status" and row.match_status == _IDENTICAL and value != _IDENTICAL:
                continue
            setattr(row, key, value)

    def candidate_results(
        self, detection_id: int, stage: Optional[str] = None
    ) -> List[CandidateResult]:
        query = CandidateResult.query.filter_by(detection_id=detection_id)
        if stage:
            query = query.filter_by(processing_stage=stage)
        return query.order_by(
            CandidateResult.processing_stage, CandidateResult.result_rank, CandidateResult.id
        ).all()
