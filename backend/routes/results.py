"""Detection ingestion and enrichment results."""

import logging

from flask import Blueprint, jsonify, request

from models import CandidateResult, Detection, Image, db
from utils.auth import token_required
from utils.config import PipelineSettings
from utils.errors import PersistenceFailure
from utils.result_store import ResultStore

logger = logging.getLogger(__name__)

bp = Blueprint("results", __name__)

VALID_STAGES = {"search", "pre_filter", "visual_match"}


def _detection_to_dict(detection: Detection) -> dict:
    return {
        "id": detection.id,
        "image_id": detection.image_id,
        "detection_index": detection.detection_index,
        "label": detection.label,
        "confidence": detection.confidence,
        "box_2d": [detection.y0, detection.x0, detection.y1, detection.x1],
        "brand_name": detection.brand_name,
        "brand_confidence": detection.brand_confidence,
        "product_name": detection.product_name,
        "product_name_confidence": detection.product_name_confidence,
        "category": detection.category,
        "category_confidence": detection.category_confidence,
        "size": detection.size,
        "size_confidence": detection.size_confidence,
        "description": detection.description,
        "description_confidence": detection.description_confidence,
        "is_product": detection.is_product,
        "details_visible": detection.details_visible,
        "extraction_notes": detection.extraction_notes,
        "price": detection.price,
        "price_currency": detection.price_currency,
        "price_confidence": detection.price_confidence,
        "corrected_by_contextual": detection.corrected_by_contextual,
        "contextual_correction_notes": detection.contextual_correction_notes,
        "selected_candidate_id": detection.selected_candidate_id,
        "selection_method": detection.selection_method,
        "human_validation": detection.human_validation,
        "fully_analyzed": detection.fully_analyzed,
        "analysis_completed_at": (
            detection.analysis_completed_at.isoformat()
            if detection.analysis_completed_at
            else None
        ),
        "pipeline_status": detection.pipeline_status,
        "error_stage": detection.error_stage,
        "error_message": detection.error_message,
    }


def _candidate_to_dict(row: CandidateResult) -> dict:
    return {
        "id": row.id,
        "candidate_id": row.candidate_id,
        "processing_stage": row.processing_stage,
        "result_rank": row.result_rank,
        "search_term": row.search_term,
        "product_name": row.product_name,
        "brand_name": row.brand_name,
        "category": row.category,
        "size": row.size,
        "front_image_url": row.front_image_url,
        "prefilter_score": row.prefilter_score,
        "match_status": row.match_status,
        "visual_similarity": row.visual_similarity,
        "match_reason": row.match_reason,
        "is_selected": row.is_selected,
    }


@bp.route("/images/<int:image_id>/detections", methods=["POST"])
@token_required()
def ingest_detections(image_id):
    """Store the detector output for an image.

    ---
    tags:
      - Detections
    security:
      - Bearer: []
    parameters:
      - in: path
        name: image_id
        type: integer
        required: true
      - in: body
        name: body
        schema:
          type: object
          properties:
            detections:
              type: array
              items:
                type: object
                properties:
                  box_2d:
                    type: array
                    items:
                      type: integer
                  label:
                    type: string
                  confidence:
                    type: number
            threshold:
              type: number
    responses:
      201:
        description: Detections kept above the confidence threshold
      404:
        description: Unknown image
      409:
        description: Detections already recorded for this image
    """
    data = request.get_json(silent=True) or {}
    raw = data.get("detections")
    if not isinstance(raw, list):
        return jsonify({"error": "Le champ 'detections' doit etre une liste"}), 400

    threshold = data.get("threshold")
    if threshold is None:
        threshold = PipelineSettings.from_env().detection_confidence_threshold
    try:
        threshold = float(threshold)
    except (TypeError, ValueError):
        return jsonify({"error": "Seuil invalide"}), 400

    try:
        created = ResultStore().record_detections(image_id, raw, threshold)
    except LookupError:
        return jsonify({"error": "Image introuvable"}), 404
    except ValueError as exc:
        return jsonify({"error": str(exc)}), 409
    except PersistenceFailure as exc:
        return jsonify({"error": exc.message}), 500

    return (
        jsonify(
            {
                "image_id": image_id,
                "received": len(raw),
                "kept": len(created),
                "detections": [_detection_to_dict(d) for d in created],
            }
        ),
        201,
    )


@bp.route("/images/<int:image_id>/detections", methods=["GET"])
@token_required()
def list_detections(image_id):
    """List the detections of an image with their enrichment state.

    ---
    tags:
      - Detections
    security:
      - Bearer: []
    responses:
      200:
        description: Detections ordered by index
      404:
        description: Unknown image
    """
    image = db.session.get(Image, image_id)
    if image is None:
        return jsonify({"error": "Image introuvable"}), 404
    detections = (
        Detection.query.filter_by(image_id=image_id)
        .order_by(Detection.detection_index)
        .all()
    )
    return jsonify(
        {
            "image_id": image_id,
            "detection_completed": image.detection_completed,
            "detections": [_detection_to_dict(d) for d in detections],
        }
    )


@bp.route("/detections/<int:detection_id>/candidates", methods=["GET"])
@token_required()
def list_candidates(detection_id):
    """List candidate results of a detection, optionally for one stage.

    ---
    tags:
      - Detections
    security:
      - Bearer: []
    parameters:
      - in: query
        name: stage
        type: string
        enum: [search, pre_filter, visual_match]
    responses:
      200:
        description: Candidate rows
      400:
        description: Unknown stage
      404:
        description: Unknown detection
    """
    store = ResultStore()
    detection = store.get_detection(detection_id)
    if detection is None:
        return jsonify({"error": "Detection introuvable"}), 404

    stage = request.args.get("stage")
    if stage and stage not in VALID_STAGES:
        return jsonify({"error": f"Etape invalide: {stage}"}), 400

    rows = store.candidate_results(detection_id, stage)
    return jsonify(
        {
            "detection_id": detection_id,
            "selected_candidate_id": detection.selected_candidate_id,
            "candidates": [_candidate_to_dict(r) for r in rows],
        }
    )
