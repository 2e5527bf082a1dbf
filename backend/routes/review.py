"""Per-detection follow-up analyses: price tag, shelf context, human review."""

import logging

import requests
from flask import Blueprint, jsonify, request

from models import Detection
from utils.auth import token_required
from utils.config import PipelineSettings
from utils.errors import AdapterFailure, PersistenceFailure
from utils.image_utils import BoundingBox, load_image_bytes
from utils.llm_client import VisionLLM
from utils.price_extraction import PriceExtractor
from utils.result_store import ResultStore
from utils.shelf_context import ShelfContextAnalyzer, find_neighbors

logger = logging.getLogger(__name__)

bp = Blueprint("review", __name__)


def _vision_llm(settings: PipelineSettings) -> VisionLLM:
    return VisionLLM(model=settings.llm_model, retry_policy=settings.retry_policy())


def _source_image(detection: Detection, settings: PipelineSettings) -> bytes:
    return load_image_bytes(detection.image, settings.image_fetch_timeout)


@bp.route("/detections/<int:detection_id>/price", methods=["POST"])
@token_required()
def extract_price(detection_id):
    """Read the price tag below a detected product.

    ---
    tags:
      - Detections
    security:
      - Bearer: []
    responses:
      200:
        description: Price stored on the detection (null when unreadable)
      404:
        description: Unknown detection
      422:
        description: Source image unreadable
      502:
        description: Vision model failure
    """
    store = ResultStore()
    detection = store.get_detection(detection_id)
    if detection is None:
        return jsonify({"error": "Detection introuvable"}), 404

    settings = PipelineSettings.from_env()
    try:
        image_data = _source_image(detection, settings)
    except (OSError, requests.RequestException) as exc:
        logger.warning("Cannot read image of detection %s: %s", detection_id, exc)
        return jsonify({"error": "Image source illisible"}), 422

    hint = detection.product_name or detection.brand_name or detection.label
    extractor = PriceExtractor(_vision_llm(settings), timeout=settings.extraction_timeout)
    try:
        price = extractor.extract(
            image_data, BoundingBox.from_detection(detection), hint, detection.image.project_id
        )
        store.save_price(detection_id, price)
    except AdapterFailure as exc:
        logger.warning("Price extraction failed for detection %s: %s", detection_id, exc)
        return jsonify({"error": str(exc)}), 502
    except PersistenceFailure as exc:
        return jsonify({"error": exc.message}), 500

    return jsonify({"detection_id": detection_id, **price.as_dict()})


@bp.route("/detections/<int:detection_id>/contextual-analysis", methods=["POST"])
@token_required()
def contextual_analysis(detection_id):
    """Infer brand and size from the neighbors of a detection on its shelf.

    ---
    tags:
      - Detections
    security:
      - Bearer: []
    parameters:
      - in: body
        name: body
        schema:
          type: object
          properties:
            apply:
              type: boolean
              description: Overwrite brand/size when the inferred value is more confident
    responses:
      200:
        description: Analysis stored, with the correction applied if any
      400:
        description: Invalid parameters
      404:
        description: Unknown detection
      409:
        description: Detection not extracted yet
      422:
        description: Source image unreadable
      502:
        description: Vision model failure
    """
    data = request.get_json(silent=True) or {}
    apply = data.get("apply", True)
    if not isinstance(apply, bool):
        return jsonify({"error": "Le champ 'apply' doit etre un booleen"}), 400

    store = ResultStore()
    detection = store.get_detection(detection_id)
    if detection is None:
        return jsonify({"error": "Detection introuvable"}), 404
    if not detection.brand_extracted:
        return jsonify({"error": "Extraction non effectuee pour cette detection"}), 409

    siblings = Detection.query.filter_by(image_id=detection.image_id).all()
    neighbors = find_neighbors(detection, siblings)

    settings = PipelineSettings.from_env()
    try:
        image_data = _source_image(detection, settings)
    except (OSError, requests.RequestException) as exc:
        logger.warning("Cannot read image of detection %s: %s", detection_id, exc)
        return jsonify({"error": "Image source illisible"}), 422

    analyzer = ShelfContextAnalyzer(_vision_llm(settings), timeout=settings.extraction_timeout)
    try:
        analysis = analyzer.analyze(image_data, detection, neighbors, detection.image.project_id)
        correction = store.save_contextual_analysis(detection_id, analysis, neighbors, apply)
    except AdapterFailure as exc:
        logger.warning("Shelf context failed for detection %s: %s", detection_id, exc)
        return jsonify({"error": str(exc)}), 502
    except PersistenceFailure as exc:
        return jsonify({"error": exc.message}), 500

    return jsonify(
        {
            "detection_id": detection_id,
            "neighbors": {
                "left": [d.id for d in neighbors.left],
                "right": [d.id for d in neighbors.right],
            },
            "analysis": analysis.as_dict(),
            "corrected": apply and correction.corrected,
            "correction_notes": correction.notes,
        }
    )


@bp.route("/detections/<int:detection_id>/validation", methods=["POST"])
@token_required()
def validate_match(detection_id):
    """Record whether the selected catalog product is the right one.

    ---
    tags:
      - Detections
    security:
      - Bearer: []
    parameters:
      - in: body
        name: body
        schema:
          type: object
          required: [is_correct]
          properties:
            is_correct:
              type: boolean
    responses:
      200:
        description: Verdict stored
      400:
        description: Missing or non boolean verdict
      404:
        description: Unknown detection
      409:
        description: No selected product to validate
    """
    data = request.get_json(silent=True) or {}
    is_correct = data.get("is_correct")
    if not isinstance(is_correct, bool):
        return jsonify({"error": "Le champ 'is_correct' (booleen) est requis"}), 400

    store = ResultStore()
    if store.get_detection(detection_id) is None:
        return jsonify({"error": "Detection introuvable"}), 404
    try:
        detection = store.record_validation(detection_id, is_correct)
    except ValueError as exc:
        return jsonify({"error": str(exc)}), 409
    except PersistenceFailure as exc:
        return jsonify({"error": exc.message}), 500

    logger.info(
        "Validation for detection %s: %s", detection_id, "correct" if is_correct else "incorrect"
    )
    return jsonify(
        {
            "detection_id": detection_id,
            "selected_candidate_id": detection.selected_candidate_id,
            "human_validation": detection.human_validation,
            "human_validation_at": detection.human_validation_at.isoformat(),
        }
    )
