"""Batch enrichment endpoints (streamed or background)."""

import json
import logging
import queue
import threading

from flask import Blueprint, Response, current_app, jsonify, request

from models import BatchRun, db
from utils.auth import token_required
from utils.batch_orchestrator import create_batch_run, run_batch
from utils.config import PipelineSettings

logger = logging.getLogger(__name__)

bp = Blueprint("batch", __name__)

KEEPALIVE_SECONDS = 15


def _parse_batch_params(data: dict):
    """Return (params, error message)."""
    params = {"reprocess": bool(data.get("reprocess", False))}

    project_id = data.get("project_id")
    if project_id is not None:
        try:
            project_id = int(project_id)
        except (TypeError, ValueError):
            return None, "project_id invalide"
    params["project_id"] = project_id

    image_ids = data.get("image_ids")
    if image_ids is not None:
        if not isinstance(image_ids, list):
            return None, "image_ids doit etre une liste"
        try:
            image_ids = [int(i) for i in image_ids]
        except (TypeError, ValueError):
            return None, "image_ids invalide"
    params["image_ids"] = image_ids

    concurrency = data.get("concurrency")
    if concurrency is not None:
        try:
            concurrency = int(concurrency)
        except (TypeError, ValueError):
            return None, "concurrency invalide"
    params["concurrency"] = concurrency
    return params, None


def _run_to_dict(run: BatchRun) -> dict:
    return {
        "id": run.id,
        "status": run.status,
        "project_id": run.project_id,
        "concurrency": run.concurrency,
        "total": run.total,
        "successful": run.successful,
        "errored": run.errored,
        "matched": run.matched,
        "no_match": run.no_match,
        "not_dispatched": run.not_dispatched,
        "errors_by_type": run.error_breakdown or {},
        "error_message": run.error_message,
        "started_at": run.started_at.isoformat() if run.started_at else None,
        "finished_at": run.finished_at.isoformat() if run.finished_at else None,
        "duration_seconds": run.duration_seconds,
    }


def _format_sse(event: dict) -> str:
    return f"event: {event.get('type', 'message')}\ndata: {json.dumps(event, default=str)}\n\n"


@bp.route("/batch/enrich", methods=["POST"])
@token_required()
def enrich_stream():
    """Run a batch and stream its progress as Server-Sent Events.

    Closing the connection cancels the batch: no new detection is started,
    detections in progress finish.
    ---
    tags:
      - Batch
    security:
      - Bearer: []
    parameters:
      - in: body
        name: body
        schema:
          type: object
          properties:
            project_id:
              type: integer
            image_ids:
              type: array
              items:
                type: integer
            concurrency:
              type: integer
            reprocess:
              type: boolean
    produces:
      - text/event-stream
    responses:
      200:
        description: Stream of progress events then one complete event
      400:
        description: Invalid parameters
    """
    params, error = _parse_batch_params(request.get_json(silent=True) or {})
    if error:
        return jsonify({"error": error}), 400

    app = current_app._get_current_object()
    events: "queue.Queue" = queue.Queue()
    cancel_event = threading.Event()

    def _run():
        with app.app_context():
            try:
                run_batch(on_event=events.put, cancel_event=cancel_event, **params)
            except Exception as exc:
                logger.exception("Streamed batch failed")
                events.put({"type": "error", "message": str(exc)})
            finally:
                events.put(None)

    thread = threading.Thread(target=_run, name="enrich-stream", daemon=True)
    thread.start()

    def _stream():
        finished = False
        try:
            while True:
                try:
                    event = events.get(timeout=KEEPALIVE_SECONDS)
                except queue.Empty:
                    yield ": keep-alive\n\n"
                    continue
                if event is None:
                    finished = True
                    break
                yield _format_sse(event)
        finally:
            if not finished:
                logger.info("Client disconnected, cancelling batch")
                cancel_event.set()

    return Response(
        _stream(),
        mimetype="text/event-stream",
        headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
    )


def _run_batch_background(app, run_id, params) -> None:
    """Run a batch in a background thread with its own app context."""
    with app.app_context():
        try:
            summary = run_batch(run_id=run_id, **params)
            logger.info(
                "Batch %s termine: %d ok, %d erreurs, %d non traites",
                run_id, summary.successful, summary.errored, summary.not_dispatched,
            )
        except Exception:
            logger.exception("Erreur background batch %s", run_id)


@bp.route("/batch/enrich/async", methods=["POST"])
@token_required()
def enrich_async():
    """Start a batch in the background and return its run id.

    ---
    tags:
      - Batch
    security:
      - Bearer: []
    responses:
      202:
        description: Batch started
      400:
        description: Invalid parameters
    """
    params, error = _parse_batch_params(request.get_json(silent=True) or {})
    if error:
        return jsonify({"error": error}), 400

    settings = PipelineSettings.from_env()
    run = create_batch_run(params["project_id"], settings.clamp_concurrency(params["concurrency"]))

    app = current_app._get_current_object()
    thread = threading.Thread(
        target=_run_batch_background,
        args=(app, run.id, params),
        daemon=True,
    )
    thread.start()
    return jsonify({"status": "started", "run_id": run.id}), 202


@bp.route("/batch/runs/<int:run_id>", methods=["GET"])
@token_required()
def get_run(run_id):
    """Return the summary of a batch run.

    ---
    tags:
      - Batch
    security:
      - Bearer: []
    responses:
      200:
        description: Batch run summary
      404:
        description: Unknown run
    """
    run = db.session.get(BatchRun, run_id)
    if run is None:
        return jsonify({"error": "Batch introuvable"}), 404
    return jsonify(_run_to_dict(run))
