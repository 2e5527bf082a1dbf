"""Concurrent enrichment of detections: extract, search, pre-filter, match.

Each detection moves through ``pending -> extracting -> searching ->
pre_filtering -> visual_matching -> done`` or ends ``errored``. Items are
independent; a failure on one never stops its siblings, except a catalog
authentication failure which aborts the whole batch.
"""

from __future__ import annotations

import logging
import queue
import threading
import time
from collections import OrderedDict
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Sequence

from flask import current_app

from models import BatchRun, Detection, db
from utils.catalog_search import CatalogSearchAdapter, build_search_term
from utils.config import PipelineSettings
from utils.errors import (
    AUTH_ABORT_MESSAGE,
    AuthFailure,
    ExtractionFailure,
    PipelineError,
    PersistenceFailure,
)
from utils.extraction import ExtractedInfo, ExtractionAdapter
from utils.image_utils import BoundingBox, crop_to_box, load_image_bytes
from utils.llm_client import VisionLLM
from utils.logging_config import get_context_logger
from utils.prefilter import score_candidates
from utils.result_store import ResultStore
from utils.visual_match import VisualMatcher

logger = logging.getLogger(__name__)

STAGE_PENDING = "pending"
STAGE_EXTRACTING = "extracting"
STAGE_SEARCHING = "searching"
STAGE_PRE_FILTERING = "pre_filtering"
STAGE_VISUAL_MATCHING = "visual_matching"
STAGE_DONE = "done"
STAGE_ERRORED = "errored"

IMAGE_CACHE_SIZE = 16


@dataclass(frozen=True)
class WorkItem:
    detection_id: int
    image_id: int
    project_id: Optional[int] = None
    store_name: Optional[str] = None


@dataclass
class BatchSummary:
    total: int = 0
    successful: int = 0
    errored: int = 0
    matched: int = 0
    no_match: int = 0
    not_dispatched: int = 0
    already_extracted: int = 0
    aborted: bool = False
    cancelled: bool = False
    abort_reason: Optional[str] = None
    errors_by_type: Dict[str, Dict[str, Any]] = field(default_factory=dict)
    duration_seconds: float = 0.0
    run_id: Optional[int] = None

    def record_error(self, kind: str, reason: str) -> None:
        bucket = self.errors_by_type.setdefault(kind, {"count": 0, "reasons": []})
        bucket["count"] += 1
        if reason and reason not in bucket["reasons"]:
            bucket["reasons"].append(reason)

    def as_event(self) -> Dict[str, Any]:
        return {
            "type": "complete",
            "run_id": self.run_id,
            "total": self.total,
            "successful": self.successful,
            "errored": self.errored,
            "matched": self.matched,
            "no_match": self.no_match,
            "not_dispatched": self.not_dispatched,
            "already_extracted": self.already_extracted,
            "aborted": self.aborted,
            "cancelled": self.cancelled,
            "errors_by_type": self.errors_by_type,
            "duration_seconds": round(self.duration_seconds, 3),
        }


@dataclass
class _ItemState:
    stage: str = STAGE_PENDING


def _candidate_fields(candidate, term: str, rank: int, **extra) -> Dict[str, Any]:
    fields = {
        "result_rank": rank,
        "search_term": term,
        "product_name": candidate.name,
        "brand_name": candidate.brand,
        "category": candidate.category,
        "size": candidate.size,
        "front_image_url": candidate.image_url,
    }
    fields.update(extra)
    return fields


class BatchOrchestrator:
    """Run work items on a pool of worker threads sharing one queue."""

    def __init__(
        self,
        extractor: ExtractionAdapter,
        searcher: CatalogSearchAdapter,
        matcher: VisualMatcher,
        store: Optional[ResultStore] = None,
        concurrency: int = 5,
        top_k: int = 10,
        min_score: float = 0.5,
        image_loader: Callable[..., bytes] = load_image_bytes,
        image_fetch_timeout: float = 20.0,
        on_event: Optional[Callable[[Dict[str, Any]], None]] = None,
        cancel_event: Optional[threading.Event] = None,
        app=None,
        run_id: Optional[int] = None,
    ):
        self.extractor = extractor
        self.searcher = searcher
        self.matcher = matcher
        self.store = store or ResultStore()
        self.concurrency = max(1, int(concurrency))
        self.top_k = top_k
        self.min_score = min_score
        self.image_loader = image_loader
        self.image_fetch_timeout = image_fetch_timeout
        self.on_event = on_event
        self.cancel_event = cancel_event or threading.Event()
        self.abort_event = threading.Event()
        self.app = app
        self.run_id = run_id
        self.log = get_context_logger(__name__, run_id=run_id)

        self._lock = threading.Lock()
        self._image_lock = threading.Lock()
        self._images: "OrderedDict[int, bytes]" = OrderedDict()
        self._summary = BatchSummary()
        self._processed = 0

    # ------------------------------------------------------------------
    # Run
    # ------------------------------------------------------------------

    def run(self, items: Sequence[WorkItem]) -> BatchSummary:
        app = self.app or current_app._get_current_object()
        started = time.monotonic()
        self._summary = BatchSummary(total=len(items), run_id=self.run_id)
        self._processed = 0

        work: "queue.Queue[WorkItem]" = queue.Queue()
        for item in items:
            work.put(item)

        workers = [
            threading.Thread(
                target=self._worker,
                args=(app, work),
                name=f"enrich-worker-{n}",
                daemon=True,
            )
            for n in range(min(self.concurrency, len(items)))
        ]
        self.log.info("Batch started: %d items, %d workers", len(items), len(workers))
        for worker in workers:
            worker.start()
        for worker in workers:
            worker.join()

        leftovers: List[WorkItem] = []
        while True:
            try:
                leftovers.append(work.get_nowait())
            except queue.Empty:
                break

        with app.app_context():
            self._settle_undispatched(leftovers)

        summary = self._summary
        summary.aborted = self.abort_event.is_set()
        summary.cancelled = self.cancel_event.is_set() and not summary.aborted
        summary.duration_seconds = time.monotonic() - started
        self.log.info(
            "Batch finished: %d ok (%d matched, %d no match), %d errors, %d not dispatched",
            summary.successful, summary.matched, summary.no_match,
            summary.errored, summary.not_dispatched,
        )
        self._emit_raw(summary.as_event())
        return summary

    def _worker(self, app, work: "queue.Queue[WorkItem]") -> None:
        with app.app_context():
            while not self.abort_event.is_set() and not self.cancel_event.is_set():
                try:
                    item = work.get_nowait()
                except queue.Empty:
                    return
                self._process(item)

    def _settle_undispatched(self, leftovers: List[WorkItem]) -> None:
        with self._lock:
            self._summary.not_dispatched = len(leftovers)
        if not leftovers:
            return
        if not self.abort_event.is_set():
            self.log.info("Batch cancelled, %d items left pending", len(leftovers))
            return
        for item in leftovers:
            self._fail(item, STAGE_PENDING, AuthFailure.kind, AUTH_ABORT_MESSAGE)

    # ------------------------------------------------------------------
    # One item
    # ------------------------------------------------------------------

    def _process(self, item: WorkItem) -> None:
        state = _ItemState()
        try:
            selected = self._run_item(item, state)
            self._succeed(item, selected)
        except AuthFailure as exc:
            self._trigger_abort(exc)
            self._fail(item, state.stage, AuthFailure.kind, AUTH_ABORT_MESSAGE)
        except PipelineError as exc:
            self._item_log(item, state.stage).warning(
                "Detection %s failed at %s: %s", item.detection_id, state.stage, exc
            )
            self._fail(item, state.stage, exc.kind, str(exc))
        except Exception as exc:
            self._item_log(item, state.stage).exception(
                "Unexpected error on detection %s", item.detection_id
            )
            self._fail(item, state.stage, "unexpected", str(exc) or exc.__class__.__name__)

    def _item_log(self, item: WorkItem, stage: str):
        return self.log.bind(detection_id=item.detection_id, image_id=item.image_id, stage=stage)

    def _run_item(self, item: WorkItem, state: "_ItemState") -> Optional[str]:
        """Drive one item to ``done``; returns the selected candidate id."""
        store = self.store
        detection = store.get_detection(item.detection_id)
        if detection is None:
            raise PersistenceFailure(f"Detection {item.detection_id} introuvable")
        box = BoundingBox.from_detection(detection)

        self._checkpoint()
        self._enter(item, state, STAGE_EXTRACTING)
        if detection.brand_extracted:
            info = ExtractedInfo.from_detection(detection)
            with self._lock:
                self._summary.already_extracted += 1
            crop = None
        else:
            crop = self._crop(item, detection, box)
            info = self.extractor.extract(crop, box, item.project_id)
            store.save_extraction(item.detection_id, info)

        if not info.has_identity:
            store.mark_fully_analyzed(item.detection_id, None)
            return None
        if crop is None:
            # Reused extraction: the crop is only needed for visual matching.
            crop = self._crop(item, detection, box)

        self._checkpoint()
        self._enter(item, state, STAGE_SEARCHING)
        term = build_search_term(info)
        candidates = self.searcher.search(term, interrupt=self.abort_event)
        for rank, candidate in enumerate(candidates, start=1):
            store.upsert_candidate_result(
                item.detection_id,
                candidate.candidate_id,
                "search",
                _candidate_fields(candidate, term, rank, full_data=candidate.raw),
            )
        if not candidates:
            store.mark_fully_analyzed(item.detection_id, None)
            return None

        # Past the search stage: the item completes even if the batch aborts.
        self._enter(item, state, STAGE_PRE_FILTERING)
        shortlist = score_candidates(
            info, candidates, item.store_name, top_k=self.top_k, min_score=self.min_score
        )
        for rank, scored in enumerate(shortlist, start=1):
            candidate = scored.candidate
            store.upsert_candidate_result(
                item.detection_id,
                candidate.candidate_id,
                "pre_filter",
                _candidate_fields(
                    candidate,
                    term,
                    rank,
                    prefilter_score=scored.score,
                    full_data={"components": scored.components, "search_rank": scored.search_rank},
                ),
            )
        if not shortlist:
            store.mark_fully_analyzed(item.detection_id, None)
            return None

        self._enter(item, state, STAGE_VISUAL_MATCHING)
        ranks = {scored.candidate_id: rank for rank, scored in enumerate(shortlist, start=1)}

        def _record(scored, comparison):
            candidate = scored.candidate
            store.upsert_candidate_result(
                item.detection_id,
                candidate.candidate_id,
                "visual_match",
                _candidate_fields(
                    candidate,
                    term,
                    ranks[candidate.candidate_id],
                    prefilter_score=scored.score,
                    match_status=comparison.status.value,
                    visual_similarity=comparison.similarity,
                    match_reason=comparison.reason,
                ),
            )

        decision = self.matcher.match(crop, info, shortlist, item.project_id, on_comparison=_record)
        store.mark_fully_analyzed(
            item.detection_id, decision.selected_candidate_id, decision.selection_method
        )
        return decision.selected_candidate_id

    def _crop(self, item: WorkItem, detection: Detection, box: BoundingBox) -> bytes:
        try:
            image_bytes = self._image_bytes(item.image_id, detection.image)
        except (OSError, ValueError) as exc:
            raise ExtractionFailure("Image source illisible", cause=exc) from exc
        try:
            return crop_to_box(image_bytes, box)
        except ValueError as exc:
            raise ExtractionFailure("Decoupage de la detection impossible", cause=exc) from exc

    def _image_bytes(self, image_id: int, image) -> bytes:
        with self._image_lock:
            cached = self._images.get(image_id)
            if cached is not None:
                self._images.move_to_end(image_id)
                return cached
        data = self.image_loader(image, self.image_fetch_timeout)
        with self._image_lock:
            self._images[image_id] = data
            while len(self._images) > IMAGE_CACHE_SIZE:
                self._images.popitem(last=False)
        return data

    def _checkpoint(self) -> None:
        """Stop an item that has not searched yet once the batch is aborted."""
        if self.abort_event.is_set():
            raise AuthFailure(AUTH_ABORT_MESSAGE)

    def _trigger_abort(self, exc: AuthFailure) -> None:
        with self._lock:
            if self.abort_event.is_set():
                return
            self._summary.abort_reason = str(exc)
            self.abort_event.set()
        self.log.error("Catalog authentication failed, aborting batch: %s", exc)

    # ------------------------------------------------------------------
    # Bookkeeping
    # ------------------------------------------------------------------

    def _enter(self, item: WorkItem, state: "_ItemState", stage: str) -> None:
        state.stage = stage
        self._item_log(item, stage).debug("Detection %s -> %s", item.detection_id, stage)
        self.store.set_status(item.detection_id, stage)
        self._emit(item, stage, "running", f"Etape {stage}")

    def _succeed(self, item: WorkItem, selected: Optional[str]) -> None:
        with self._lock:
            self._processed += 1
            self._summary.successful += 1
            if selected:
                self._summary.matched += 1
            else:
                self._summary.no_match += 1
        message = f"Produit selectionne: {selected}" if selected else "Aucune correspondance"
        self._emit(item, STAGE_DONE, "done", message)

    def _fail(self, item: WorkItem, stage: str, kind: str, reason: str) -> None:
        try:
            self.store.mark_errored(item.detection_id, stage, reason)
        except PersistenceFailure as exc:
            self._item_log(item, stage).error(
                "Cannot record failure of detection %s: %s", item.detection_id, exc
            )
        with self._lock:
            self._processed += 1
            self._summary.errored += 1
            self._summary.record_error(kind, reason)
        self._emit(item, stage, STAGE_ERRORED, reason)

    def _emit(self, item: WorkItem, stage: str, status: str, message: str) -> None:
        with self._lock:
            event = {
                "type": "progress",
                "item_id": item.detection_id,
                "image_id": item.image_id,
                "stage": stage,
                "status": status,
                "message": message,
                "processed": self._processed,
                "total": self._summary.total,
                "successful": self._summary.successful,
                "errored": self._summary.errored,
            }
            self._emit_raw(event)

    def _emit_raw(self, event: Dict[str, Any]) -> None:
        if self.on_event is None:
            return
        try:
            self.on_event(event)
        except Exception:
            logger.exception("Progress listener failed")


# ---------------------------------------------------------------------------
# Entry point used by routes and scripts
# ---------------------------------------------------------------------------

@dataclass
class Adapters:
    extractor: ExtractionAdapter
    searcher: CatalogSearchAdapter
    matcher: VisualMatcher


def build_adapters(settings: PipelineSettings) -> Adapters:
    retry_policy = settings.retry_policy()
    llm = VisionLLM(model=settings.llm_model, retry_policy=retry_policy)
    return Adapters(
        extractor=ExtractionAdapter(llm, timeout=settings.extraction_timeout),
        searcher=CatalogSearchAdapter(
            settings.catalog_api_url,
            settings.catalog_email,
            settings.catalog_password,
            max_results=settings.search_max_results,
            timeout=settings.search_timeout,
            token_ttl=settings.catalog_token_ttl,
            retry_policy=retry_policy,
        ),
        matcher=VisualMatcher(
            llm,
            timeout=settings.visual_match_timeout,
            image_timeout=settings.image_fetch_timeout,
        ),
    )


def select_work_items(
    project_id: Optional[int] = None,
    image_ids: Optional[List[int]] = None,
    reprocess: bool = False,
    store: Optional[ResultStore] = None,
) -> List[WorkItem]:
    store = store or ResultStore()
    ids = store.pending_detection_ids(project_id, image_ids, reprocess)
    if not ids:
        return []
    detections = {d.id: d for d in Detection.query.filter(Detection.id.in_(ids)).all()}
    return [
        WorkItem(
            detection_id=det_id,
            image_id=detections[det_id].image_id,
            project_id=detections[det_id].image.project_id,
            store_name=detections[det_id].image.store_name,
        )
        for det_id in ids
        if det_id in detections
    ]


def create_batch_run(project_id: Optional[int], concurrency: int) -> BatchRun:
    run = BatchRun(status="running", project_id=project_id, concurrency=concurrency)
    db.session.add(run)
    db.session.commit()
    return run


def run_batch(
    project_id: Optional[int] = None,
    image_ids: Optional[List[int]] = None,
    concurrency: Optional[int] = None,
    reprocess: bool = False,
    on_event: Optional[Callable[[Dict[str, Any]], None]] = None,
    cancel_event: Optional[threading.Event] = None,
    adapters: Optional[Adapters] = None,
    settings: Optional[PipelineSettings] = None,
    run_id: Optional[int] = None,
    image_loader: Callable[..., bytes] = load_image_bytes,
) -> BatchSummary:
    """Enrich every pending detection in scope and record a ``BatchRun``."""
    settings = settings or PipelineSettings.from_env()
    workers = settings.clamp_concurrency(concurrency)

    run = db.session.get(BatchRun, run_id) if run_id is not None else None
    if run is None:
        run = create_batch_run(project_id, workers)
    run_id = run.id

    try:
        items = select_work_items(project_id, image_ids, reprocess)
        adapters = adapters or build_adapters(settings)
        # Workers use their own sessions; release ours while they run.
        db.session.commit()
        orchestrator = BatchOrchestrator(
            adapters.extractor,
            adapters.searcher,
            adapters.matcher,
            concurrency=workers,
            top_k=settings.prefilter_top_k,
            min_score=settings.prefilter_min_score,
            image_loader=image_loader,
            image_fetch_timeout=settings.image_fetch_timeout,
            on_event=on_event,
            cancel_event=cancel_event,
            run_id=run_id,
        )
        summary = orchestrator.run(items)
    except Exception as exc:
        logger.exception("Batch run %s failed", run_id)
        db.session.rollback()
        run = db.session.get(BatchRun, run_id)
        run.status = "failed"
        run.error_message = str(exc)
        run.finished_at = datetime.now(timezone.utc)
        db.session.commit()
        raise

    summary.run_id = run_id
    run = db.session.get(BatchRun, run_id)
    if summary.aborted:
        run.status = "aborted"
        run.error_message = summary.abort_reason
    elif summary.cancelled:
        run.status = "cancelled"
    else:
        run.status = "completed"
    run.total = summary.total
    run.successful = summary.successful
    run.errored = summary.errored
    run.matched = summary.matched
    run.no_match = summary.no_match
    run.not_dispatched = summary.not_dispatched
    run.error_breakdown = summary.errors_by_type
    run.finished_at = datetime.now(timezone.utc)
    run.duration_seconds = round(summary.duration_seconds, 3)
    db.session.commit()
    return summary
