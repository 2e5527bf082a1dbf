"""Brand and size inference from the neighbors of a detection on its shelf.

Products of one brand tend to be grouped on a shelf, so a detection whose
brand or size was read with low confidence can be checked against the
products on its left and right. The corrected value replaces the extracted
one only when the model is more confident about it.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Sequence

from utils.errors import ExtractionFailure
from utils.extraction import FieldValue
from utils.image_utils import BoundingBox, crop_to_box
from utils.llm_client import VisionLLM
from utils.prompts import STEP_SHELF_CONTEXT, get_prompt_template, render_prompt

logger = logging.getLogger(__name__)

NEIGHBORS_PER_SIDE = 3
MAX_HORIZONTAL_GAP = 500
# Same shelf: vertical centers within this share of the target height.
SHELF_TOLERANCE = 0.3
LOW_BRAND_CONFIDENCE = 0.9


@dataclass
class Neighbors:
    left: List[Any] = field(default_factory=list)
    right: List[Any] = field(default_factory=list)

    def nearest(self, per_side: int = NEIGHBORS_PER_SIDE) -> "Neighbors":
        return Neighbors(self.left[:per_side], self.right[:per_side])


def find_neighbors(target, detections: Sequence[Any], max_gap: int = MAX_HORIZONTAL_GAP) -> Neighbors:
    """Detections on the same shelf as ``target``, closest first on each side."""
    center = (target.y0 + target.y1) / 2
    tolerance = (target.y1 - target.y0) * SHELF_TOLERANCE
    same_shelf = [
        d for d in detections
        if d.id != target.id and abs((d.y0 + d.y1) / 2 - center) <= tolerance
    ]
    left = sorted(
        (d for d in same_shelf if d.x1 <= target.x0 and target.x0 - d.x1 <= max_gap),
        key=lambda d: -d.x1,
    )
    right = sorted(
        (d for d in same_shelf if d.x0 >= target.x1 and d.x0 - target.x1 <= max_gap),
        key=lambda d: d.x0,
    )
    return Neighbors(left, right)


def context_box(target, neighbors: Neighbors) -> BoundingBox:
    """Smallest box covering ``target`` and the given neighbors."""
    boxes = [target, *neighbors.left, *neighbors.right]
    return BoundingBox(
        min(b.y0 for b in boxes),
        min(b.x0 for b in boxes),
        max(b.y1 for b in boxes),
        max(b.x1 for b in boxes),
    )


def needs_context(detection) -> bool:
    brand = (detection.brand_name or "").strip().lower()
    if not brand or brand == "unknown":
        return True
    return (detection.brand_confidence or 0.0) <= LOW_BRAND_CONFIDENCE


@dataclass(frozen=True)
class ContextualAnalysis:
    brand: FieldValue = field(default_factory=FieldValue)
    size: FieldValue = field(default_factory=FieldValue)
    notes: Optional[str] = None

    @classmethod
    def from_payload(cls, payload: Dict[str, Any]) -> "ContextualAnalysis":
        notes = payload.get("notes")
        return cls(
            brand=FieldValue.build(payload.get("brand"), payload.get("brandConfidence")),
            size=FieldValue.build(payload.get("size"), payload.get("sizeConfidence")),
            notes=str(notes).strip() if notes else None,
        )

    def as_dict(self) -> Dict[str, Any]:
        return {
            "brand": {"value": self.brand.value, "confidence": self.brand.confidence},
            "size": {"value": self.size.value, "confidence": self.size.confidence},
            "notes": self.notes,
        }


@dataclass
class Correction:
    brand: Optional[FieldValue] = None
    size: Optional[FieldValue] = None
    notes: List[str] = field(default_factory=list)

    @property
    def corrected(self) -> bool:
        return self.brand is not None or self.size is not None


def plan_correction(detection, analysis: ContextualAnalysis) -> Correction:
    """Values of ``analysis`` that beat the extracted ones on confidence."""
    correction = Correction()
    current_brand = detection.brand_confidence or 0.0
    if analysis.brand.value and analysis.brand.confidence > current_brand:
        correction.brand = analysis.brand
        correction.notes.append(
            f'Marque: "{detection.brand_name or "Unknown"}" ({current_brand:.0%}) -> '
            f'"{analysis.brand.value}" ({analysis.brand.confidence:.0%})'
        )
    current_size = detection.size_confidence or 0.0
    if (
        analysis.size.value
        and analysis.size.confidence > current_size
        and analysis.size.value != detection.size
    ):
        correction.size = analysis.size
        correction.notes.append(
            f'Contenance: "{detection.size or "Unknown"}" ({current_size:.0%}) -> '
            f'"{analysis.size.value}" ({analysis.size.confidence:.0%})'
        )
    return correction


def _describe(detections: Sequence[Any]) -> str:
    if not detections:
        return "Aucun"
    return "\n".join(
        f"{n}. Marque : {d.brand_name or 'Unknown'}, Contenance : {d.size or 'Unknown'}"
        for n, d in enumerate(detections, start=1)
    )


class ShelfContextAnalyzer:
    def __init__(
        self,
        llm: VisionLLM,
        timeout: float = 30.0,
        prompt_loader: Callable[[Optional[int], str], str] = get_prompt_template,
    ):
        self.llm = llm
        self.timeout = timeout
        self.prompt_loader = prompt_loader

    def analyze(
        self,
        image_data: bytes,
        target,
        neighbors: Neighbors,
        project_id: Optional[int] = None,
    ) -> ContextualAnalysis:
        nearest = neighbors.nearest()
        box = context_box(target, nearest)
        try:
            crop = crop_to_box(image_data, box)
        except ValueError as exc:
            raise ExtractionFailure("Decoupage du contexte impossible", cause=exc) from exc

        prompt = render_prompt(
            self.prompt_loader(project_id, STEP_SHELF_CONTEXT),
            {
                "brand": target.brand_name,
                "productName": target.product_name,
                "size": target.size,
                "leftNeighbors": _describe(nearest.left),
                "rightNeighbors": _describe(nearest.right),
            },
        )
        payload = self.llm.ask_json(prompt, [crop], self.timeout, ExtractionFailure)
        if not isinstance(payload, dict):
            raise ExtractionFailure("Reponse LLM inattendue")

        analysis = ContextualAnalysis.from_payload(payload)
        logger.debug(
            "Shelf context for detection %s (%d left, %d right): brand=%s size=%s",
            target.id, len(nearest.left), len(nearest.right),
            analysis.brand.value, analysis.size.value,
        )
        return analysis
