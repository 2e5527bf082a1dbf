"""Reading the shelf price tag printed below a detected product."""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional

from utils.errors import ExtractionFailure
from utils.image_utils import BOX_SCALE, BoundingBox, crop_to_box
from utils.llm_client import VisionLLM
from utils.prompts import STEP_EXTRACT_PRICE, get_prompt_template, render_prompt

logger = logging.getLogger(__name__)

# The box is extended downwards by this share of its height to reach the tag.
PRICE_TAG_EXPANSION = 0.5
DEFAULT_CURRENCY = "USD"

_PRICE_RE = re.compile(r"\d+(?:[.,]\d{1,2})?")


def price_tag_box(box: BoundingBox, expansion: float = PRICE_TAG_EXPANSION) -> BoundingBox:
    height = box.y1 - box.y0
    return BoundingBox(box.y0, box.x0, min(BOX_SCALE, round(box.y1 + height * expansion)), box.x1)


def _clamp(value: Any) -> float:
    try:
        number = float(value)
    except (TypeError, ValueError):
        return 0.0
    return min(max(number, 0.0), 1.0)


def normalize_price(raw: Any) -> Optional[str]:
    """``"$2,49"`` -> ``"2.49"``; None when no amount can be read."""
    if raw is None or isinstance(raw, bool):
        return None
    match = _PRICE_RE.search(str(raw))
    if not match:
        return None
    return f"{float(match.group(0).replace(',', '.')):.2f}"


@dataclass(frozen=True)
class PriceInfo:
    price: Optional[str] = None
    currency: str = DEFAULT_CURRENCY
    confidence: float = 0.0

    @property
    def found(self) -> bool:
        return self.price is not None

    @classmethod
    def from_payload(cls, payload: Dict[str, Any]) -> "PriceInfo":
        price = normalize_price(payload.get("price"))
        if price is None:
            return cls()
        currency = str(payload.get("currency") or "").strip().upper()
        if not re.fullmatch(r"[A-Z]{3}", currency):
            currency = DEFAULT_CURRENCY
        return cls(price, currency, _clamp(payload.get("confidence")))

    def to_detection_fields(self) -> Dict[str, Any]:
        return {
            "price": self.price,
            "price_currency": self.currency if self.found else None,
            "price_confidence": self.confidence,
        }

    def as_dict(self) -> Dict[str, Any]:
        return {"price": self.price, "currency": self.currency, "confidence": self.confidence}


class PriceExtractor:
    """One vision call on the product region extended down to its price tag."""

    def __init__(
        self,
        llm: VisionLLM,
        timeout: float = 30.0,
        prompt_loader: Callable[[Optional[int], str], str] = get_prompt_template,
    ):
        self.llm = llm
        self.timeout = timeout
        self.prompt_loader = prompt_loader

    def extract(
        self,
        image_data: bytes,
        box: BoundingBox,
        product_hint: Optional[str] = None,
        project_id: Optional[int] = None,
    ) -> PriceInfo:
        tag_box = price_tag_box(box)
        try:
            crop = crop_to_box(image_data, tag_box)
        except ValueError as exc:
            raise ExtractionFailure("Decoupage de la zone de prix impossible", cause=exc) from exc

        prompt = render_prompt(
            self.prompt_loader(project_id, STEP_EXTRACT_PRICE),
            {"product": product_hint or "le produit"},
        )
        payload = self.llm.ask_json(prompt, [crop], self.timeout, ExtractionFailure)
        if not isinstance(payload, dict):
            raise ExtractionFailure("Reponse LLM inattendue")

        info = PriceInfo.from_payload(payload)
        logger.debug("Price for box %s: %s %s", tag_box.as_list(), info.price, info.currency)
        return info
