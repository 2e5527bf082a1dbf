"""Attribute extraction for one detected shelf region.

Sends the cropped region to the vision model and normalizes the answer into
an ``ExtractedInfo`` record with one confidence per field.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Optional

from utils.errors import ExtractionFailure
from utils.image_utils import BoundingBox
from utils.llm_client import VisionLLM
from utils.prompts import STEP_EXTRACT_INFO, get_prompt_template

logger = logging.getLogger(__name__)

EXTRACTED_FIELDS = ("brand_name", "product_name", "category", "size", "description")

# model key -> (value key, confidence key)
_PAYLOAD_KEYS: Dict[str, tuple] = {
    "brand_name": ("brand", "brandConfidence"),
    "product_name": ("productName", "productNameConfidence"),
    "category": ("category", "categoryConfidence"),
    "size": ("size", "sizeConfidence"),
    "description": ("description", "descriptionConfidence"),
}

CONFIDENCE_COLUMNS: Dict[str, str] = {
    "brand_name": "brand_confidence",
    "product_name": "product_name_confidence",
    "category": "category_confidence",
    "size": "size_confidence",
    "description": "description_confidence",
}

_EMPTY_VALUES = {"", "unknown", "n/a", "na", "none", "null", "inconnu"}


def _clamp(value: Any) -> float:
    try:
        number = float(value)
    except (TypeError, ValueError):
        return 0.0
    return min(max(number, 0.0), 1.0)


def _as_bool(value: Any) -> bool:
    if isinstance(value, str):
        return value.strip().lower() in {"true", "yes", "1", "oui"}
    return bool(value)


@dataclass(frozen=True)
class FieldValue:
    value: Optional[str] = None
    confidence: float = 0.0

    @classmethod
    def build(cls, raw_value: Any, raw_confidence: Any) -> "FieldValue":
        text = str(raw_value).strip() if raw_value is not None else ""
        if text.lower() in _EMPTY_VALUES:
            return cls()
        return cls(text, _clamp(raw_confidence))


@dataclass(frozen=True)
class ExtractedInfo:
    is_product: bool
    details_visible: bool = False
    brand_name: FieldValue = field(default_factory=FieldValue)
    product_name: FieldValue = field(default_factory=FieldValue)
    category: FieldValue = field(default_factory=FieldValue)
    size: FieldValue = field(default_factory=FieldValue)
    description: FieldValue = field(default_factory=FieldValue)
    extraction_notes: Optional[str] = None

    @property
    def has_identity(self) -> bool:
        """True when there is usable text to search the catalog with."""
        return self.is_product and bool(self.brand_name.value or self.product_name.value)

    @classmethod
    def not_a_product(cls, notes: Optional[str] = None) -> "ExtractedInfo":
        return cls(is_product=False, details_visible=False, extraction_notes=notes)

    @classmethod
    def from_payload(cls, payload: Dict[str, Any]) -> "ExtractedInfo":
        notes = payload.get("extractionNotes")
        notes = str(notes).strip() if notes else None
        if not _as_bool(payload.get("isProduct", False)):
            return cls.not_a_product(notes)
        fields = {
            name: FieldValue.build(payload.get(value_key), payload.get(conf_key))
            for name, (value_key, conf_key) in _PAYLOAD_KEYS.items()
        }
        return cls(
            is_product=True,
            details_visible=_as_bool(payload.get("detailsVisible", False)),
            extraction_notes=notes,
            **fields,
        )

    @classmethod
    def from_detection(cls, detection) -> "ExtractedInfo":
        """Rebuild the record from a Detection row that was already extracted."""
        if not detection.is_product:
            return cls.not_a_product(detection.extraction_notes)
        fields = {
            name: FieldValue(getattr(detection, name), getattr(detection, column) or 0.0)
            for name, column in CONFIDENCE_COLUMNS.items()
        }
        return cls(
            is_product=True,
            details_visible=bool(detection.details_visible),
            extraction_notes=detection.extraction_notes,
            **fields,
        )

    def to_detection_fields(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "is_product": self.is_product,
            "details_visible": self.details_visible,
            "extraction_notes": self.extraction_notes,
        }
        for name, column in CONFIDENCE_COLUMNS.items():
            fv: FieldValue = getattr(self, name)
            data[name] = fv.value
            data[column] = fv.confidence if fv.value is not None else 0.0
        return data

    def as_dict(self) -> Dict[str, Any]:
        return {
            "is_product": self.is_product,
            "details_visible": self.details_visible,
            "extraction_notes": self.extraction_notes,
            **{
                name: {"value": getattr(self, name).value, "confidence": getattr(self, name).confidence}
                for name in EXTRACTED_FIELDS
            },
        }


class ExtractionAdapter:
    """One vision call per detected region."""

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
        image_crop: bytes,
        box: BoundingBox,
        project_id: Optional[int] = None,
    ) -> ExtractedInfo:
        if not image_crop:
            raise ExtractionFailure("Image vide", cause=ValueError("empty image crop"))
        try:
            box.validate()
        except ValueError as exc:
            raise ExtractionFailure("Zone de detection invalide", cause=exc) from exc

        prompt = self.prompt_loader(project_id, STEP_EXTRACT_INFO)
        payload = self.llm.ask_json(prompt, [image_crop], self.timeout, ExtractionFailure)
        if not isinstance(payload, dict):
            raise ExtractionFailure(
                "Reponse LLM inattendue",
                cause=ValueError(f"expected a JSON object, got {type(payload).__name__}"),
            )

        info = ExtractedInfo.from_payload(payload)
        logger.debug(
            "Extraction for box %s: product=%s brand=%s name=%s",
            box.as_list(), info.is_product, info.brand_name.value, info.product_name.value,
        )
        return info
