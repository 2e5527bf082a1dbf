"""Local ranking of catalog candidates before the visual comparison step.

Every candidate is scored against the extracted attributes only, so its score
never depends on the other candidates of the list.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from difflib import SequenceMatcher
from typing import Dict, List, Optional, Sequence, Tuple

from utils.catalog_search import RETAILER_DOMAINS, Candidate
from utils.extraction import ExtractedInfo

PROCESSING_STAGE = "pre_filter"

WEIGHTS: Dict[str, float] = {
    "brand": 0.35,
    "name": 0.25,
    "size": 0.20,
    "retailer": 0.20,
}

# Relative size difference tolerated before the size component drops to 0.
SIZE_TOLERANCE = 0.20
SIZE_TEXT_FALLBACK = 0.65
UNKNOWN_RETAILER_SCORE = 0.5

# unit -> (dimension, factor to base unit)
_UNITS: Dict[str, Tuple[str, float]] = {
    "g": ("mass", 1.0),
    "gr": ("mass", 1.0),
    "gram": ("mass", 1.0),
    "grams": ("mass", 1.0),
    "kg": ("mass", 1000.0),
    "oz": ("mass", 28.3495),
    "ounce": ("mass", 28.3495),
    "ounces": ("mass", 28.3495),
    "lb": ("mass", 453.592),
    "lbs": ("mass", 453.592),
    "ml": ("volume", 1.0),
    "cl": ("volume", 10.0),
    "l": ("volume", 1000.0),
    "liter": ("volume", 1000.0),
    "litre": ("volume", 1000.0),
    "floz": ("volume", 29.5735),
    "ct": ("count", 1.0),
    "count": ("count", 1.0),
    "pk": ("count", 1.0),
    "pack": ("count", 1.0),
}

_SIZE_RE = re.compile(r"(\d+(?:[.,]\d+)?)\s*(fl\.?\s*oz|[a-z]+)")


@dataclass(frozen=True)
class ScoredCandidate:
    candidate: Candidate
    score: float
    components: Dict[str, float] = field(default_factory=dict, compare=False)
    search_rank: int = 0
    processing_stage: str = PROCESSING_STAGE

    @property
    def candidate_id(self) -> str:
        return self.candidate.candidate_id


# ---------------------------------------------------------------------------
# Normalization helpers
# ---------------------------------------------------------------------------

def normalize_text(text: Optional[str]) -> str:
    """Lowercase, strip punctuation, collapse whitespace."""
    if not text:
        return ""
    value = text.lower().strip()
    value = value.replace("&", " and ")
    value = re.sub(r"['’]", "", value)
    value = re.sub(r"[^\w\s]", " ", value)
    return re.sub(r"\s+", " ", value).strip()


def _tokens(text: Optional[str]) -> List[str]:
    return [t for t in normalize_text(text).split(" ") if len(t) > 2]


def _fuzzy_ratio(a: str, b: str) -> float:
    return SequenceMatcher(None, a, b).ratio()


def string_similarity(a: Optional[str], b: Optional[str]) -> float:
    """Closeness of two short labels in ``[0, 1]``.

    Exact match 1.0, containment 0.8, word overlap 0.5 to 0.8, otherwise the
    character ratio when it is high enough to be a spelling variant.
    """
    left, right = normalize_text(a), normalize_text(b)
    if not left or not right:
        return 0.0
    if left == right:
        return 1.0
    if left in right or right in left:
        return 0.8

    left_words, right_words = set(_tokens(left)), set(_tokens(right))
    if left_words and right_words:
        common = left_words & right_words
        if common:
            overlap = len(common) / max(len(left_words), len(right_words))
            return 0.5 + 0.3 * overlap

    ratio = _fuzzy_ratio(left, right)
    return ratio if ratio >= 0.75 else 0.0


def parse_size(text: Optional[str]) -> Optional[Tuple[str, float]]:
    """Return ``(dimension, amount in base unit)`` for strings like ``"8 oz"``."""
    if not text:
        return None
    for match in _SIZE_RE.finditer(text.lower()):
        unit = re.sub(r"[\s.]", "", match.group(2))
        if unit not in _UNITS:
            continue
        dimension, factor = _UNITS[unit]
        amount = float(match.group(1).replace(",", "."))
        return dimension, amount * factor
    return None


def retailer_from_store(store_name: Optional[str]) -> Optional[str]:
    """Guess the retailer from a free-text store name ("Target Store #1234")."""
    normalized = normalize_text(store_name)
    if not normalized:
        return None
    for retailer in RETAILER_DOMAINS.values():
        if normalize_text(retailer) in normalized:
            return retailer
    return None


# ---------------------------------------------------------------------------
# Components
# ---------------------------------------------------------------------------

def brand_score(brand: str, candidate: Candidate) -> float:
    return max(
        string_similarity(brand, candidate.brand),
        string_similarity(brand, candidate.manufacturer),
        # Brand printed in the title ("Tru Fru Dark Chocolate ...")
        0.8 if normalize_text(brand) and normalize_text(brand) in normalize_text(candidate.name) else 0.0,
    )


def name_score(product_name: str, candidate: Candidate) -> float:
    wanted = set(_tokens(product_name))
    if not wanted:
        return string_similarity(product_name, candidate.name)
    available = set(_tokens(candidate.name)) | set(_tokens(candidate.brand))
    return len(wanted & available) / len(wanted)


def size_score(size: str, candidate: Candidate) -> float:
    wanted = parse_size(size)
    offered = parse_size(candidate.size) or parse_size(candidate.name)
    if wanted and offered and wanted[0] == offered[0] and max(wanted[1], offered[1]) > 0:
        diff = abs(wanted[1] - offered[1]) / max(wanted[1], offered[1])
        if diff >= SIZE_TOLERANCE:
            return 0.0
        return round(1.0 - diff / SIZE_TOLERANCE, 4)

    needle = normalize_text(size)
    haystack = normalize_text(f"{candidate.size or ''} {candidate.name}")
    if needle and needle in haystack:
        return SIZE_TEXT_FALLBACK
    return 0.0


def retailer_score(store_retailer: str, candidate: Candidate) -> float:
    if not candidate.retailers:
        return UNKNOWN_RETAILER_SCORE
    return 1.0 if store_retailer in candidate.retailers else 0.0


def score_candidate(
    extracted: ExtractedInfo,
    candidate: Candidate,
    store_retailer: Optional[str] = None,
) -> Tuple[float, Dict[str, float]]:
    """Weighted score of one candidate, renormalized over usable components."""
    components: Dict[str, float] = {}
    if extracted.brand_name.value:
        components["brand"] = brand_score(extracted.brand_name.value, candidate)
    if extracted.product_name.value:
        components["name"] = name_score(extracted.product_name.value, candidate)
    if extracted.size.value:
        components["size"] = size_score(extracted.size.value, candidate)
    if store_retailer:
        components["retailer"] = retailer_score(store_retailer, candidate)

    if not components:
        return 0.0, components
    total_weight = sum(WEIGHTS[name] for name in components)
    score = sum(WEIGHTS[name] * value for name, value in components.items()) / total_weight
    return round(min(max(score, 0.0), 1.0), 4), components


def score_candidates(
    extracted: ExtractedInfo,
    candidates: Sequence[Candidate],
    store_name: Optional[str] = None,
    top_k: int = 10,
    min_score: float = 0.5,
) -> List[ScoredCandidate]:
    """Return at most ``top_k`` candidates scoring ``>= min_score``, best first.

    Ties keep the order of the search results.
    """
    if not candidates or top_k <= 0:
        return []
    store_retailer = retailer_from_store(store_name)

    scored: List[ScoredCandidate] = []
    for rank, candidate in enumerate(candidates, start=1):
        score, components = score_candidate(extracted, candidate, store_retailer)
        if score < min_score:
            continue
        scored.append(ScoredCandidate(candidate, score, components, search_rank=rank))

    scored.sort(key=lambda s: -s.score)
    return scored[:top_k]
