"""Visual comparison of a detection crop against shortlisted catalog images."""

from __future__ import annotations

import enum
import logging
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional, Sequence

import requests

from utils.catalog_search import Candidate
from utils.errors import VisualMatchFailure
from utils.extraction import ExtractedInfo
from utils.llm_client import VisionLLM
from utils.prefilter import ScoredCandidate
from utils.prompts import (
    STEP_VISUAL_COMPARE,
    STEP_VISUAL_SELECT,
    get_prompt_template,
    render_prompt,
)

logger = logging.getLogger(__name__)

PROCESSING_STAGE = "visual_match"

# How the selected candidate was chosen, stored on the detection
SELECTION_AUTO = "auto_select"
SELECTION_VISUAL = "visual_matching"


class MatchStatus(str, enum.Enum):
    PENDING = "pending"
    NO_MATCH = "no_match"
    SIMILAR = "similar"
    IDENTICAL = "identical"

    @classmethod
    def parse(cls, value) -> "MatchStatus":
        normalized = str(value or "").strip().lower().replace("-", "_").replace(" ", "_")
        aliases = {
            "identical": cls.IDENTICAL,
            "similar": cls.SIMILAR,
            "almost_same": cls.SIMILAR,
            "no_match": cls.NO_MATCH,
            "not_match": cls.NO_MATCH,
        }
        if normalized not in aliases:
            raise ValueError(f"Unknown match status: {value!r}")
        return aliases[normalized]


@dataclass(frozen=True)
class Comparison:
    candidate_id: str
    status: MatchStatus
    similarity: float
    confidence: float = 0.0
    reason: Optional[str] = None


@dataclass
class MatchDecision:
    comparisons: List[Comparison] = field(default_factory=list)
    failures: Dict[str, str] = field(default_factory=dict)
    selected_candidate_id: Optional[str] = None
    used_selection_call: bool = False
    selection_reason: Optional[str] = None
    selection_method: Optional[str] = None

    @property
    def identical_ids(self) -> List[str]:
        return [c.candidate_id for c in self.comparisons if c.status is MatchStatus.IDENTICAL]


def _clamp(value) -> float:
    try:
        number = float(value)
    except (TypeError, ValueError):
        return 0.0
    return min(max(number, 0.0), 1.0)


def fetch_reference_image(url: str, timeout: float) -> bytes:
    response = requests.get(url, timeout=timeout)
    response.raise_for_status()
    if not response.content:
        raise ValueError(f"Empty image at {url}")
    return response.content


class VisualMatcher:
    """Pairwise comparisons plus the N-way tie breaker."""

    def __init__(
        self,
        llm: VisionLLM,
        timeout: float = 60.0,
        image_timeout: float = 20.0,
        image_fetcher: Callable[[str, float], bytes] = fetch_reference_image,
        prompt_loader: Callable[[Optional[int], str], str] = get_prompt_template,
    ):
        self.llm = llm
        self.timeout = timeout
        self.image_timeout = image_timeout
        self.image_fetcher = image_fetcher
        self.prompt_loader = prompt_loader

    def _reference_image(self, candidate: Candidate) -> bytes:
        if not candidate.image_url:
            raise VisualMatchFailure(
                f"Pas d'image de reference pour {candidate.candidate_id}"
            )
        try:
            return self.image_fetcher(candidate.image_url, self.image_timeout)
        except (requests.RequestException, ValueError) as exc:
            raise VisualMatchFailure(
                f"Image de reference indisponible pour {candidate.candidate_id}",
                cause=exc,
            ) from exc

    def compare(
        self,
        detection_crop: bytes,
        candidate: Candidate,
        project_id: Optional[int] = None,
        reference: Optional[bytes] = None,
    ) -> Comparison:
        if reference is None:
            reference = self._reference_image(candidate)
        prompt = self.prompt_loader(project_id, STEP_VISUAL_COMPARE)
        payload = self.llm.ask_json(
            prompt, [detection_crop, reference], self.timeout, VisualMatchFailure
        )
        if not isinstance(payload, dict):
            raise VisualMatchFailure("Reponse LLM inattendue")
        try:
            status = MatchStatus.parse(payload.get("matchStatus"))
        except ValueError as exc:
            raise VisualMatchFailure("Statut de correspondance inconnu", cause=exc) from exc

        return Comparison(
            candidate_id=candidate.candidate_id,
            status=status,
            similarity=_clamp(payload.get("visualSimilarity")),
            confidence=_clamp(payload.get("confidence")),
            reason=payload.get("reason"),
        )

    def select_best(
        self,
        detection_crop: bytes,
        extracted: ExtractedInfo,
        candidates: Sequence[Candidate],
        project_id: Optional[int] = None,
        references: Optional[Dict[str, bytes]] = None,
    ) -> Optional[int]:
        """Ask the model to pick one of ``candidates``; 0-based index or None.

        ``references`` maps candidate ids to reference images already
        downloaded; missing ones are fetched.
        """
        if not candidates:
            return None

        references = references or {}
        images = [detection_crop]
        lines = []
        for number, candidate in enumerate(candidates, start=1):
            reference = references.get(candidate.candidate_id)
            images.append(reference if reference is not None else self._reference_image(candidate))
            lines.append(
                f"Candidat {number} : {candidate.brand or 'Unknown'} - {candidate.name} "
                f"({candidate.size or 'Unknown'})"
            )

        prompt = render_prompt(
            self.prompt_loader(project_id, STEP_VISUAL_SELECT),
            {
                "brand": extracted.brand_name.value,
                "productName": extracted.product_name.value,
                "size": extracted.size.value,
                "category": extracted.category.value,
                "candidateCount": len(candidates),
                "candidateDescriptions": "\n".join(lines),
            },
        )
        payload = self.llm.ask_json(prompt, images, self.timeout, VisualMatchFailure)
        if not isinstance(payload, dict):
            raise VisualMatchFailure("Reponse LLM inattendue")

        raw_index = payload.get("selectedCandidateIndex")
        if raw_index is None:
            return None
        try:
            index = int(raw_index) - 1
        except (TypeError, ValueError):
            logger.warning("Ignoring non-numeric selection %r", raw_index)
            return None
        if not 0 <= index < len(candidates):
            logger.warning("Ignoring out of range selection %r (%d candidates)", raw_index, len(candidates))
            return None
        return index

    def match(
        self,
        detection_crop: bytes,
        extracted: ExtractedInfo,
        shortlist: Sequence[ScoredCandidate],
        project_id: Optional[int] = None,
        on_comparison: Optional[Callable[[ScoredCandidate, Comparison], None]] = None,
    ) -> MatchDecision:
        """Compare every shortlisted candidate and decide the selection.

        ``similar`` is never selected automatically. Several ``identical``
        results go through ``select_best``, reusing the reference images
        downloaded for the comparisons.
        """
        decision = MatchDecision()
        if not shortlist:
            return decision

        by_id: Dict[str, Candidate] = {}
        references: Dict[str, bytes] = {}
        for scored in shortlist:
            candidate = scored.candidate
            if candidate.candidate_id in by_id:
                continue
            try:
                reference = self._reference_image(candidate)
                comparison = self.compare(detection_crop, candidate, project_id, reference)
            except VisualMatchFailure as exc:
                logger.warning("Comparison failed for %s: %s", candidate.candidate_id, exc)
                decision.failures[candidate.candidate_id] = str(exc)
                continue
            decision.comparisons.append(comparison)
            by_id[candidate.candidate_id] = candidate
            references[candidate.candidate_id] = reference
            if on_comparison is not None:
                on_comparison(scored, comparison)

        if not decision.comparisons:
            raise VisualMatchFailure(
                f"Toutes les comparaisons ont echoue ({len(decision.failures)})"
            )

        identical = decision.identical_ids
        if len(identical) == 1:
            decision.selected_candidate_id = identical[0]
            decision.selection_method = SELECTION_AUTO
        elif len(identical) > 1:
            decision.used_selection_call = True
            pool = [by_id[cid] for cid in identical]
            index = self.select_best(detection_crop, extracted, pool, project_id, references)
            if index is not None:
                decision.selected_candidate_id = pool[index].candidate_id
                decision.selection_method = SELECTION_VISUAL
            else:
                decision.selection_reason = "Aucun candidat retenu parmi les identiques"
        return decision
