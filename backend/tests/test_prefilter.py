"""Tests for utils/prefilter.py: candidate scoring and shortlist."""

import pytest

from utils.catalog_search import Candidate
from utils.extraction import ExtractedInfo
from utils.prefilter import (
    normalize_text,
    parse_size,
    retailer_from_store,
    score_candidate,
    score_candidates,
    string_similarity,
)


def _info(brand=None, name=None, size=None):
    return ExtractedInfo.from_payload(
        {
            "isProduct": True,
            "brand": brand,
            "brandConfidence": 0.9,
            "productName": name,
            "productNameConfidence": 0.9,
            "size": size,
            "sizeConfidence": 0.9,
        }
    )


TRU_FRU = _info("Tru Fru", "Dark Chocolate Strawberries", "8 oz")


def _candidate(cid, name, brand=None, size=None, retailers=()):
    return Candidate(candidate_id=cid, name=name, brand=brand, size=size, retailers=tuple(retailers))


class TestHelpers:
    def test_normalize_text(self):
        assert normalize_text("Reese's  Peanut-Butter & Cups!") == "reeses peanut butter and cups"

    def test_string_similarity_levels(self):
        assert string_similarity("Tru Fru", "TRU FRU") == 1.0
        assert string_similarity("Tru Fru", "Tru Fru LLC") == 0.8
        assert 0.5 < string_similarity("Hershey Company", "The Hershey Brands") < 0.8
        assert string_similarity("Pepsi", "Nestle") == 0.0
        assert string_similarity(None, "x") == 0.0

    @pytest.mark.parametrize(
        "text,expected",
        [
            ("8 oz", ("mass", pytest.approx(226.796))),
            ("500g", ("mass", 500.0)),
            ("1.5L", ("volume", 1500.0)),
            ("12 fl oz", ("volume", pytest.approx(354.882))),
            ("big bag", None),
        ],
    )
    def test_parse_size(self, text, expected):
        assert parse_size(text) == expected

    def test_retailer_from_store(self):
        assert retailer_from_store("Target Store #1234") == "target"
        assert retailer_from_store("Corner shop") is None
        assert retailer_from_store(None) is None


class TestScoreCandidate:
    def test_exact_match_scores_one(self):
        candidate = _candidate("1", "Tru Fru Dark Chocolate Strawberries", "Tru Fru", "8 oz")
        score, components = score_candidate(TRU_FRU, candidate)
        assert score == 1.0
        assert set(components) == {"brand", "name", "size"}

    def test_size_within_tolerance(self):
        close = _candidate("1", "Tru Fru Dark Chocolate Strawberries", "Tru Fru", "8.5 oz")
        far = _candidate("2", "Tru Fru Dark Chocolate Strawberries", "Tru Fru", "16 oz")
        _, close_components = score_candidate(TRU_FRU, close)
        _, far_components = score_candidate(TRU_FRU, far)
        assert 0.5 < close_components["size"] < 1.0
        assert far_components["size"] == 0.0

    def test_only_available_components_are_weighted(self):
        info = _info(brand="Tru Fru")
        score, components = score_candidate(info, _candidate("1", "Something", "Tru Fru"))
        assert components == {"brand": 1.0}
        assert score == 1.0

    def test_no_components_scores_zero(self):
        score, components = score_candidate(_info(), _candidate("1", "Tru Fru"))
        assert score == 0.0
        assert components == {}

    def test_retailer_consistency(self):
        info = _info(brand="Tru Fru")
        sold_here = _candidate("1", "x", "Tru Fru", retailers=["target"])
        sold_elsewhere = _candidate("2", "x", "Tru Fru", retailers=["kroger"])
        here, _ = score_candidate(info, sold_here, "target")
        elsewhere, _ = score_candidate(info, sold_elsewhere, "target")
        assert here > elsewhere


class TestScoreCandidates:
    def _candidates(self):
        return [
            _candidate("weak", "Generic Strawberries", "Store Brand", "8 oz"),
            _candidate("best", "Tru Fru Dark Chocolate Strawberries", "Tru Fru", "8 oz"),
            _candidate("variant", "Tru Fru White Chocolate Strawberries", "Tru Fru", "8 oz"),
            _candidate("other", "Chocolate Bar", "Hershey", "1.5 oz"),
        ]

    def test_sorted_and_floored(self):
        shortlist = score_candidates(TRU_FRU, self._candidates(), min_score=0.5)
        ids = [s.candidate_id for s in shortlist]
        assert ids[0] == "best"
        assert "other" not in ids
        assert all(s.score >= 0.5 for s in shortlist)
        assert all(s.processing_stage == "pre_filter" for s in shortlist)
        assert [s.score for s in shortlist] == sorted((s.score for s in shortlist), reverse=True)

    def test_top_k(self):
        candidates = [
            _candidate(str(i), "Tru Fru Dark Chocolate Strawberries", "Tru Fru", "8 oz")
            for i in range(20)
        ]
        shortlist = score_candidates(TRU_FRU, candidates, top_k=10, min_score=0.0)
        assert len(shortlist) == 10
        # Ties keep search order
        assert [s.candidate_id for s in shortlist] == [str(i) for i in range(10)]

    def test_score_independent_of_other_candidates(self):
        candidates = self._candidates()
        full = {s.candidate_id: s.score for s in score_candidates(TRU_FRU, candidates, min_score=0.0)}
        alone = score_candidates(TRU_FRU, [candidates[2]], min_score=0.0)
        reversed_scores = {
            s.candidate_id: s.score
            for s in score_candidates(TRU_FRU, list(reversed(candidates)), min_score=0.0)
        }
        assert alone[0].score == full["variant"]
        assert reversed_scores == full

    def test_empty_candidates(self):
        assert score_candidates(TRU_FRU, []) == []
