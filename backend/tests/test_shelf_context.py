"""Tests for utils/shelf_context.py: neighbor lookup and brand/size correction."""

from types import SimpleNamespace

import pytest

from utils.errors import ExtractionFailure
from utils.extraction import FieldValue
from utils.shelf_context import (
    ContextualAnalysis,
    Neighbors,
    ShelfContextAnalyzer,
    context_box,
    find_neighbors,
    needs_context,
    plan_correction,
)


def _det(detection_id, x0, x1, y0=100, y1=400, **fields):
    values = {"brand_name": None, "brand_confidence": None, "product_name": None,
              "size": None, "size_confidence": None}
    values.update(fields)
    return SimpleNamespace(id=detection_id, y0=y0, x0=x0, y1=y1, x1=x1, **values)


TARGET = _det(1, 400, 500)


class TestFindNeighbors:
    def test_sides_sorted_by_distance(self):
        shelf = [
            TARGET,
            _det(2, 100, 200),
            _det(3, 290, 390),
            _det(4, 510, 600),
            _det(5, 700, 800),
            # Another shelf
            _det(6, 510, 600, y0=500, y1=800),
            # Too far away
            _det(7, 0, 10, y0=100, y1=400),
        ]
        neighbors = find_neighbors(TARGET, shelf, max_gap=300)
        assert [d.id for d in neighbors.left] == [3, 2]
        assert [d.id for d in neighbors.right] == [4, 5]

    def test_nearest_limits_each_side(self):
        neighbors = Neighbors(left=[1, 2, 3, 4], right=[5])
        assert neighbors.nearest(2) == Neighbors([1, 2], [5])


def test_context_box_covers_all():
    neighbors = Neighbors(left=[_det(2, 200, 300, y0=50)], right=[_det(3, 600, 700, y1=450)])
    assert context_box(TARGET, neighbors).as_list() == [50, 200, 450, 700]


@pytest.mark.parametrize(
    "brand,confidence,expected",
    [(None, None, True), ("Unknown", 1.0, True), ("Pepsi", 0.9, True), ("Pepsi", 0.95, False)],
)
def test_needs_context(brand, confidence, expected):
    assert needs_context(_det(1, 0, 10, brand_name=brand, brand_confidence=confidence)) is expected


class TestPlanCorrection:
    def test_more_confident_values_win(self):
        detection = _det(1, 0, 10, brand_name="Peps", brand_confidence=0.5,
                         size="12 oz", size_confidence=0.3)
        analysis = ContextualAnalysis(brand=FieldValue("Pepsi", 0.9), size=FieldValue("12 fl oz", 0.8))
        correction = plan_correction(detection, analysis)
        assert correction.corrected
        assert correction.brand.value == "Pepsi"
        assert correction.size.value == "12 fl oz"
        assert correction.notes[0] == 'Marque: "Peps" (50%) -> "Pepsi" (90%)'

    def test_less_confident_values_ignored(self):
        detection = _det(1, 0, 10, brand_name="Pepsi", brand_confidence=0.95,
                         size="12 fl oz", size_confidence=0.5)
        analysis = ContextualAnalysis(brand=FieldValue("Coke", 0.9), size=FieldValue("12 fl oz", 0.9))
        correction = plan_correction(detection, analysis)
        assert not correction.corrected
        assert correction.notes == []


class FakeLLM:
    def __init__(self, payload):
        self.payload = payload
        self.prompts = []

    def ask_json(self, prompt, images, timeout, failure_cls):
        self.prompts.append(prompt)
        return self.payload


class TestShelfContextAnalyzer:
    def _analyzer(self, payload):
        llm = FakeLLM(payload)
        analyzer = ShelfContextAnalyzer(
            llm, prompt_loader=lambda project_id, step: "{{brand}}|{{leftNeighbors}}|{{rightNeighbors}}"
        )
        return analyzer, llm

    def test_analyze(self, shelf_jpeg):
        analyzer, llm = self._analyzer(
            {"brand": "Pepsi", "brandConfidence": 0.85, "size": "Unknown", "notes": " grouped "}
        )
        target = _det(1, 400, 500, brand_name="Peps")
        left = _det(2, 200, 390, brand_name="Pepsi", size="12 fl oz")

        analysis = analyzer.analyze(shelf_jpeg, target, Neighbors(left=[left]))

        assert analysis.brand == FieldValue("Pepsi", 0.85)
        assert analysis.size == FieldValue()
        assert analysis.notes == "grouped"
        assert llm.prompts == ["Peps|1. Marque : Pepsi, Contenance : 12 fl oz|Aucun"]

    def test_unexpected_payload(self, shelf_jpeg):
        analyzer, _ = self._analyzer(None)
        with pytest.raises(ExtractionFailure):
            analyzer.analyze(shelf_jpeg, TARGET, Neighbors())
