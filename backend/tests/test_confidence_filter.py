"""Tests for utils/confidence_filter.py."""

from utils.confidence_filter import filter_by_confidence


class TestFilterByConfidence:
    def test_empty_input(self):
        assert filter_by_confidence([]) == []

    def test_threshold_is_inclusive(self):
        raw = [{"confidence": 0.5}, {"confidence": 0.49}, {"confidence": 0.8}]
        kept = filter_by_confidence(raw, 0.5)
        assert kept == [{"confidence": 0.5}, {"confidence": 0.8}]

    def test_missing_or_bad_confidence_counts_as_zero(self):
        raw = [{"label": "a"}, {"confidence": None}, {"confidence": "abc"}, {"confidence": "0.7"}]
        assert filter_by_confidence(raw, 0.5) == [{"confidence": "0.7"}]

    def test_zero_threshold_keeps_everything(self):
        raw = [{"label": "a"}, {"confidence": 0.1}]
        assert filter_by_confidence(raw, 0.0) == raw

    def test_order_preserved(self):
        raw = [{"id": i, "confidence": 0.9} for i in range(5)]
        assert [r["id"] for r in filter_by_confidence(raw)] == [0, 1, 2, 3, 4]
