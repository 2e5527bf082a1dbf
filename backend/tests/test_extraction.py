"""Tests for utils/extraction.py and the shared LLM client."""

import json
from unittest.mock import MagicMock

import pytest

from conftest import add_detection, llm_response
from utils.errors import ExtractionFailure
from utils.extraction import ExtractedInfo, ExtractionAdapter, FieldValue
from utils.image_utils import BoundingBox
from utils.llm_client import VisionLLM, strip_json_fences
from utils.retry import RetryPolicy

BOX = BoundingBox(0, 0, 500, 500)

PRODUCT_PAYLOAD = {
    "isProduct": True,
    "detailsVisible": True,
    "extractionNotes": "clear front label",
    "brand": "Tru Fru",
    "brandConfidence": 0.95,
    "productName": "Dark Chocolate Strawberries",
    "productNameConfidence": 1.4,
    "category": "Frozen Food",
    "categoryConfidence": 0.7,
    "size": "Unknown",
    "sizeConfidence": 0.6,
    "description": None,
    "descriptionConfidence": 0.3,
}


def _adapter(client, max_attempts=1):
    llm = VisionLLM(
        model="test-model",
        client=client,
        retry_policy=RetryPolicy(max_attempts=max_attempts, sleep=lambda s: None),
    )
    return ExtractionAdapter(llm, timeout=12, prompt_loader=lambda project_id, step: "PROMPT")


class TestExtractedInfo:
    def test_from_payload_normalizes_fields(self):
        info = ExtractedInfo.from_payload(PRODUCT_PAYLOAD)
        assert info.is_product is True
        assert info.brand_name == FieldValue("Tru Fru", 0.95)
        # Clamped to 1.0
        assert info.product_name.confidence == 1.0
        # "Unknown" is treated as missing
        assert info.size == FieldValue()
        assert info.description == FieldValue()
        assert info.has_identity

    def test_not_a_product_has_no_fields(self):
        info = ExtractedInfo.from_payload(
            {"isProduct": False, "brand": "Price tag", "brandConfidence": 0.9}
        )
        assert info.is_product is False
        assert info.brand_name.value is None
        assert info.brand_name.confidence == 0.0
        assert not info.has_identity

    def test_roundtrip_through_detection(self, image_row):
        info = ExtractedInfo.from_payload(PRODUCT_PAYLOAD)
        detection = add_detection(image_row, **info.to_detection_fields())
        rebuilt = ExtractedInfo.from_detection(detection)
        assert rebuilt == info


class TestExtractionAdapter:
    def test_success(self, anthropic_module):
        client = MagicMock()
        client.messages.create.return_value = llm_response(
            "```json\n" + json.dumps(PRODUCT_PAYLOAD) + "\n```"
        )
        info = _adapter(client).extract(b"\xff\xd8crop", BOX)

        assert info.brand_name.value == "Tru Fru"
        kwargs = client.messages.create.call_args.kwargs
        assert kwargs["model"] == "test-model"
        assert kwargs["timeout"] == 12
        content = kwargs["messages"][0]["content"]
        assert content[0]["type"] == "image"
        assert content[-1] == {"type": "text", "text": "PROMPT"}

    def test_empty_crop(self, anthropic_module):
        client = MagicMock()
        with pytest.raises(ExtractionFailure) as exc_info:
            _adapter(client).extract(b"", BOX)
        assert isinstance(exc_info.value.cause, ValueError)
        client.messages.create.assert_not_called()

    def test_invalid_box(self, anthropic_module):
        client = MagicMock()
        with pytest.raises(ExtractionFailure) as exc_info:
            _adapter(client).extract(b"crop", BoundingBox(0, 0, 0, 100))
        assert isinstance(exc_info.value.cause, ValueError)

    def test_malformed_json(self, anthropic_module):
        client = MagicMock()
        client.messages.create.return_value = llm_response("I think it is chocolate")
        with pytest.raises(ExtractionFailure, match="JSON"):
            _adapter(client).extract(b"crop", BOX)

    def test_non_object_answer(self, anthropic_module):
        client = MagicMock()
        client.messages.create.return_value = llm_response("[1, 2]")
        with pytest.raises(ExtractionFailure):
            _adapter(client).extract(b"crop", BOX)

    def test_timeout(self, anthropic_module):
        client = MagicMock()
        client.messages.create.side_effect = anthropic_module.APITimeoutError("slow")
        with pytest.raises(ExtractionFailure, match="Delai"):
            _adapter(client).extract(b"crop", BOX)

    def test_authentication_error(self, anthropic_module):
        client = MagicMock()
        client.messages.create.side_effect = anthropic_module.AuthenticationError("bad key")
        with pytest.raises(ExtractionFailure, match="Cle API"):
            _adapter(client).extract(b"crop", BOX)

    def test_rate_limit_retried_then_succeeds(self, anthropic_module):
        client = MagicMock()
        client.messages.create.side_effect = [
            anthropic_module.RateLimitError("slow down"),
            llm_response(json.dumps(PRODUCT_PAYLOAD)),
        ]
        info = _adapter(client, max_attempts=3).extract(b"crop", BOX)
        assert info.is_product
        assert client.messages.create.call_count == 2

    def test_rate_limit_exhausted(self, anthropic_module):
        client = MagicMock()
        client.messages.create.side_effect = anthropic_module.RateLimitError("slow down")
        with pytest.raises(ExtractionFailure, match="Limite"):
            _adapter(client, max_attempts=2).extract(b"crop", BOX)
        assert client.messages.create.call_count == 2


def test_strip_json_fences():
    assert strip_json_fences('```json\n{"a": 1}\n```') == '{"a": 1}'
    assert strip_json_fences('  {"a": 1} ') == '{"a": 1}'
