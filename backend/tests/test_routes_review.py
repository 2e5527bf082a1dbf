"""Tests for routes/review.py: price, shelf context and human validation."""

import json
from unittest.mock import patch

import pytest
import requests

from conftest import add_detection
from models import Detection, db
from utils.errors import ExtractionFailure


class FakeLLM:
    def __init__(self, payload=None, error=None):
        self.payload = payload
        self.error = error

    def ask_json(self, prompt, images, timeout, failure_cls):
        if self.error is not None:
            raise self.error
        return self.payload


@pytest.fixture()
def extracted(image_row):
    add_detection(image_row, 0, x0=0, x1=300, brand_extracted=True,
                  brand_name="Pepsi", brand_confidence=0.95, size="12 fl oz", size_confidence=0.9)
    return add_detection(image_row, 1, x0=310, x1=600, brand_extracted=True, is_product=True,
                         brand_name="Peps", brand_confidence=0.4, product_name="Cola")


def _post(client, path, headers, body=None):
    return client.post(path, data=json.dumps(body or {}), headers=headers)


class TestReviewAuth:
    @pytest.mark.parametrize("suffix", ["price", "contextual-analysis", "validation"])
    def test_requires_auth(self, client, extracted, suffix):
        rv = client.post(f"/detections/{extracted.id}/{suffix}", data="{}")
        assert rv.status_code == 401


class TestPrice:
    def test_price_stored(self, client, auth_headers, extracted, shelf_jpeg):
        llm = FakeLLM({"price": "$1,99", "currency": "USD", "confidence": 0.7})
        with patch("routes.review.load_image_bytes", return_value=shelf_jpeg), \
                patch("routes.review._vision_llm", return_value=llm):
            rv = _post(client, f"/detections/{extracted.id}/price", auth_headers)

        assert rv.status_code == 200
        assert rv.get_json() == {
            "detection_id": extracted.id, "price": "1.99", "currency": "USD", "confidence": 0.7,
        }
        assert db.session.get(Detection, extracted.id).price == "1.99"

    def test_unknown_detection(self, client, auth_headers):
        assert _post(client, "/detections/999/price", auth_headers).status_code == 404

    def test_unreadable_image(self, client, auth_headers, extracted):
        with patch("routes.review.load_image_bytes", side_effect=requests.ConnectionError("down")):
            rv = _post(client, f"/detections/{extracted.id}/price", auth_headers)
        assert rv.status_code == 422

    def test_model_failure(self, client, auth_headers, extracted, shelf_jpeg):
        llm = FakeLLM(error=ExtractionFailure("Reponse LLM vide"))
        with patch("routes.review.load_image_bytes", return_value=shelf_jpeg), \
                patch("routes.review._vision_llm", return_value=llm):
            rv = _post(client, f"/detections/{extracted.id}/price", auth_headers)
        assert rv.status_code == 502
        assert rv.get_json()["error"] == "Reponse LLM vide"


class TestContextualAnalysis:
    PAYLOAD = {"brand": "Pepsi", "brandConfidence": 0.9, "size": "12 fl oz", "sizeConfidence": 0.8}

    def test_correction_applied(self, client, auth_headers, extracted, shelf_jpeg):
        with patch("routes.review.load_image_bytes", return_value=shelf_jpeg), \
                patch("routes.review._vision_llm", return_value=FakeLLM(self.PAYLOAD)):
            rv = _post(client, f"/detections/{extracted.id}/contextual-analysis", auth_headers)

        assert rv.status_code == 200
        data = rv.get_json()
        assert data["corrected"] is True
        assert len(data["neighbors"]["left"]) == 1
        assert data["neighbors"]["right"] == []
        assert data["analysis"]["brand"] == {"value": "Pepsi", "confidence": 0.9}
        row = db.session.get(Detection, extracted.id)
        assert row.brand_name == "Pepsi"
        assert row.size == "12 fl oz"
        assert row.corrected_by_contextual is True

    def test_analysis_only(self, client, auth_headers, extracted, shelf_jpeg):
        with patch("routes.review.load_image_bytes", return_value=shelf_jpeg), \
                patch("routes.review._vision_llm", return_value=FakeLLM(self.PAYLOAD)):
            rv = _post(client, f"/detections/{extracted.id}/contextual-analysis",
                       auth_headers, {"apply": False})

        assert rv.status_code == 200
        assert rv.get_json()["corrected"] is False
        assert db.session.get(Detection, extracted.id).brand_name == "Peps"

    def test_apply_must_be_boolean(self, client, auth_headers, extracted):
        rv = _post(client, f"/detections/{extracted.id}/contextual-analysis",
                   auth_headers, {"apply": "yes"})
        assert rv.status_code == 400

    def test_requires_extraction(self, client, auth_headers, image_row):
        detection = add_detection(image_row, 5)
        rv = _post(client, f"/detections/{detection.id}/contextual-analysis", auth_headers)
        assert rv.status_code == 409


class TestValidation:
    def test_verdict_recorded(self, client, auth_headers, extracted):
        extracted.selected_candidate_id = "c1"
        db.session.commit()

        rv = _post(client, f"/detections/{extracted.id}/validation", auth_headers, {"is_correct": True})

        assert rv.status_code == 200
        data = rv.get_json()
        assert data["human_validation"] is True
        assert data["selected_candidate_id"] == "c1"
        assert data["human_validation_at"]

    def test_missing_verdict(self, client, auth_headers, extracted):
        rv = _post(client, f"/detections/{extracted.id}/validation", auth_headers, {"is_correct": "yes"})
        assert rv.status_code == 400

    def test_no_selection(self, client, auth_headers, extracted):
        rv = _post(client, f"/detections/{extracted.id}/validation", auth_headers, {"is_correct": False})
        assert rv.status_code == 409

    def test_unknown_detection(self, client, auth_headers):
        rv = _post(client, "/detections/999/validation", auth_headers, {"is_correct": True})
        assert rv.status_code == 404
