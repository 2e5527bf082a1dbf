"""Tests for utils/image_utils.py: boxes and cropping."""

import io
from types import SimpleNamespace
from unittest.mock import MagicMock, patch

import pytest
from PIL import Image as PILImage

from utils.image_utils import (
    BoundingBox,
    crop_to_box,
    guess_media_type,
    load_image_bytes,
)


class TestBoundingBox:
    def test_from_box_2d_rounds_values(self):
        box = BoundingBox.from_box_2d([10.4, 20.6, 500, 700])
        assert box.as_list() == [10, 21, 500, 700]

    def test_from_box_2d_requires_four_values(self):
        with pytest.raises(ValueError):
            BoundingBox.from_box_2d([1, 2, 3])

    @pytest.mark.parametrize(
        "coords",
        [(-1, 0, 10, 10), (0, 0, 10, 1001), (10, 0, 10, 50), (0, 50, 100, 20)],
    )
    def test_invalid_boxes(self, coords):
        box = BoundingBox(*coords)
        assert not box.is_valid
        with pytest.raises(ValueError):
            box.validate()

    def test_to_pixels_scales_each_axis(self):
        box = BoundingBox(y0=0, x0=500, y1=1000, x1=1000)
        assert box.to_pixels(200, 100) == (100, 0, 200, 100)


class TestCropToBox:
    def test_crop_right_half(self, shelf_jpeg):
        data = crop_to_box(shelf_jpeg, BoundingBox(0, 500, 1000, 1000))
        cropped = PILImage.open(io.BytesIO(data))
        assert cropped.size == (100, 100)
        r, g, b = cropped.getpixel((50, 50))
        assert b > 200 and r < 60

    def test_empty_data(self):
        with pytest.raises(ValueError):
            crop_to_box(b"", BoundingBox(0, 0, 10, 10))

    def test_undecodable_image(self):
        with pytest.raises(ValueError):
            crop_to_box(b"not an image", BoundingBox(0, 0, 500, 500))

    def test_box_smaller_than_a_pixel(self, shelf_jpeg):
        with pytest.raises(ValueError):
            crop_to_box(shelf_jpeg, BoundingBox(0, 0, 1, 1))


class TestLoadImageBytes:
    def test_local_file(self, tmp_path):
        path = tmp_path / "shelf.jpg"
        path.write_bytes(b"abc")
        assert load_image_bytes(SimpleNamespace(file_path=str(path))) == b"abc"

    @patch("utils.image_utils.requests.get")
    def test_http_url(self, mock_get):
        mock_get.return_value = MagicMock(content=b"xyz")
        data = load_image_bytes(SimpleNamespace(file_path="https://cdn/x.jpg"), timeout=5)
        assert data == b"xyz"
        mock_get.assert_called_once_with("https://cdn/x.jpg", timeout=5)


def test_guess_media_type():
    assert guess_media_type(b"\x89PNG\r\n") == "image/png"
    assert guess_media_type(b"RIFF0000WEBPVP8") == "image/webp"
    assert guess_media_type(b"\xff\xd8\xff") == "image/jpeg"
