import io
import os
import sys
from unittest.mock import MagicMock

os.environ["DATABASE_URL"] = "sqlite:///:memory:"
os.environ["JWT_SECRET"] = "test-secret"
os.environ.setdefault("LOG_DIR", os.path.join(os.path.dirname(__file__), ".logs"))

# Map PostgreSQL JSONB to SQLite-compatible JSON before importing models
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.dialects.sqlite.base import SQLiteTypeCompiler

_orig_process = SQLiteTypeCompiler.process


def _patched_process(self, type_, **kw):
    if isinstance(type_, JSONB):
        return self.visit_JSON(type_, **kw)
    return _orig_process(self, type_, **kw)


SQLiteTypeCompiler.process = _patched_process

import jwt
import pytest
from PIL import Image as PILImage

from app import create_app
from models import Detection, Image, db as _db


@pytest.fixture(scope="session")
def app():
    application = create_app()
    application.config["TESTING"] = True
    with application.app_context():
        _db.create_all()
    yield application


@pytest.fixture(autouse=True)
def _push_ctx(app):
    """Push an app context for every test and clean up after."""
    ctx = app.app_context()
    ctx.push()
    yield
    # clean all rows
    _db.session.rollback()
    for table in reversed(_db.metadata.sorted_tables):
        _db.session.execute(table.delete())
    _db.session.commit()
    ctx.pop()


@pytest.fixture()
def client(app):
    return app.test_client()


def _make_token(role="user", **extra):
    payload = {"user_id": 1, "role": role, "type": "access"}
    payload.update(extra)
    return jwt.encode(payload, "test-secret", algorithm="HS256")


@pytest.fixture()
def auth_headers():
    token = _make_token()
    return {"Authorization": f"Bearer {token}", "Content-Type": "application/json"}


# ---------------------------------------------------------------------------
# Shared helpers
# ---------------------------------------------------------------------------


def make_anthropic_module():
    """Fake ``anthropic`` module with real exception classes."""
    mock_module = MagicMock()
    mock_module.AuthenticationError = type("AuthenticationError", (Exception,), {})
    mock_module.RateLimitError = type("RateLimitError", (Exception,), {})
    mock_module.APITimeoutError = type("APITimeoutError", (Exception,), {})
    mock_module.APIConnectionError = type("APIConnectionError", (Exception,), {})
    mock_module.APIStatusError = type("APIStatusError", (Exception,), {})
    return mock_module


def llm_response(text):
    response = MagicMock()
    response.content = [MagicMock(text=text)]
    return response


@pytest.fixture()
def anthropic_module():
    mock_module = make_anthropic_module()
    with pytest.MonkeyPatch.context() as mp:
        mp.setitem(sys.modules, "anthropic", mock_module)
        yield mock_module


@pytest.fixture()
def shelf_jpeg():
    """200x100 JPEG: left half red, right half blue."""
    image = PILImage.new("RGB", (200, 100), (255, 0, 0))
    image.paste((0, 0, 255), (100, 0, 200, 100))
    buffer = io.BytesIO()
    image.save(buffer, format="JPEG")
    return buffer.getvalue()


@pytest.fixture()
def image_row():
    image = Image(file_path="/data/shelf.jpg", project_id=7, store_name="Target Store #1234")
    _db.session.add(image)
    _db.session.commit()
    return image


def add_detection(image, index=0, **fields):
    values = {"y0": 0, "x0": 0, "y1": 1000, "x1": 500, "confidence": 0.9, "label": "product"}
    values.update(fields)
    detection = Detection(image_id=image.id, detection_index=index, **values)
    _db.session.add(detection)
    _db.session.commit()
    return detection
