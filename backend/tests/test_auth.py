"""Tests for utils/auth.py: token decoding and decorator."""

import time

import jwt as pyjwt
import pytest
from flask import Flask, jsonify, request

from utils.auth import SECRET_KEY, decode_token, token_required


def _token(**payload):
    return pyjwt.encode(payload, SECRET_KEY, algorithm="HS256")


@pytest.fixture()
def guarded_app():
    app = Flask(__name__)

    @app.route("/any")
    @token_required()
    def any_user():
        return jsonify(request.token_payload)

    @app.route("/admin")
    @token_required("admin")
    def admin_only():
        return jsonify({"ok": True})

    return app.test_client()


def test_decode_access_token():
    payload = decode_token(_token(user_id=4, role="user", type="access"))
    assert payload["user_id"] == 4


def test_decode_token_without_type():
    assert decode_token(_token(user_id=4))["user_id"] == 4


def test_decode_refresh_token_rejected():
    with pytest.raises(pyjwt.InvalidTokenError):
        decode_token(_token(user_id=4, type="refresh"))


def test_decode_wrong_secret():
    token = pyjwt.encode({"user_id": 4}, "other-secret", algorithm="HS256")
    with pytest.raises(pyjwt.InvalidTokenError):
        decode_token(token)


class TestTokenRequired:
    def test_missing(self, guarded_app):
        rv = guarded_app.get("/any")
        assert rv.status_code == 401
        assert rv.get_json()["error"] == "Token manquant"

    def test_expired(self, guarded_app):
        token = _token(user_id=1, type="access", exp=int(time.time()) - 10)
        rv = guarded_app.get("/any", headers={"Authorization": f"Bearer {token}"})
        assert rv.status_code == 401
        assert rv.get_json()["error"] == "Token expiré"

    def test_payload_exposed(self, guarded_app):
        token = _token(user_id=1, role="user", type="access")
        rv = guarded_app.get("/any", headers={"Authorization": f"Bearer {token}"})
        assert rv.status_code == 200
        assert rv.get_json()["user_id"] == 1

    def test_role_refused(self, guarded_app):
        token = _token(user_id=1, role="user", type="access")
        rv = guarded_app.get("/admin", headers={"Authorization": f"Bearer {token}"})
        assert rv.status_code == 403

    def test_role_granted(self, guarded_app):
        token = _token(user_id=1, role="admin", type="access")
        rv = guarded_app.get("/admin", headers={"Authorization": f"Bearer {token}"})
        assert rv.status_code == 200
