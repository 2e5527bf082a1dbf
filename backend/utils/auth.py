import os
from functools import wraps

import jwt
from flask import jsonify, request

SECRET_KEY = os.getenv("JWT_SECRET", "secret-key")


def decode_token(token: str):
    """Decode an access token issued by the account service."""
    payload = jwt.decode(token, SECRET_KEY, algorithms=["HS256"])
    if payload.get("type", "access") != "access":
        raise jwt.InvalidTokenError("Invalid token type")
    return payload


def token_required(role: str | None = None):
    def decorator(f):
        @wraps(f)
        def wrapper(*args, **kwargs):
            auth_header = request.headers.get("Authorization", "")
            if not auth_header.startswith("Bearer "):
                return jsonify({"error": "Token manquant"}), 401
            token = auth_header.split(" ", 1)[1]
            try:
                data = decode_token(token)
            except jwt.ExpiredSignatureError:
                return jsonify({"error": "Token expiré"}), 401
            except jwt.InvalidTokenError:
                return jsonify({"error": "Token invalide"}), 401
            if role and data.get("role") != role:
                return jsonify({"error": "Accès refusé"}), 403
            request.token_payload = data
            return f(*args, **kwargs)

        return wrapper

    return decorator
