"""Compact HS256 JWT helpers shared by bearer auth and share links."""

from __future__ import annotations

import base64
import hashlib
import hmac
import json
import time
import uuid
from typing import Any, Dict, Optional


class TokenError(ValueError):
    """Raised when a token is malformed, forged or expired."""


def encode_token(payload: Dict[str, Any], secret: str, *, ttl_seconds: Optional[int] = None) -> str:
    claims = dict(payload)
    now = int(time.time())
    claims.setdefault("iat", now)
    claims.setdefault("jti", uuid.uuid4().hex)
    if ttl_seconds is not None:
        claims["exp"] = now + int(ttl_seconds)
    header_b64 = _b64url_encode(json.dumps({"alg": "HS256", "typ": "JWT"}, separators=(",", ":")).encode())
    payload_b64 = _b64url_encode(json.dumps(claims, separators=(",", ":"), sort_keys=True).encode())
    signing_input = f"{header_b64}.{payload_b64}".encode()
    signature = hmac.new(secret.encode(), signing_input, hashlib.sha256).digest()
    return f"{header_b64}.{payload_b64}.{_b64url_encode(signature)}"


def decode_token(token: str, secret: str, *, now: Optional[float] = None) -> Dict[str, Any]:
    try:
        header_b64, payload_b64, signature_b64 = token.split(".")
    except (AttributeError, ValueError) as exc:
        raise TokenError("Malformed token") from exc
    header = _b64url_to_json(header_b64)
    if header.get("alg") != "HS256":
        raise TokenError("Unsupported token alg")
    signing_input = f"{header_b64}.{payload_b64}".encode()
    expected = hmac.new(secret.encode(), signing_input, hashlib.sha256).digest()
    if not hmac.compare_digest(expected, _b64url_decode(signature_b64)):
        raise TokenError("Invalid token signature")
    payload = _b64url_to_json(payload_b64)
    exp = payload.get("exp")
    if exp is not None:
        try:
            expires_at = float(exp)
        except (TypeError, ValueError) as exc:
            raise TokenError("Malformed exp claim") from exc
        if expires_at < (time.time() if now is None else now):
            raise TokenError("Token expired")
    return payload


def _b64url_to_json(segment: str) -> dict:
    try:
        data = json.loads(_b64url_decode(segment).decode())
    except (UnicodeDecodeError, json.JSONDecodeError) as exc:
        raise TokenError("Malformed token segment") from exc
    if not isinstance(data, dict):
        raise TokenError("Malformed token segment")
    return data


def _b64url_decode(segment: str) -> bytes:
    padding = "=" * (-len(segment) % 4)
    try:
        return base64.urlsafe_b64decode(segment + padding)
    except ValueError as exc:
        raise TokenError("Malformed token encoding") from exc


def _b64url_encode(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).rstrip(b"=").decode()
