import base64
import binascii
import hashlib
import hmac
import json
import logging
import secrets
import time
from datetime import datetime
from typing import Any, Literal, TypedDict

from fastapi import Depends, Header, HTTPException

from backend.config import (
    AUTH_TOKEN_TTL_SECONDS,
    SESSION_TOKEN_SECRET,
    SESSION_TOKEN_TTL_SECONDS,
    SIGNING_KEY,
)

logger = logging.getLogger(__name__)


class GeoPoint(TypedDict):
    lat: float
    lng: float


class SessionTokenPayload(TypedDict):
    studentId: str
    roomId: str
    point: GeoPoint
    nonce: str
    issuedAt: int
    expiresAt: int


TokenRejection = Literal["invalid_format", "invalid_signature", "expired"]


class SessionTokenCheck(TypedDict):
    valid: bool
    payload: SessionTokenPayload | None
    reason: TokenRejection | None


def _b64url_encode(raw: bytes) -> str:
    return base64.urlsafe_b64encode(raw).rstrip(b"=").decode("ascii")


def _b64url_decode(value: str) -> bytes:
    padding = "=" * (-len(value) % 4)
    return base64.urlsafe_b64decode(value + padding)


def _sign(payload_b64: str, key: str) -> str:
    digest = hmac.new(
        key.encode("utf-8"),
        payload_b64.encode("ascii"),
        hashlib.sha256,
    ).digest()
    return _b64url_encode(digest)


def _encode(payload: dict[str, Any], key: str) -> str:
    payload_json = json.dumps(payload, separators=(",", ":"), sort_keys=True)
    payload_b64 = _b64url_encode(payload_json.encode("utf-8"))
    return f"{payload_b64}.{_sign(payload_b64, key)}"


def _split_signed(token: str, key: str) -> tuple[str | None, TokenRejection | None]:
    """Return the verified payload segment, or the reason it was rejected."""
    if not token or token.count(".") != 1:
        return None, "invalid_format"
    payload_b64, signature = token.split(".", 1)
    try:
        expected = _sign(payload_b64, key)
    except UnicodeEncodeError:
        return None, "invalid_format"
    if not hmac.compare_digest(signature.encode("ascii", "replace"), expected.encode("ascii")):
        return None, "invalid_signature"
    return payload_b64, None


def _load_payload(payload_b64: str) -> dict[str, Any] | None:
    try:
        payload = json.loads(_b64url_decode(payload_b64).decode("utf-8"))
    except (binascii.Error, UnicodeDecodeError, ValueError):
        return None
    if not isinstance(payload, dict):
        return None
    return payload


# -----------------------------
# Bearer access tokens (login)
# -----------------------------
def issue_access_token(user_id: str, *, role: str) -> tuple[str, dict[str, Any]]:
    now = int(time.time())
    payload = {
        "sub": user_id.strip(),
        "role": role,
        "iat": now,
        "exp": now + AUTH_TOKEN_TTL_SECONDS,
    }
    return _encode(payload, SIGNING_KEY), payload


def decode_access_token(token: str) -> dict[str, Any] | None:
    payload_b64, _ = _split_signed(token, SIGNING_KEY)
    if payload_b64 is None:
        return None

    payload = _load_payload(payload_b64)
    if payload is None:
        return None

    sub = payload.get("sub")
    exp = payload.get("exp")
    if not isinstance(sub, str) or not sub.strip():
        return None
    if not isinstance(exp, int):
        return None
    if exp < int(time.time()):
        return None

    return payload


def require_user(authorization: str | None = Header(default=None)) -> dict[str, Any]:
    if not authorization:
        raise HTTPException(status_code=401, detail="Missing bearer token.")

    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token:
        raise HTTPException(status_code=401, detail="Invalid authorization scheme.")

    payload = decode_access_token(token.strip())
    if not payload:
        raise HTTPException(status_code=401, detail="Invalid or expired access token.")

    return payload


def require_instructor(user: dict[str, Any] = Depends(require_user)) -> dict[str, Any]:
    if user.get("role") != "INSTRUCTOR":
        raise HTTPException(status_code=403, detail="INSTRUCTOR access required.")
    return user


# -----------------------------
# Scan session tokens
# -----------------------------
def mint_session_token(
    student_id: str,
    room_id: str,
    point: GeoPoint,
    now: datetime,
    *,
    secret: str | None = None,
) -> str:
    """
    Sign a short-lived capability binding a scan to a student, room and location.

    The token is never stored server-side; `validate_session_token` needs
    nothing but the secret and the clock to check it.
    """
    issued_at = int(now.timestamp())
    payload: SessionTokenPayload = {
        "studentId": student_id,
        "roomId": room_id,
        "point": {"lat": float(point["lat"]), "lng": float(point["lng"])},
        "nonce": secrets.token_hex(16),
        "issuedAt": issued_at,
        "expiresAt": issued_at + SESSION_TOKEN_TTL_SECONDS,
    }
    return _encode(dict(payload), secret or SESSION_TOKEN_SECRET)


def _coerce_session_payload(raw: dict[str, Any]) -> SessionTokenPayload | None:
    point = raw.get("point")
    if not isinstance(point, dict):
        return None
    try:
        lat = float(point["lat"])
        lng = float(point["lng"])
    except (KeyError, TypeError, ValueError):
        return None

    student_id = raw.get("studentId")
    room_id = raw.get("roomId")
    nonce = raw.get("nonce")
    issued_at = raw.get("issuedAt")
    expires_at = raw.get("expiresAt")
    if not isinstance(student_id, str) or not isinstance(room_id, str) or not isinstance(nonce, str):
        return None
    if not isinstance(issued_at, int) or not isinstance(expires_at, int):
        return None

    return {
        "studentId": student_id,
        "roomId": room_id,
        "point": {"lat": lat, "lng": lng},
        "nonce": nonce,
        "issuedAt": issued_at,
        "expiresAt": expires_at,
    }


def validate_session_token(
    token: str,
    now: datetime,
    *,
    secret: str | None = None,
) -> SessionTokenCheck:
    payload_b64, rejection = _split_signed(token, secret or SESSION_TOKEN_SECRET)
    if payload_b64 is None:
        if rejection == "invalid_signature":
            logger.warning("Session token signature mismatch; possible tampering.")
        return {"valid": False, "payload": None, "reason": rejection}

    raw = _load_payload(payload_b64)
    payload = _coerce_session_payload(raw) if raw is not None else None
    if payload is None:
        return {"valid": False, "payload": None, "reason": "invalid_format"}

    if int(now.timestamp()) >= payload["expiresAt"]:
        return {"valid": False, "payload": None, "reason": "expired"}

    return {"valid": True, "payload": payload, "reason": None}
