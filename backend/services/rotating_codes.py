import hashlib
import hmac
import logging
import sqlite3
from datetime import datetime
from typing import Literal, TypedDict

from backend.config import CODE_ROTATION_MINUTES, QR_SECRET
from database.db import connect_db, list_room_ids, set_room_code

logger = logging.getLogger(__name__)

# Longest block field parsed as an integer.
MAX_BLOCK_DIGITS = 20

CodeRejection = Literal["invalid_format", "expired", "invalid_signature"]


class CodeCheck(TypedDict):
    valid: bool
    room_id: str | None
    reason: CodeRejection | None


def _block_seconds() -> int:
    return CODE_ROTATION_MINUTES * 60


def time_block(now: datetime) -> int:
    return int(now.timestamp()) // _block_seconds()


def block_starts_at(block: int) -> datetime:
    return datetime.fromtimestamp(block * _block_seconds())


def code_expires_at(block: int) -> datetime:
    """First instant at which a code issued in `block` is rejected as expired."""
    return block_starts_at(block + 2)


def _is_block_text(value: str) -> bool:
    return len(value) <= MAX_BLOCK_DIGITS and value.isascii() and value.isdigit()


def _tag(room_id: str, block: int | str, secret: str) -> str:
    return hmac.new(
        secret.encode("utf-8"),
        f"{room_id}_{block}".encode("utf-8"),
        hashlib.sha256,
    ).hexdigest()


def issue_code(room_id: str, now: datetime, *, secret: str | None = None) -> str:
    block = time_block(now)
    return f"{room_id}_{block}_{_tag(room_id, block, secret or QR_SECRET)}"


def validate_code(code: str, now: datetime, *, secret: str | None = None) -> CodeCheck:
    """
    Recompute and check a rotating code; never consults the stored display code.

    Accepted while the current block is the issuing block or the one after it,
    so a code scanned just before a rotation still works after the display
    has moved on.
    """
    parts = (code or "").split("_")
    if len(parts) != 3 or not all(parts):
        return {"valid": False, "room_id": None, "reason": "invalid_format"}

    room_id, block_text, provided_tag = parts
    if not _is_block_text(block_text):
        return {"valid": False, "room_id": None, "reason": "invalid_format"}

    if abs(time_block(now) - int(block_text)) > 1:
        return {"valid": False, "room_id": None, "reason": "expired"}

    expected_tag = _tag(room_id, block_text, secret or QR_SECRET)
    if not hmac.compare_digest(provided_tag.encode("utf-8"), expected_tag.encode("utf-8")):
        logger.warning("Rotating code signature mismatch for room %r; possible tampering.", room_id)
        return {"valid": False, "room_id": None, "reason": "invalid_signature"}

    return {"valid": True, "room_id": room_id, "reason": None}


def rotate_room_codes(
    now: datetime | None = None,
    *,
    conn: sqlite3.Connection | None = None,
) -> int:
    """Issue a fresh display code for every room; returns the number of rooms updated."""
    owns_conn = conn is None
    active_conn = conn or connect_db()
    marker = now or datetime.now()

    try:
        room_ids = list_room_ids(conn=active_conn)
        for room_id in room_ids:
            set_room_code(room_id, issue_code(room_id, marker), marker, conn=active_conn)
        if owns_conn:
            active_conn.commit()
    finally:
        if owns_conn:
            active_conn.close()

    logger.info("Rotated codes for %d rooms", len(room_ids))
    return len(room_ids)


def expire_at_for(code: str) -> datetime | None:
    parts = (code or "").split("_")
    if len(parts) != 3 or not _is_block_text(parts[1]):
        return None
    return code_expires_at(int(parts[1]))
