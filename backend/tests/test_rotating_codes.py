from datetime import datetime, timedelta

import database.db as db
from backend.services import rotating_codes
from backend.services.rotating_codes import (
    block_starts_at,
    code_expires_at,
    expire_at_for,
    issue_code,
    rotate_room_codes,
    time_block,
    validate_code,
)

NOW = datetime(2024, 3, 12, 10, 0, 0)


def test_code_format():
    code = issue_code("room123", NOW)
    parts = code.split("_")
    assert len(parts) == 3
    assert parts[0] == "room123"
    assert parts[1] == str(time_block(NOW))
    assert len(parts[2]) == 64
    int(parts[2], 16)


def test_codes_differ_per_room_and_block():
    assert issue_code("room1", NOW) != issue_code("room2", NOW)
    assert issue_code("room1", NOW) != issue_code("room1", NOW + timedelta(minutes=10))


def test_issue_then_validate_returns_room():
    for offset in (0, 59, 599, 3601, 86_399):
        t = NOW + timedelta(seconds=offset)
        result = validate_code(issue_code("room123", t), t)
        assert result == {"valid": True, "room_id": "room123", "reason": None}


def test_code_accepted_through_previous_block_boundary():
    start = block_starts_at(time_block(NOW))
    code = issue_code("room123", start)

    assert validate_code(code, start + timedelta(minutes=10))["valid"] is True
    assert validate_code(code, start + timedelta(minutes=19, seconds=59))["valid"] is True

    late = validate_code(code, start + timedelta(minutes=20))
    assert late["valid"] is False
    assert late["reason"] == "expired"
    assert code_expires_at(time_block(start)) == start + timedelta(minutes=20)


def test_code_issued_late_in_block_expires_after_just_over_ten_minutes():
    start = block_starts_at(time_block(NOW))
    code = issue_code("room123", start + timedelta(minutes=9, seconds=59))

    assert validate_code(code, start + timedelta(minutes=19, seconds=59))["valid"] is True
    assert validate_code(code, start + timedelta(minutes=20))["reason"] == "expired"


def test_code_from_next_block_tolerated_for_clock_skew():
    code = issue_code("room123", NOW + timedelta(minutes=10))
    assert validate_code(code, NOW)["valid"] is True


def test_rejects_invalid_format():
    for bad in ("", "invalid_format", "a_b_c_d", "room__abc", "room_-1_abc", "room_12x_abc", "__"):
        result = validate_code(bad, NOW)
        assert result["valid"] is False
        assert result["reason"] == "invalid_format", bad


def test_oversized_block_is_invalid_format():
    huge = "ROOM101_" + "9" * 5000 + "_abcd"
    assert validate_code(huge, NOW) == {"valid": False, "room_id": None, "reason": "invalid_format"}
    assert validate_code("ROOM101_" + "1" * 21 + "_abcd", NOW)["reason"] == "invalid_format"
    assert expire_at_for(huge) is None


def test_tampered_room_is_rejected():
    code = issue_code("room123", NOW)
    tampered = code.replace("room123", "room456", 1)
    result = validate_code(tampered, NOW)
    assert result["valid"] is False
    assert result["reason"] == "invalid_signature"


def test_every_character_of_room_and_tag_is_covered():
    code = issue_code("ROOM101", NOW)
    room_id, block, tag = code.split("_")

    for i, ch in enumerate(room_id):
        swapped = "X" if ch != "X" else "Y"
        tampered = f"{room_id[:i]}{swapped}{room_id[i + 1:]}_{block}_{tag}"
        assert validate_code(tampered, NOW)["reason"] == "invalid_signature"

    for i, ch in enumerate(tag):
        swapped = "0" if ch != "0" else "1"
        tampered = f"{room_id}_{block}_{tag[:i]}{swapped}{tag[i + 1:]}"
        assert validate_code(tampered, NOW)["reason"] == "invalid_signature"


def test_code_signed_with_other_secret_is_rejected():
    code = issue_code("room123", NOW, secret="someone-else")
    assert validate_code(code, NOW)["reason"] == "invalid_signature"


def test_rotation_secret_comes_from_config(monkeypatch):
    code = issue_code("room123", NOW)
    monkeypatch.setattr(rotating_codes, "QR_SECRET", "rotated-secret")
    assert validate_code(code, NOW)["reason"] == "invalid_signature"


def test_rotate_room_codes_caches_a_valid_code_per_room(campus):
    rotated = rotate_room_codes(NOW)
    assert rotated == 2

    for room_id in db.list_room_ids():
        room = db.get_room(room_id)
        assert room["current_qr_code"] == issue_code(room_id, NOW)
        assert room["qr_updated_at"] == "2024-03-12 10:00:00"
        assert validate_code(room["current_qr_code"], NOW)["room_id"] == room_id


def test_stale_cached_code_still_validates_after_rotation(campus):
    rotate_room_codes(NOW)
    old_code = db.get_room("ROOM101")["current_qr_code"]

    later = NOW + timedelta(minutes=10)
    rotate_room_codes(later)
    assert db.get_room("ROOM101")["current_qr_code"] != old_code
    assert validate_code(old_code, later)["valid"] is True
