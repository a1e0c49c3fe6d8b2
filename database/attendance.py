import logging
import math
import secrets
import sqlite3
from datetime import datetime, timedelta
from typing import Any, Literal, TypedDict

from backend.config import (
    ATTENDANCE_EARLY_MINUTES,
    ATTENDANCE_LATE_MINUTES,
    HEARTBEAT_INTERVAL_SECONDS,
    INTERVAL_MINUTES,
    PARTIAL_THRESHOLD,
    PRESENT_THRESHOLD,
    SESSION_TOKEN_TTL_SECONDS,
    STALE_SESSION_MINUTES,
)
from backend.security import GeoPoint, mint_session_token, validate_session_token
from backend.services.geofence import is_within_room
from backend.services.rotating_codes import validate_code
from database.db import (
    connect_db,
    format_timestamp,
    get_class,
    get_student_classes_in_room,
    is_enrolled,
    parse_timestamp,
)

logger = logging.getLogger(__name__)

SessionStatus = Literal["ACTIVE", "COMPLETED", "ABANDONED"]
RecordStatus = Literal["PRESENT", "PARTIAL", "ABSENT"]

MINUTES_PER_DAY = 24 * 60


class AttendanceError(Exception):
    """A rejected attendance operation; `reason` is the machine-checkable code."""

    def __init__(
        self,
        reason: str,
        message: str,
        *,
        status_code: int = 400,
        extra: dict[str, Any] | None = None,
    ):
        super().__init__(message)
        self.reason = reason
        self.message = message
        self.status_code = status_code
        self.extra = extra or {}


class HeartbeatStats(TypedDict):
    total_heartbeats: int
    valid_heartbeats: int
    intervals_present: int


# -----------------------------
# Time arithmetic
# -----------------------------
def _clock_minutes(value: str) -> int:
    parts = str(value).split(":")
    return int(parts[0]) * 60 + int(parts[1])


def _minutes_from_start(now: datetime, start_time: str) -> int:
    """Signed minutes from the nearest occurrence of `start_time`, in [-720, 720)."""
    offset = (now.hour * 60 + now.minute - _clock_minutes(start_time)) % MINUTES_PER_DAY
    if offset >= MINUTES_PER_DAY // 2:
        offset -= MINUTES_PER_DAY
    return offset


def is_within_attendance_window(now: datetime, start_time: str) -> bool:
    """
    Check-in opens 15 minutes before class start and closes 20 minutes after it.

    Compared on the clock face, so a 00:05 class opens at 23:50 the day before.
    """
    offset = _minutes_from_start(now, start_time)
    return -ATTENDANCE_EARLY_MINUTES <= offset <= ATTENDANCE_LATE_MINUTES


def calculate_expected_intervals(start_time: str, end_time: str) -> int:
    duration = _clock_minutes(end_time) - _clock_minutes(start_time)
    if duration < 0:
        # class runs past midnight
        duration += MINUTES_PER_DAY
    return max(1, math.ceil(duration / INTERVAL_MINUTES))


def calculate_interval_number(started_at: datetime, now: datetime) -> int:
    minutes_elapsed = math.floor((now - started_at).total_seconds() / 60)
    return max(1, minutes_elapsed // INTERVAL_MINUTES + 1)


def attendance_status(intervals_present: int, expected_intervals: int) -> RecordStatus:
    # Integer cross-multiplication keeps the 75% / 50% boundaries exact.
    scaled = intervals_present * 100
    if scaled >= PRESENT_THRESHOLD * expected_intervals:
        return "PRESENT"
    if scaled >= PARTIAL_THRESHOLD * expected_intervals:
        return "PARTIAL"
    return "ABSENT"


def _percentage(intervals_present: int, expected_intervals: int) -> float:
    return intervals_present / expected_intervals * 100


def _round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


# -----------------------------
# Heartbeats
# -----------------------------
def get_heartbeat_stats(session_id: str, *, conn: sqlite3.Connection | None = None) -> HeartbeatStats:
    owns_conn = conn is None
    active_conn = conn or connect_db()
    try:
        row = active_conn.execute(
            """
            SELECT
                COUNT(*) AS total_heartbeats,
                COUNT(CASE WHEN is_valid = 1 THEN 1 END) AS valid_heartbeats,
                COUNT(DISTINCT CASE WHEN is_valid = 1 THEN interval_number END) AS intervals_present
            FROM heartbeats
            WHERE session_id = ?
            """,
            (session_id,),
        ).fetchone()
    finally:
        if owns_conn:
            active_conn.close()

    return {
        "total_heartbeats": int(row["total_heartbeats"] or 0),
        "valid_heartbeats": int(row["valid_heartbeats"] or 0),
        "intervals_present": int(row["intervals_present"] or 0),
    }


def _ingest_heartbeat(
    conn: sqlite3.Connection,
    session: sqlite3.Row | dict[str, Any],
    point: GeoPoint,
    now: datetime,
) -> dict[str, Any]:
    session_id = str(session["session_id"])
    expected_intervals = int(session["expected_intervals"])

    location_valid = is_within_room(point, str(session["room_id"]), conn=conn)
    interval_number = calculate_interval_number(parse_timestamp(session["started_at"]), now)

    # The status guard runs inside the write, so an end or abandon committed
    # after the session was read still turns the heartbeat away.
    cur = conn.execute(
        """
        INSERT INTO heartbeats (session_id, gps_lat, gps_lng, received_at, interval_number, is_valid)
        SELECT ?, ?, ?, ?, ?, ?
        WHERE EXISTS (
            SELECT 1 FROM attendance_sessions
            WHERE session_id = ? AND status = 'ACTIVE'
        )
        """,
        (
            session_id,
            float(point["lat"]),
            float(point["lng"]),
            format_timestamp(now),
            interval_number,
            1 if location_valid else 0,
            session_id,
        ),
    )
    if cur.rowcount != 1:
        raise AttendanceError("invalid_session", "Invalid session or session not active.", status_code=404)

    stats = get_heartbeat_stats(session_id, conn=conn)
    return {
        "success": True,
        "message": "Heartbeat recorded successfully" if location_valid else "Heartbeat recorded (location invalid)",
        "interval_number": interval_number,
        "location_valid": location_valid,
        "stats": {
            **stats,
            "expected_intervals": expected_intervals,
            "current_attendance_percentage": _round_half_up(
                _percentage(stats["intervals_present"], expected_intervals)
            ),
        },
    }


def _find_active_session_id(conn: sqlite3.Connection, student_id: str) -> str | None:
    row = conn.execute(
        """
        SELECT session_id
        FROM attendance_sessions
        WHERE student_id = ? AND status = 'ACTIVE'
        """,
        (student_id,),
    ).fetchone()
    return str(row["session_id"]) if row else None


# -----------------------------
# Scan handshake
# -----------------------------
def get_current_classes(student_id: str, room_id: str, now: datetime) -> list[dict[str, Any]]:
    """
    Classes the student can check into from this room right now.

    Near midnight the window can reach a class scheduled on the neighbouring
    weekday, so yesterday's and tomorrow's schedules are consulted too.
    """
    current = now.hour * 60 + now.minute
    out: list[dict[str, Any]] = []
    for day_shift in (-1, 0, 1):
        weekday = (now + timedelta(days=day_shift)).weekday()
        for row in get_student_classes_in_room(student_id, room_id, weekday):
            offset = current - _clock_minutes(row["start_time"]) - day_shift * MINUTES_PER_DAY
            if not -ATTENDANCE_EARLY_MINUTES <= offset <= ATTENDANCE_LATE_MINUTES:
                continue
            out.append(
                {
                    "class_id": row["class_id"],
                    "class_name": row["class_name"],
                    "start_time": row["start_time"],
                    "end_time": row["end_time"],
                    "instructor": row["instructor_name"] or None,
                    "status": "starting_soon" if offset < 0 else "in_progress",
                }
            )
    return out


def scan_room_code(
    student_id: str,
    code: str,
    point: GeoPoint,
    now: datetime | None = None,
) -> dict[str, Any]:
    """
    Turn a scanned room code plus the scanner's location into a session token.

    Order of checks: code, geofence, existing active session, classes open
    for check-in in that room.
    """
    marker = now or datetime.now()

    code_check = validate_code(code, marker)
    if not code_check["valid"]:
        raise AttendanceError(
            "invalid_code",
            f"Invalid QR code: {code_check['reason']}",
            extra={"code_reason": code_check["reason"]},
        )
    room_id = str(code_check["room_id"])

    if not is_within_room(point, room_id):
        raise AttendanceError("outside_geofence", "Not within classroom boundaries.")

    conn = connect_db()
    try:
        existing = _find_active_session_id(conn, student_id)
    finally:
        conn.close()
    if existing:
        raise AttendanceError(
            "already_active",
            "You already have an active attendance session.",
            status_code=409,
            extra={"existing_session_id": existing},
        )

    available = get_current_classes(student_id, room_id, marker)
    if not available:
        raise AttendanceError("no_classes_available", "No classes available at this time.", status_code=404)

    return {
        "session_token": mint_session_token(student_id, room_id, point, marker),
        "available_classes": available,
        "room_id": room_id,
        "expires_in": SESSION_TOKEN_TTL_SECONDS,
    }


# -----------------------------
# Session lifecycle
# -----------------------------
def start_attendance_session(
    student_id: str,
    session_token: str,
    class_id: str,
    now: datetime | None = None,
    *,
    conn: sqlite3.Connection | None = None,
) -> dict[str, Any]:
    marker = now or datetime.now()

    token_check = validate_session_token(session_token, marker)
    if not token_check["valid"] or token_check["payload"] is None:
        raise AttendanceError(
            "invalid_token",
            f"Invalid or expired session token ({token_check['reason']}).",
            extra={"token_reason": token_check["reason"]},
        )
    token = token_check["payload"]
    if token["studentId"] != student_id:
        raise AttendanceError("token_user_mismatch", "Session token does not belong to this user.", status_code=403)

    owns_conn = conn is None
    active_conn = conn or connect_db()
    try:
        if _find_active_session_id(active_conn, student_id):
            raise AttendanceError("already_active", "You already have an active attendance session.", status_code=409)

        if not is_enrolled(student_id, class_id, conn=active_conn):
            raise AttendanceError("not_enrolled", "You are not enrolled in this class.", status_code=403)

        class_info = get_class(class_id, conn=active_conn)
        if not class_info or class_info["room_id"] != token["roomId"]:
            raise AttendanceError("class_room_mismatch", "Class not found or not in the correct room.")

        if not is_within_attendance_window(marker, class_info["start_time"]):
            raise AttendanceError("outside_attendance_window", "Attendance is not available at this time.")

        expected_intervals = calculate_expected_intervals(class_info["start_time"], class_info["end_time"])
        session = {
            "session_id": secrets.token_hex(16),
            "student_id": student_id,
            "class_id": class_id,
            "room_id": token["roomId"],
            "started_at": format_timestamp(marker),
            "expected_intervals": expected_intervals,
        }

        try:
            active_conn.execute(
                """
                INSERT INTO attendance_sessions
                    (session_id, student_id, class_id, room_id, status, started_at, expected_intervals)
                VALUES (?, ?, ?, ?, 'ACTIVE', ?, ?)
                """,
                (
                    session["session_id"],
                    student_id,
                    class_id,
                    session["room_id"],
                    session["started_at"],
                    expected_intervals,
                ),
            )
        except sqlite3.IntegrityError:
            # lost a race against a concurrent start for the same student
            raise AttendanceError(
                "already_active", "You already have an active attendance session.", status_code=409
            )

        # The scan location is the first interval's evidence.
        first_heartbeat = _ingest_heartbeat(active_conn, session, token["point"], marker)

        if owns_conn:
            active_conn.commit()
    except Exception:
        if owns_conn:
            active_conn.rollback()
        raise
    finally:
        if owns_conn:
            active_conn.close()

    logger.info("Attendance session %s started for %s in %s", session["session_id"], student_id, class_id)
    return {
        "session_id": session["session_id"],
        "message": "Attendance session started successfully",
        "expected_intervals": expected_intervals,
        "heartbeat_interval_ms": HEARTBEAT_INTERVAL_SECONDS * 1000,
        "class_name": class_info["class_name"],
        "start_time": class_info["start_time"],
        "end_time": class_info["end_time"],
        "initial_heartbeat": first_heartbeat,
    }


def record_heartbeat(
    student_id: str,
    session_id: str,
    point: GeoPoint,
    now: datetime | None = None,
    *,
    conn: sqlite3.Connection | None = None,
) -> dict[str, Any]:
    marker = now or datetime.now()
    owns_conn = conn is None
    active_conn = conn or connect_db()
    try:
        session = active_conn.execute(
            """
            SELECT session_id, room_id, started_at, expected_intervals
            FROM attendance_sessions
            WHERE session_id = ? AND student_id = ? AND status = 'ACTIVE'
            """,
            (session_id, student_id),
        ).fetchone()
        if not session:
            raise AttendanceError("invalid_session", "Invalid session or session not active.", status_code=404)

        result = _ingest_heartbeat(active_conn, session, point, marker)
        if owns_conn:
            active_conn.commit()
        return result
    except Exception:
        if owns_conn:
            active_conn.rollback()
        raise
    finally:
        if owns_conn:
            active_conn.close()


def finalize_session(
    session_id: str,
    now: datetime | None = None,
    *,
    conn: sqlite3.Connection | None = None,
) -> dict[str, Any]:
    """
    Derive the attendance record from the session's heartbeats and upsert it.

    Keyed by (student, class, date of `now`); a second call for the same
    session overwrites with identical values.
    """
    marker = now or datetime.now()
    owns_conn = conn is None
    active_conn = conn or connect_db()
    try:
        session = active_conn.execute(
            """
            SELECT session_id, student_id, class_id, expected_intervals
            FROM attendance_sessions
            WHERE session_id = ?
            """,
            (session_id,),
        ).fetchone()
        if not session:
            raise AttendanceError("session_not_found", "Session not found.", status_code=404)

        stats = get_heartbeat_stats(session_id, conn=active_conn)
        expected_intervals = int(session["expected_intervals"])
        percentage = _percentage(stats["intervals_present"], expected_intervals)
        status = attendance_status(stats["intervals_present"], expected_intervals)
        record_date = marker.strftime("%Y-%m-%d")

        active_conn.execute(
            """
            INSERT INTO attendance_records (
                student_id,
                class_id,
                date,
                session_id,
                intervals_present,
                total_intervals,
                attendance_percentage,
                status
            )
            VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT (student_id, class_id, date) DO UPDATE SET
                session_id = excluded.session_id,
                intervals_present = excluded.intervals_present,
                total_intervals = excluded.total_intervals,
                attendance_percentage = excluded.attendance_percentage,
                status = excluded.status,
                updated_at = CURRENT_TIMESTAMP
            """,
            (
                session["student_id"],
                session["class_id"],
                record_date,
                session_id,
                stats["intervals_present"],
                expected_intervals,
                percentage,
                status,
            ),
        )
        if owns_conn:
            active_conn.commit()
    except Exception:
        if owns_conn:
            active_conn.rollback()
        raise
    finally:
        if owns_conn:
            active_conn.close()

    return {
        "student_id": session["student_id"],
        "class_id": session["class_id"],
        "date": record_date,
        "intervals_present": stats["intervals_present"],
        "total_intervals": expected_intervals,
        "attendance_percentage": round(percentage, 2),
        "status": status,
        "total_heartbeats": stats["total_heartbeats"],
        "valid_heartbeats": stats["valid_heartbeats"],
    }


def _transition(
    conn: sqlite3.Connection,
    *,
    session_id: str,
    to_status: SessionStatus,
    now: datetime,
    extra_where: str = "",
    params: tuple = (),
) -> bool:
    """Move a session out of ACTIVE; True only for the caller that made the move."""
    cur = conn.execute(
        f"""
        UPDATE attendance_sessions
        SET status = ?,
            ended_at = ?
        WHERE session_id = ?
          AND status = 'ACTIVE'
          {extra_where}
        """,
        (to_status, format_timestamp(now), session_id, *params),
    )
    return cur.rowcount == 1


def end_attendance_session(
    student_id: str,
    session_id: str,
    now: datetime | None = None,
) -> dict[str, Any]:
    marker = now or datetime.now()
    conn = connect_db()
    try:
        moved = _transition(
            conn,
            session_id=session_id,
            to_status="COMPLETED",
            now=marker,
            extra_where="AND student_id = ?",
            params=(student_id,),
        )
        if not moved:
            raise AttendanceError("session_not_found", "Session not found or already ended.", status_code=404)

        record = finalize_session(session_id, marker, conn=conn)
        conn.commit()
    except Exception:
        conn.rollback()
        raise
    finally:
        conn.close()

    logger.info("Attendance session %s completed: %s", session_id, record["status"])
    return {
        "message": "Attendance session ended successfully",
        "session_id": session_id,
        "final_record": record,
    }


# -----------------------------
# Abandonment sweep
# -----------------------------
def abandon_session(session_id: str, now: datetime | None = None) -> dict[str, Any] | None:
    """
    Mark a stale session ABANDONED and finalize it.

    Returns None when the session was no longer ACTIVE or received a fresh
    heartbeat since it was selected.
    """
    marker = now or datetime.now()
    cutoff = marker - timedelta(minutes=STALE_SESSION_MINUTES)
    conn = connect_db()
    try:
        moved = _transition(
            conn,
            session_id=session_id,
            to_status="ABANDONED",
            now=marker,
            extra_where="""
              AND NOT EXISTS (
                  SELECT 1 FROM heartbeats h
                  WHERE h.session_id = attendance_sessions.session_id
                    AND h.received_at >= ?
              )
            """,
            params=(format_timestamp(cutoff),),
        )
        if not moved:
            conn.rollback()
            return None

        record = finalize_session(session_id, marker, conn=conn)
        conn.commit()
        return record
    except Exception:
        conn.rollback()
        raise
    finally:
        conn.close()


def sweep_abandoned_sessions(now: datetime | None = None) -> dict[str, Any]:
    marker = now or datetime.now()
    cutoff = marker - timedelta(minutes=STALE_SESSION_MINUTES)

    conn = connect_db()
    try:
        rows = conn.execute(
            """
            SELECT
                s.session_id,
                (
                    SELECT MAX(h.received_at)
                    FROM heartbeats h
                    WHERE h.session_id = s.session_id
                ) AS last_heartbeat_at
            FROM attendance_sessions s
            WHERE s.status = 'ACTIVE'
            ORDER BY s.started_at ASC
            """
        ).fetchall()
    finally:
        conn.close()

    abandoned: list[str] = []
    failed = 0
    for row in rows:
        last_heartbeat_at = row["last_heartbeat_at"]
        if last_heartbeat_at is not None and parse_timestamp(last_heartbeat_at) >= cutoff:
            continue
        try:
            if abandon_session(row["session_id"], marker) is not None:
                abandoned.append(str(row["session_id"]))
        except Exception:
            failed += 1
            logger.exception("Failed to abandon session %s", row["session_id"])

    if abandoned or failed:
        logger.info("Abandonment sweep: %d abandoned, %d failed", len(abandoned), failed)
    return {
        "checked": len(rows),
        "abandoned": len(abandoned),
        "failed": failed,
        "session_ids": abandoned,
    }


# -----------------------------
# Queries
# -----------------------------
def get_active_session(student_id: str) -> dict[str, Any] | None:
    conn = connect_db()
    try:
        row = conn.execute(
            """
            SELECT
                s.session_id,
                s.student_id,
                s.class_id,
                s.room_id,
                s.status,
                s.started_at,
                s.expected_intervals,
                c.class_name,
                c.start_time,
                c.end_time
            FROM attendance_sessions s
            JOIN classes c ON c.class_id = s.class_id
            WHERE s.student_id = ? AND s.status = 'ACTIVE'
            """,
            (student_id,),
        ).fetchone()
        if not row:
            return None
        session = dict(row)
        session["current_stats"] = get_heartbeat_stats(session["session_id"], conn=conn)
        return session
    finally:
        conn.close()


def get_attendance_record(student_id: str, class_id: str, date: str) -> dict[str, Any] | None:
    conn = connect_db()
    try:
        row = conn.execute(
            """
            SELECT
                ar.student_id,
                ar.class_id,
                ar.date,
                ar.session_id,
                ar.intervals_present,
                ar.total_intervals,
                ar.attendance_percentage,
                ar.status,
                ar.created_at,
                ar.updated_at,
                c.class_name,
                u.first_name,
                u.last_name
            FROM attendance_records ar
            JOIN classes c ON c.class_id = ar.class_id
            LEFT JOIN users u ON u.user_id = ar.student_id
            WHERE ar.student_id = ? AND ar.class_id = ? AND ar.date = ?
            """,
            (student_id, class_id, date),
        ).fetchone()
        return dict(row) if row else None
    finally:
        conn.close()


def get_attendance_history(student_id: str) -> list[dict[str, Any]]:
    conn = connect_db()
    try:
        rows = conn.execute(
            """
            SELECT
                ar.student_id,
                ar.class_id,
                ar.date,
                ar.intervals_present,
                ar.total_intervals,
                ar.attendance_percentage,
                ar.status,
                c.class_name
            FROM attendance_records ar
            JOIN classes c ON c.class_id = ar.class_id
            WHERE ar.student_id = ?
            ORDER BY ar.date DESC, ar.created_at DESC
            """,
            (student_id,),
        ).fetchall()
        return [dict(r) for r in rows]
    finally:
        conn.close()
