import pytest

import backend.services.jobs as jobs
import database.attendance as attendance
import database.db as db
from backend.security import mint_session_token
from conftest import CLASS_ID, OTHER_STUDENT_ID, ROOM_ID, ROOM_POINT, STUDENT_ID, at
from database.attendance import (
    AttendanceError,
    abandon_session,
    end_attendance_session,
    get_attendance_record,
    record_heartbeat,
    start_attendance_session,
    sweep_abandoned_sessions,
)

ROOM201_POINT = {"lat": 33.7760, "lng": -84.3967}


def _start_math(now):
    token = mint_session_token(STUDENT_ID, ROOM_ID, ROOM_POINT, now)
    return start_attendance_session(STUDENT_ID, token, CLASS_ID, now)["session_id"]


def _start_history(now):
    token = mint_session_token(OTHER_STUDENT_ID, "ROOM201", ROOM201_POINT, now)
    return start_attendance_session(OTHER_STUDENT_ID, token, "HIST200_002", now)["session_id"]


def _session_row(session_id):
    conn = db.connect_db()
    try:
        row = conn.execute(
            "SELECT status, ended_at FROM attendance_sessions WHERE session_id = ?",
            (session_id,),
        ).fetchone()
        return dict(row)
    finally:
        conn.close()


def test_stale_session_is_abandoned_and_fresh_one_kept(campus):
    stale = _start_math(at(10, 0))
    fresh = _start_history(at(10, 0))
    record_heartbeat(OTHER_STUDENT_ID, fresh, ROOM201_POINT, at(10, 13))

    result = sweep_abandoned_sessions(at(10, 15))

    assert result["checked"] == 2
    assert result["abandoned"] == 1
    assert result["failed"] == 0
    assert result["session_ids"] == [stale]

    assert _session_row(stale) == {"status": "ABANDONED", "ended_at": "2024-03-12 10:15:00"}
    assert _session_row(fresh)["status"] == "ACTIVE"

    record = get_attendance_record(STUDENT_ID, CLASS_ID, "2024-03-12")
    assert record["session_id"] == stale
    assert record["intervals_present"] == 1
    assert record["total_intervals"] == 12
    assert record["status"] == "ABSENT"
    assert get_attendance_record(OTHER_STUDENT_ID, "HIST200_002", "2024-03-12") is None


def test_heartbeat_exactly_at_threshold_keeps_session(campus):
    session_id = _start_math(at(10, 0))
    record_heartbeat(STUDENT_ID, session_id, ROOM_POINT, at(10, 5))

    assert sweep_abandoned_sessions(at(10, 15))["abandoned"] == 0
    assert _session_row(session_id)["status"] == "ACTIVE"

    assert sweep_abandoned_sessions(at(10, 15, 1))["abandoned"] == 1
    assert _session_row(session_id)["status"] == "ABANDONED"


def test_invalid_heartbeats_still_count_as_liveness(campus):
    session_id = _start_math(at(10, 0))
    record_heartbeat(STUDENT_ID, session_id, {"lat": 0.0, "lng": 0.0}, at(10, 12))

    assert sweep_abandoned_sessions(at(10, 15))["abandoned"] == 0


def test_ended_sessions_are_not_swept(campus):
    session_id = _start_math(at(10, 0))
    ended = end_attendance_session(STUDENT_ID, session_id, at(10, 3))

    result = sweep_abandoned_sessions(at(11, 0))
    assert result == {"checked": 0, "abandoned": 0, "failed": 0, "session_ids": []}
    assert _session_row(session_id)["status"] == "COMPLETED"

    record = get_attendance_record(STUDENT_ID, CLASS_ID, "2024-03-12")
    # stored unrounded; the returned record is rounded to 2 places
    assert round(record["attendance_percentage"], 2) == ended["final_record"]["attendance_percentage"]


def test_abandon_loses_to_earlier_end(campus):
    session_id = _start_math(at(10, 0))
    end_attendance_session(STUDENT_ID, session_id, at(10, 3))

    assert abandon_session(session_id, at(10, 30)) is None
    assert _session_row(session_id) == {"status": "COMPLETED", "ended_at": "2024-03-12 10:03:00"}


def test_abandon_skips_session_revived_after_selection(campus):
    session_id = _start_math(at(10, 0))
    record_heartbeat(STUDENT_ID, session_id, ROOM_POINT, at(10, 14))

    assert abandon_session(session_id, at(10, 15)) is None
    assert _session_row(session_id)["status"] == "ACTIVE"


def test_end_after_abandon_is_rejected(campus):
    session_id = _start_math(at(10, 0))
    sweep_abandoned_sessions(at(10, 20))

    with pytest.raises(AttendanceError) as exc:
        end_attendance_session(STUDENT_ID, session_id, at(10, 21))
    assert exc.value.reason == "session_not_found"

    with pytest.raises(AttendanceError) as exc:
        record_heartbeat(STUDENT_ID, session_id, ROOM_POINT, at(10, 21))
    assert exc.value.reason == "invalid_session"


def _heartbeat_count(session_id):
    conn = db.connect_db()
    try:
        return conn.execute("SELECT COUNT(*) FROM heartbeats WHERE session_id = ?", (session_id,)).fetchone()[0]
    finally:
        conn.close()


@pytest.mark.parametrize("closed_status", ["COMPLETED", "ABANDONED"])
def test_heartbeat_racing_a_close_is_rejected(campus, monkeypatch, closed_status):
    session_id = _start_math(at(10, 0))
    now = at(10, 20)
    real_check = attendance.is_within_room

    def close_then_check(point, room_id, *, conn=None):
        # another request closes the session between the read and the write
        if closed_status == "COMPLETED":
            end_attendance_session(STUDENT_ID, session_id, now)
        else:
            assert abandon_session(session_id, now) is not None
        return real_check(point, room_id, conn=conn)

    monkeypatch.setattr(attendance, "is_within_room", close_then_check)

    with pytest.raises(AttendanceError) as exc:
        record_heartbeat(STUDENT_ID, session_id, ROOM_POINT, now)
    assert exc.value.reason == "invalid_session"

    assert _session_row(session_id)["status"] == closed_status
    assert _heartbeat_count(session_id) == 1
    assert get_attendance_record(STUDENT_ID, CLASS_ID, "2024-03-12")["intervals_present"] == 1


def test_one_failing_session_does_not_stop_the_pass(campus, monkeypatch):
    broken = _start_math(at(10, 0))
    healthy = _start_history(at(10, 0))
    real_abandon = attendance.abandon_session

    def flaky_abandon(session_id, now=None):
        if session_id == broken:
            raise RuntimeError("disk full")
        return real_abandon(session_id, now)

    monkeypatch.setattr(attendance, "abandon_session", flaky_abandon)

    result = sweep_abandoned_sessions(at(10, 30))
    assert result["checked"] == 2
    assert result["failed"] == 1
    assert result["session_ids"] == [healthy]
    assert _session_row(broken)["status"] == "ACTIVE"
    assert _session_row(healthy)["status"] == "ABANDONED"


def test_sweep_job_records_status(temp_db):
    runs_before = jobs.get_jobs_status()["abandonment_sweep"]["runs"]

    result = jobs.run_abandonment_sweep()
    assert result == {"checked": 0, "abandoned": 0, "failed": 0, "session_ids": []}

    status = jobs.get_jobs_status()["abandonment_sweep"]
    assert status["state"] == "success"
    assert status["runs"] == runs_before + 1
    assert status["last_result"] == result
    assert status["alive"] is False


def test_failed_job_is_reported_not_raised(temp_db, monkeypatch):
    def boom(now=None):
        raise RuntimeError("database is locked")

    monkeypatch.setattr(jobs, "sweep_abandoned_sessions", boom)

    assert jobs.run_abandonment_sweep() is None
    status = jobs.get_jobs_status()["abandonment_sweep"]
    assert status["state"] == "failed"
    assert "database is locked" in status["message"]


def test_code_rotation_job_counts_rooms(campus):
    assert jobs.run_code_rotation() == 2
    assert jobs.get_jobs_status()["code_rotation"]["state"] == "success"
    assert db.get_room(ROOM_ID)["current_qr_code"].startswith(f"{ROOM_ID}_")


def test_background_jobs_respect_config(temp_db):
    assert jobs.start_background_jobs() is False
    assert not any(status["alive"] for status in jobs.get_jobs_status().values())


def test_sweep_window_uses_config(campus, monkeypatch):
    monkeypatch.setattr(attendance, "STALE_SESSION_MINUTES", 30)
    _start_math(at(10, 0))
    assert sweep_abandoned_sessions(at(10, 15))["abandoned"] == 0
    assert sweep_abandoned_sessions(at(10, 31))["abandoned"] == 1

