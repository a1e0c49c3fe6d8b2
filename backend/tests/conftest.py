from datetime import datetime

import pytest

import backend.config as config
import backend.services.jobs as jobs
import database.db as db

ROOM_ID = "ROOM101"
ROOM_POINT = {"lat": 33.7756, "lng": -84.3963}
# ~111 m north of the room
FAR_POINT = {"lat": 33.7766, "lng": -84.3963}

STUDENT_ID = "student_1"
OTHER_STUDENT_ID = "student_2"
INSTRUCTOR_ID = "instructor_1"
CLASS_ID = "MATH101_001"

# Tuesday; the demo class meets 10:00-11:00 on Tuesdays.
CLASS_DAY = datetime(2024, 3, 12)


def at(hh: int, mm: int, ss: int = 0) -> datetime:
    return CLASS_DAY.replace(hour=hh, minute=mm, second=ss)


@pytest.fixture()
def temp_db(tmp_path, monkeypatch):
    test_db = tmp_path / "rollcall_test.db"

    # Point DB to a temp file for isolation.
    monkeypatch.setattr(config, "DB_PATH", test_db)
    monkeypatch.setattr(db, "DB_PATH", test_db)
    monkeypatch.setattr(jobs, "ENABLE_BACKGROUND_JOBS", False)

    db.create_tables()
    return test_db


@pytest.fixture()
def campus(temp_db):
    conn = db.connect_db()
    db.add_room(ROOM_ID, ROOM_POINT["lat"], ROOM_POINT["lng"], conn=conn)
    db.add_room("ROOM201", 33.7760, -84.3967, conn=conn)
    db.add_user(
        INSTRUCTOR_ID, "instructor@example.edu", "instructor123",
        role="INSTRUCTOR", first_name="John", last_name="Smith", conn=conn,
    )
    db.add_user(
        STUDENT_ID, "student@example.edu", "student123",
        first_name="Jane", last_name="Doe", conn=conn,
    )
    db.add_user(OTHER_STUDENT_ID, "other@example.edu", "student123", conn=conn)
    db.add_class(
        CLASS_ID,
        "Calculus I - Section 001",
        ROOM_ID,
        day_of_week=CLASS_DAY.weekday(),
        start_time="10:00",
        end_time="11:00",
        instructor_id=INSTRUCTOR_ID,
        conn=conn,
    )
    db.add_class(
        "HIST200_002",
        "World History - Section 002",
        "ROOM201",
        day_of_week=CLASS_DAY.weekday(),
        start_time="10:00",
        end_time="10:52",
        instructor_id=INSTRUCTOR_ID,
        conn=conn,
    )
    db.enroll_student(STUDENT_ID, CLASS_ID, conn=conn)
    db.enroll_student(STUDENT_ID, "HIST200_002", conn=conn)
    db.enroll_student(OTHER_STUDENT_ID, "HIST200_002", conn=conn)
    conn.commit()
    conn.close()
    return temp_db
