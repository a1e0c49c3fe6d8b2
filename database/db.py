import hashlib
import hmac
import logging
import secrets
import sqlite3
from datetime import datetime, timedelta
from typing import Any

from backend.config import DB_PATH

logger = logging.getLogger(__name__)

PASSWORD_HASH_ALGO = "pbkdf2_sha256"
PASSWORD_HASH_ITERATIONS = 120_000
TIMESTAMP_FORMAT = "%Y-%m-%d %H:%M:%S"


def _hash_password(password: str, *, salt: str | None = None) -> str:
    salt_value = salt or secrets.token_hex(16)
    digest = hashlib.pbkdf2_hmac(
        "sha256",
        password.encode("utf-8"),
        salt_value.encode("utf-8"),
        PASSWORD_HASH_ITERATIONS,
    ).hex()
    return f"{PASSWORD_HASH_ALGO}${PASSWORD_HASH_ITERATIONS}${salt_value}${digest}"


def _verify_password(password: str, password_hash: str) -> bool:
    try:
        algo, rounds_text, salt_value, expected_digest = password_hash.split("$", 3)
        rounds = int(rounds_text)
    except (ValueError, TypeError):
        return False

    if algo != PASSWORD_HASH_ALGO or rounds <= 0:
        return False

    candidate_digest = hashlib.pbkdf2_hmac(
        "sha256",
        password.encode("utf-8"),
        salt_value.encode("utf-8"),
        rounds,
    ).hex()
    return hmac.compare_digest(candidate_digest, expected_digest)


def format_timestamp(value: datetime) -> str:
    return value.strftime(TIMESTAMP_FORMAT)


def parse_timestamp(value: str) -> datetime:
    return datetime.strptime(str(value), TIMESTAMP_FORMAT)


def connect_db():
    conn = sqlite3.connect(str(DB_PATH), check_same_thread=False, timeout=10)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA foreign_keys = ON;")
    return conn


def create_tables():
    conn = connect_db()
    cursor = conn.cursor()

    cursor.execute("""
    CREATE TABLE IF NOT EXISTS users (
        user_id TEXT PRIMARY KEY,
        email TEXT NOT NULL UNIQUE COLLATE NOCASE,
        password_hash TEXT NOT NULL,
        role TEXT NOT NULL DEFAULT 'STUDENT' CHECK (role IN ('STUDENT', 'INSTRUCTOR')),
        first_name TEXT,
        last_name TEXT,
        created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
    )
    """)

    cursor.execute("""
    CREATE TABLE IF NOT EXISTS classrooms (
        room_id TEXT PRIMARY KEY,
        gps_lat REAL NOT NULL,
        gps_lng REAL NOT NULL,
        current_qr_code TEXT,
        qr_updated_at TEXT
    )
    """)

    cursor.execute("""
    CREATE TABLE IF NOT EXISTS classes (
        class_id TEXT PRIMARY KEY,
        class_name TEXT NOT NULL,
        room_id TEXT NOT NULL,
        day_of_week INTEGER,             -- 0 = Monday
        start_time TEXT NOT NULL,        -- HH:MM
        end_time TEXT NOT NULL,          -- HH:MM
        instructor_id TEXT,
        FOREIGN KEY (room_id) REFERENCES classrooms(room_id),
        FOREIGN KEY (instructor_id) REFERENCES users(user_id)
    )
    """)

    cursor.execute("""
    CREATE TABLE IF NOT EXISTS class_enrollments (
        enrollment_id INTEGER PRIMARY KEY AUTOINCREMENT,
        student_id TEXT NOT NULL,
        class_id TEXT NOT NULL,
        enrolled_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
        FOREIGN KEY (student_id) REFERENCES users(user_id),
        FOREIGN KEY (class_id) REFERENCES classes(class_id),
        UNIQUE(student_id, class_id)
    )
    """)

    cursor.execute("""
    CREATE TABLE IF NOT EXISTS attendance_sessions (
        session_id TEXT PRIMARY KEY,
        student_id TEXT NOT NULL,
        class_id TEXT NOT NULL,
        room_id TEXT NOT NULL,
        status TEXT NOT NULL DEFAULT 'ACTIVE' CHECK (status IN ('ACTIVE', 'COMPLETED', 'ABANDONED')),
        started_at TEXT NOT NULL,        -- YYYY-MM-DD HH:MM:SS
        ended_at TEXT,
        expected_intervals INTEGER NOT NULL,
        FOREIGN KEY (class_id) REFERENCES classes(class_id),
        FOREIGN KEY (room_id) REFERENCES classrooms(room_id)
    )
    """)

    # At most one ACTIVE session per student.
    cursor.execute("""
    CREATE UNIQUE INDEX IF NOT EXISTS ux_attendance_sessions_one_active
    ON attendance_sessions(student_id)
    WHERE status = 'ACTIVE'
    """)

    cursor.execute("""
    CREATE TABLE IF NOT EXISTS heartbeats (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        session_id TEXT NOT NULL,
        gps_lat REAL NOT NULL,
        gps_lng REAL NOT NULL,
        received_at TEXT NOT NULL,       -- YYYY-MM-DD HH:MM:SS
        interval_number INTEGER NOT NULL,
        is_valid INTEGER NOT NULL DEFAULT 0,
        FOREIGN KEY (session_id) REFERENCES attendance_sessions(session_id)
    )
    """)
    cursor.execute("""
    CREATE INDEX IF NOT EXISTS ix_heartbeats_session
    ON heartbeats(session_id, received_at)
    """)

    cursor.execute("""
    CREATE TABLE IF NOT EXISTS attendance_records (
        student_id TEXT NOT NULL,
        class_id TEXT NOT NULL,
        date TEXT NOT NULL,              -- YYYY-MM-DD
        session_id TEXT,
        intervals_present INTEGER NOT NULL DEFAULT 0,
        total_intervals INTEGER NOT NULL,
        attendance_percentage REAL NOT NULL,
        status TEXT NOT NULL DEFAULT 'ABSENT' CHECK (status IN ('PRESENT', 'PARTIAL', 'ABSENT')),
        created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
        updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
        PRIMARY KEY (student_id, class_id, date),
        FOREIGN KEY (class_id) REFERENCES classes(class_id)
    )
    """)

    conn.commit()
    conn.close()


# -----------------------------
# Provisioning
# -----------------------------
def add_user(
    user_id: str,
    email: str,
    password: str,
    *,
    role: str = "STUDENT",
    first_name: str | None = None,
    last_name: str | None = None,
    conn: sqlite3.Connection | None = None,
) -> str:
    clean_email = email.strip()
    clean_password = password.strip()
    if not user_id.strip() or not clean_email or not clean_password:
        raise ValueError("User id, email and password are required.")

    owns_conn = conn is None
    active_conn = conn or connect_db()
    try:
        active_conn.execute(
            """
            INSERT INTO users (user_id, email, password_hash, role, first_name, last_name)
            VALUES (?, ?, ?, ?, ?, ?)
            """,
            (user_id.strip(), clean_email, _hash_password(clean_password), role, first_name, last_name),
        )
        if owns_conn:
            active_conn.commit()
        return user_id.strip()
    finally:
        if owns_conn:
            active_conn.close()


def add_room(room_id: str, gps_lat: float, gps_lng: float, *, conn: sqlite3.Connection | None = None) -> str:
    if "_" in room_id:
        raise ValueError("Room ids may not contain '_'; it delimits rotating codes.")

    owns_conn = conn is None
    active_conn = conn or connect_db()
    try:
        active_conn.execute(
            """
            INSERT INTO classrooms (room_id, gps_lat, gps_lng)
            VALUES (?, ?, ?)
            """,
            (room_id, float(gps_lat), float(gps_lng)),
        )
        if owns_conn:
            active_conn.commit()
        return room_id
    finally:
        if owns_conn:
            active_conn.close()


def add_class(
    class_id: str,
    class_name: str,
    room_id: str,
    *,
    day_of_week: int | None,
    start_time: str,
    end_time: str,
    instructor_id: str | None = None,
    conn: sqlite3.Connection | None = None,
) -> str:
    owns_conn = conn is None
    active_conn = conn or connect_db()
    try:
        active_conn.execute(
            """
            INSERT INTO classes (class_id, class_name, room_id, day_of_week, start_time, end_time, instructor_id)
            VALUES (?, ?, ?, ?, ?, ?, ?)
            """,
            (class_id, class_name, room_id, day_of_week, start_time, end_time, instructor_id),
        )
        if owns_conn:
            active_conn.commit()
        return class_id
    finally:
        if owns_conn:
            active_conn.close()


def enroll_student(student_id: str, class_id: str, *, conn: sqlite3.Connection | None = None) -> None:
    owns_conn = conn is None
    active_conn = conn or connect_db()
    try:
        active_conn.execute(
            """
            INSERT OR IGNORE INTO class_enrollments (student_id, class_id)
            VALUES (?, ?)
            """,
            (student_id, class_id),
        )
        if owns_conn:
            active_conn.commit()
    finally:
        if owns_conn:
            active_conn.close()


def seed_demo_data(now: datetime | None = None) -> None:
    """
    Insert the demo campus: three rooms, one instructor, one student and two
    classes on today's weekday, one already running and one about to start.
    Safe to call repeatedly.
    """
    marker = now or datetime.now()
    conn = connect_db()
    cur = conn.cursor()

    cur.execute("SELECT 1 FROM users WHERE user_id = ?", ("student_1",))
    if cur.fetchone():
        conn.close()
        return

    for room_id, lat, lng in (
        ("ROOM101", 33.7756, -84.3963),
        ("ROOM102", 33.7758, -84.3965),
        ("ROOM201", 33.7760, -84.3967),
    ):
        add_room(room_id, lat, lng, conn=conn)

    add_user(
        "instructor_1", "instructor@example.edu", "instructor123",
        role="INSTRUCTOR", first_name="John", last_name="Smith", conn=conn,
    )
    add_user(
        "student_1", "student@example.edu", "student123",
        role="STUDENT", first_name="Jane", last_name="Doe", conn=conn,
    )

    running_start = marker - timedelta(minutes=10)
    upcoming_start = marker + timedelta(minutes=10)
    for class_id, class_name, start in (
        ("BIO101_001", "Introduction to Biology - Section 001", running_start),
        ("CHEM201_003", "Organic Chemistry - Section 003", upcoming_start),
    ):
        add_class(
            class_id,
            class_name,
            "ROOM101",
            day_of_week=marker.weekday(),
            start_time=start.strftime("%H:%M"),
            end_time=(start + timedelta(minutes=90)).strftime("%H:%M"),
            instructor_id="instructor_1",
            conn=conn,
        )
        enroll_student("student_1", class_id, conn=conn)

    conn.commit()
    conn.close()
    logger.info("Demo data seeded")


# -----------------------------
# Lookups
# -----------------------------
def get_room(room_id: str, *, conn: sqlite3.Connection | None = None) -> dict[str, Any] | None:
    owns_conn = conn is None
    active_conn = conn or connect_db()
    try:
        row = active_conn.execute(
            """
            SELECT room_id, gps_lat, gps_lng, current_qr_code, qr_updated_at
            FROM classrooms
            WHERE room_id = ?
            """,
            (room_id,),
        ).fetchone()
        return dict(row) if row else None
    finally:
        if owns_conn:
            active_conn.close()


def list_room_ids(*, conn: sqlite3.Connection | None = None) -> list[str]:
    owns_conn = conn is None
    active_conn = conn or connect_db()
    try:
        rows = active_conn.execute("SELECT room_id FROM classrooms ORDER BY room_id").fetchall()
        return [str(r["room_id"]) for r in rows]
    finally:
        if owns_conn:
            active_conn.close()


def set_room_code(
    room_id: str,
    code: str,
    issued_at: datetime,
    *,
    conn: sqlite3.Connection | None = None,
) -> None:
    owns_conn = conn is None
    active_conn = conn or connect_db()
    try:
        active_conn.execute(
            """
            UPDATE classrooms
            SET current_qr_code = ?,
                qr_updated_at = ?
            WHERE room_id = ?
            """,
            (code, format_timestamp(issued_at), room_id),
        )
        if owns_conn:
            active_conn.commit()
    finally:
        if owns_conn:
            active_conn.close()


def get_class(class_id: str, *, conn: sqlite3.Connection | None = None) -> dict[str, Any] | None:
    owns_conn = conn is None
    active_conn = conn or connect_db()
    try:
        row = active_conn.execute(
            """
            SELECT class_id, class_name, room_id, day_of_week, start_time, end_time, instructor_id
            FROM classes
            WHERE class_id = ?
            """,
            (class_id,),
        ).fetchone()
        return dict(row) if row else None
    finally:
        if owns_conn:
            active_conn.close()


def is_enrolled(student_id: str, class_id: str, *, conn: sqlite3.Connection | None = None) -> bool:
    owns_conn = conn is None
    active_conn = conn or connect_db()
    try:
        row = active_conn.execute(
            """
            SELECT 1
            FROM class_enrollments
            WHERE student_id = ? AND class_id = ?
            """,
            (student_id, class_id),
        ).fetchone()
        return row is not None
    finally:
        if owns_conn:
            active_conn.close()


def get_student_classes_in_room(
    student_id: str,
    room_id: str,
    day_of_week: int,
    *,
    conn: sqlite3.Connection | None = None,
) -> list[dict[str, Any]]:
    owns_conn = conn is None
    active_conn = conn or connect_db()
    try:
        rows = active_conn.execute(
            """
            SELECT
                c.class_id,
                c.class_name,
                c.start_time,
                c.end_time,
                TRIM(COALESCE(u.first_name, '') || ' ' || COALESCE(u.last_name, '')) AS instructor_name
            FROM classes c
            JOIN class_enrollments e ON e.class_id = c.class_id
            LEFT JOIN users u ON u.user_id = c.instructor_id
            WHERE c.room_id = ?
              AND e.student_id = ?
              AND c.day_of_week = ?
            ORDER BY c.start_time ASC
            """,
            (room_id, student_id, day_of_week),
        ).fetchall()
        return [dict(r) for r in rows]
    finally:
        if owns_conn:
            active_conn.close()


# -----------------------------
# Users
# -----------------------------
def verify_user_credentials(email: str, password: str) -> dict | None:
    clean_email = email.strip()
    clean_password = password.strip()
    if not clean_email or not clean_password:
        return None

    conn = connect_db()
    row = conn.execute(
        """
        SELECT user_id, email, password_hash, role, first_name, last_name
        FROM users
        WHERE email = ? COLLATE NOCASE
        """,
        (clean_email,),
    ).fetchone()
    conn.close()

    if not row:
        return None

    if not _verify_password(clean_password, row["password_hash"]):
        return None

    return {
        "user_id": row["user_id"],
        "email": row["email"],
        "role": row["role"],
        "first_name": row["first_name"],
        "last_name": row["last_name"],
    }
