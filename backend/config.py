import os
import secrets
from pathlib import Path

BASE_DIR = Path(__file__).resolve().parents[1]

DB_PATH = Path(os.getenv("ROLLCALL_DB_PATH", BASE_DIR / "database" / "rollcall.db"))

# Three independent secrets: rotating-code tags, scan session tokens, bearer access tokens.
QR_SECRET = os.getenv("ROLLCALL_QR_SECRET", "rollcall-qr-secret-change-me").strip()
SESSION_TOKEN_SECRET = os.getenv(
    "ROLLCALL_SESSION_TOKEN_SECRET", "rollcall-session-secret-change-me"
).strip()
SIGNING_KEY = os.getenv("ROLLCALL_SIGNING_KEY", "").strip() or secrets.token_urlsafe(32)
AUTH_TOKEN_TTL_SECONDS = int(os.getenv("ROLLCALL_AUTH_TOKEN_TTL_SECONDS", "43200"))


def _parse_bool(value: str | None, fallback: bool) -> bool:
    if value is None:
        return fallback
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    return fallback


def _parse_csv(value: str | None, fallback: list[str]) -> list[str]:
    if not value:
        return fallback
    parsed = [item.strip() for item in value.split(",") if item.strip()]
    return parsed or fallback


def _parse_int(value: str | None, fallback: int, *, minimum: int = 0) -> int:
    if not value:
        return fallback
    try:
        return max(minimum, int(value))
    except ValueError:
        return fallback


CORS_ALLOW_ORIGINS = _parse_csv(
    os.getenv("ROLLCALL_CORS_ALLOW_ORIGINS"),
    ["http://localhost:5173", "http://127.0.0.1:5173"],
)
CORS_ALLOW_METHODS = _parse_csv(
    os.getenv("ROLLCALL_CORS_ALLOW_METHODS"),
    ["GET", "POST", "OPTIONS"],
)
CORS_ALLOW_HEADERS = _parse_csv(
    os.getenv("ROLLCALL_CORS_ALLOW_HEADERS"),
    ["Authorization", "Content-Type", "Accept"],
)
CORS_ALLOW_CREDENTIALS = _parse_bool(os.getenv("ROLLCALL_CORS_ALLOW_CREDENTIALS"), True)

LOG_LEVEL = (os.getenv("ROLLCALL_LOG_LEVEL", "INFO").strip() or "INFO").upper()
ENABLE_BACKGROUND_JOBS = _parse_bool(os.getenv("ROLLCALL_ENABLE_BACKGROUND_JOBS"), True)
SEED_DEMO_DATA = _parse_bool(os.getenv("ROLLCALL_SEED_DEMO_DATA"), False)

# Rotating codes
CODE_ROTATION_MINUTES = _parse_int(os.getenv("ROLLCALL_CODE_ROTATION_MINUTES"), 10, minimum=1)

# Scan handshake
SESSION_TOKEN_TTL_SECONDS = _parse_int(os.getenv("ROLLCALL_SESSION_TOKEN_TTL_SECONDS"), 300, minimum=1)
GEOFENCE_RADIUS_METERS = float(os.getenv("ROLLCALL_GEOFENCE_RADIUS_METERS", "30"))

# Attendance sessions
INTERVAL_MINUTES = _parse_int(os.getenv("ROLLCALL_INTERVAL_MINUTES"), 5, minimum=1)
HEARTBEAT_INTERVAL_SECONDS = _parse_int(os.getenv("ROLLCALL_HEARTBEAT_INTERVAL_SECONDS"), 120, minimum=1)
ATTENDANCE_EARLY_MINUTES = _parse_int(os.getenv("ROLLCALL_ATTENDANCE_EARLY_MINUTES"), 15)
ATTENDANCE_LATE_MINUTES = _parse_int(os.getenv("ROLLCALL_ATTENDANCE_LATE_MINUTES"), 20)
PRESENT_THRESHOLD = _parse_int(os.getenv("ROLLCALL_PRESENT_THRESHOLD"), 75)
PARTIAL_THRESHOLD = _parse_int(os.getenv("ROLLCALL_PARTIAL_THRESHOLD"), 50)

# Abandonment sweep
STALE_SESSION_MINUTES = _parse_int(os.getenv("ROLLCALL_STALE_SESSION_MINUTES"), 10, minimum=1)
SWEEP_INTERVAL_SECONDS = _parse_int(os.getenv("ROLLCALL_SWEEP_INTERVAL_SECONDS"), 60, minimum=1)
