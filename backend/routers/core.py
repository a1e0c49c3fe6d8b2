from fastapi import APIRouter

from backend.config import (
    ATTENDANCE_EARLY_MINUTES,
    ATTENDANCE_LATE_MINUTES,
    CODE_ROTATION_MINUTES,
    GEOFENCE_RADIUS_METERS,
    HEARTBEAT_INTERVAL_SECONDS,
    INTERVAL_MINUTES,
    PARTIAL_THRESHOLD,
    PRESENT_THRESHOLD,
    SESSION_TOKEN_TTL_SECONDS,
    STALE_SESSION_MINUTES,
    SWEEP_INTERVAL_SECONDS,
)
from backend.services.jobs import get_jobs_status

router = APIRouter()


@router.get("/health")
def health():
    return {"status": "ok"}


@router.get("/config/attendance")
def attendance_config():
    return {
        "code_rotation_minutes": CODE_ROTATION_MINUTES,
        "session_token_ttl_seconds": SESSION_TOKEN_TTL_SECONDS,
        "geofence_radius_meters": GEOFENCE_RADIUS_METERS,
        "interval_minutes": INTERVAL_MINUTES,
        "heartbeat_interval_seconds": HEARTBEAT_INTERVAL_SECONDS,
        "attendance_early_minutes": ATTENDANCE_EARLY_MINUTES,
        "attendance_late_minutes": ATTENDANCE_LATE_MINUTES,
        "present_threshold": PRESENT_THRESHOLD,
        "partial_threshold": PARTIAL_THRESHOLD,
        "stale_session_minutes": STALE_SESSION_MINUTES,
        "sweep_interval_seconds": SWEEP_INTERVAL_SECONDS,
    }


@router.get("/jobs/status")
def jobs_status():
    return get_jobs_status()
