import logging
import threading
from datetime import datetime
from typing import Any, Callable

from backend.config import CODE_ROTATION_MINUTES, ENABLE_BACKGROUND_JOBS, SWEEP_INTERVAL_SECONDS
from backend.services.rotating_codes import rotate_room_codes
from database.attendance import sweep_abandoned_sessions

logger = logging.getLogger(__name__)

# -----------------------------
# Job Status (in-memory)
# -----------------------------
STATUS_LOCK = threading.Lock()
_STOP_EVENT = threading.Event()
_THREADS: dict[str, threading.Thread] = {}

JOB_STATUS: dict[str, dict[str, Any]] = {
    "code_rotation": {
        "state": "idle",          # idle | running | success | failed
        "interval_seconds": CODE_ROTATION_MINUTES * 60,
        "last_started_at": None,  # ISO string
        "last_finished_at": None, # ISO string
        "last_result": None,
        "message": "",
        "runs": 0,
    },
    "abandonment_sweep": {
        "state": "idle",
        "interval_seconds": SWEEP_INTERVAL_SECONDS,
        "last_started_at": None,
        "last_finished_at": None,
        "last_result": None,
        "message": "",
        "runs": 0,
    },
}


def _run_tracked(name: str, fn: Callable[[], Any]) -> Any:
    """Run one job iteration and record its outcome; exceptions are recorded, not raised."""
    with STATUS_LOCK:
        JOB_STATUS[name]["state"] = "running"
        JOB_STATUS[name]["last_started_at"] = datetime.now().isoformat(timespec="seconds")
        JOB_STATUS[name]["message"] = f"{name} started..."

    try:
        result = fn()
    except Exception as e:
        logger.exception("Background job %s failed", name)
        with STATUS_LOCK:
            JOB_STATUS[name]["state"] = "failed"
            JOB_STATUS[name]["last_finished_at"] = datetime.now().isoformat(timespec="seconds")
            JOB_STATUS[name]["message"] = f"{name} failed: {e}"
            JOB_STATUS[name]["runs"] += 1
        return None

    with STATUS_LOCK:
        JOB_STATUS[name]["state"] = "success"
        JOB_STATUS[name]["last_finished_at"] = datetime.now().isoformat(timespec="seconds")
        JOB_STATUS[name]["last_result"] = result
        JOB_STATUS[name]["message"] = f"{name} completed"
        JOB_STATUS[name]["runs"] += 1
    return result


def run_code_rotation() -> int | None:
    return _run_tracked("code_rotation", lambda: rotate_room_codes(datetime.now()))


def run_abandonment_sweep() -> dict[str, Any] | None:
    return _run_tracked("abandonment_sweep", lambda: sweep_abandoned_sessions(datetime.now()))


def _loop(name: str, interval_seconds: int, fn: Callable[[], Any], *, run_immediately: bool) -> None:
    if run_immediately:
        fn()
    while not _STOP_EVENT.wait(interval_seconds):
        fn()
    logger.info("Background job %s stopped", name)


def start_background_jobs() -> bool:
    """
    Start the code-rotation and abandonment-sweep loops.

    Rotation runs once immediately, then every rotation period; the sweep runs
    on its own cadence. Returns False when jobs are disabled or already running.
    """
    if not ENABLE_BACKGROUND_JOBS:
        logger.info("Background jobs disabled by configuration")
        return False
    if any(t.is_alive() for t in _THREADS.values()):
        return False

    _STOP_EVENT.clear()
    loops = (
        ("code_rotation", CODE_ROTATION_MINUTES * 60, run_code_rotation, True),
        ("abandonment_sweep", SWEEP_INTERVAL_SECONDS, run_abandonment_sweep, False),
    )
    for name, interval, fn, run_immediately in loops:
        thread = threading.Thread(
            target=_loop,
            args=(name, interval, fn),
            kwargs={"run_immediately": run_immediately},
            name=f"rollcall-{name}",
            daemon=True,
        )
        _THREADS[name] = thread
        thread.start()
    logger.info("Background jobs started")
    return True


def stop_background_jobs(timeout: float = 5.0) -> None:
    _STOP_EVENT.set()
    for thread in _THREADS.values():
        thread.join(timeout=timeout)
    _THREADS.clear()


def get_jobs_status() -> dict[str, dict[str, Any]]:
    with STATUS_LOCK:
        out = {name: dict(status) for name, status in JOB_STATUS.items()}
    for name, status in out.items():
        thread = _THREADS.get(name)
        status["alive"] = bool(thread and thread.is_alive())
    return out
