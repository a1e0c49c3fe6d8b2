from datetime import datetime

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field

from backend.security import require_user
from database.attendance import (
    AttendanceError,
    end_attendance_session,
    get_active_session,
    get_attendance_history,
    get_attendance_record,
    record_heartbeat,
    scan_room_code,
    start_attendance_session,
)

router = APIRouter()


class GpsCoords(BaseModel):
    lat: float = Field(ge=-90, le=90)
    lng: float = Field(ge=-180, le=180)

    def as_point(self) -> dict:
        return {"lat": self.lat, "lng": self.lng}


class ScanRequest(BaseModel):
    qr_code: str = Field(min_length=1)
    gps_coords: GpsCoords


class StartRequest(BaseModel):
    session_token: str = Field(min_length=1)
    class_id: str = Field(min_length=1)


class HeartbeatRequest(BaseModel):
    session_id: str = Field(min_length=1)
    gps_coords: GpsCoords


class EndRequest(BaseModel):
    session_id: str = Field(min_length=1)


def to_http_error(exc: AttendanceError) -> HTTPException:
    return HTTPException(
        status_code=exc.status_code,
        detail={"reason": exc.reason, "message": exc.message, **exc.extra},
    )


@router.post("/classes/scan")
def scan(payload: ScanRequest, user: dict = Depends(require_user)):
    try:
        return scan_room_code(user["sub"], payload.qr_code.strip(), payload.gps_coords.as_point(), datetime.now())
    except AttendanceError as exc:
        raise to_http_error(exc)


@router.post("/attendance/start")
def start(payload: StartRequest, user: dict = Depends(require_user)):
    try:
        return start_attendance_session(
            user["sub"],
            payload.session_token.strip(),
            payload.class_id.strip(),
            datetime.now(),
        )
    except AttendanceError as exc:
        raise to_http_error(exc)


@router.post("/attendance/heartbeat")
def heartbeat(payload: HeartbeatRequest, user: dict = Depends(require_user)):
    try:
        return record_heartbeat(user["sub"], payload.session_id.strip(), payload.gps_coords.as_point(), datetime.now())
    except AttendanceError as exc:
        raise to_http_error(exc)


@router.post("/attendance/end")
def end(payload: EndRequest, user: dict = Depends(require_user)):
    try:
        return end_attendance_session(user["sub"], payload.session_id.strip(), datetime.now())
    except AttendanceError as exc:
        raise to_http_error(exc)


@router.get("/attendance/active")
def active_session(user: dict = Depends(require_user)):
    session = get_active_session(user["sub"])
    if not session:
        return {"active": False}
    return {"active": True, **session}


@router.get("/attendance/history")
def history(user: dict = Depends(require_user)):
    return get_attendance_history(user["sub"])


@router.get("/attendance/record/{class_id}/{date}")
def record(class_id: str, date: str, user: dict = Depends(require_user)):
    # date format: YYYY-MM-DD
    row = get_attendance_record(user["sub"], class_id, date)
    if not row:
        raise HTTPException(status_code=404, detail="Attendance record not found.")
    return row
