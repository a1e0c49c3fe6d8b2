from fastapi import APIRouter, Depends, HTTPException

from backend.security import require_instructor
from backend.services.jobs import run_abandonment_sweep, run_code_rotation
from backend.services.rotating_codes import expire_at_for
from database.db import get_room

router = APIRouter(dependencies=[Depends(require_instructor)])


@router.post("/admin/codes/rotate")
def rotate_codes():
    rotated = run_code_rotation()
    if rotated is None:
        raise HTTPException(status_code=500, detail="Code rotation failed. Check server logs.")
    return {"ok": True, "message": "Room codes rotated.", "rooms": rotated}


@router.get("/admin/rooms/{room_id}/code")
def room_code(room_id: str):
    room = get_room(room_id)
    if not room:
        raise HTTPException(status_code=404, detail="Room not found.")

    code = room["current_qr_code"]
    expires_at = expire_at_for(code) if code else None
    return {
        "room_id": room["room_id"],
        "code": code,
        "issued_at": room["qr_updated_at"],
        "valid_until": expires_at.isoformat(timespec="seconds") if expires_at else None,
    }


@router.post("/admin/sessions/sweep")
def sweep_sessions():
    stats = run_abandonment_sweep()
    if stats is None:
        raise HTTPException(status_code=500, detail="Abandonment sweep failed. Check server logs.")
    return {
        "ok": True,
        "message": "Abandonment sweep completed.",
        **stats,
    }
