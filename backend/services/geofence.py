import logging
import math
import sqlite3

from backend.config import GEOFENCE_RADIUS_METERS
from backend.security import GeoPoint
from database.db import get_room

logger = logging.getLogger(__name__)

EARTH_RADIUS_METERS = 6_371_000


def distance_meters(a: GeoPoint, b: GeoPoint) -> float:
    """Great-circle (haversine) distance between two points."""
    phi1, phi2 = math.radians(a["lat"]), math.radians(b["lat"])
    dphi = math.radians(b["lat"] - a["lat"])
    dlambda = math.radians(b["lng"] - a["lng"])
    h = math.sin(dphi / 2) ** 2 + math.cos(phi1) * math.cos(phi2) * math.sin(dlambda / 2) ** 2
    h = min(1.0, max(0.0, h))
    return EARTH_RADIUS_METERS * 2 * math.atan2(math.sqrt(h), math.sqrt(1 - h))


def is_within_room(
    point: GeoPoint,
    room_id: str,
    *,
    conn: sqlite3.Connection | None = None,
) -> bool:
    """
    True iff `point` lies within the room's acceptance radius.

    Fails closed: an unknown room or a storage error yields False, never an
    exception.
    """
    try:
        room = get_room(room_id, conn=conn)
    except sqlite3.Error:
        logger.exception("Geofence lookup failed for room %s", room_id)
        return False

    if room is None:
        logger.info("Geofence check against unknown room %s", room_id)
        return False

    try:
        distance = distance_meters(point, {"lat": room["gps_lat"], "lng": room["gps_lng"]})
    except (KeyError, TypeError, ValueError):
        logger.warning("Geofence check received a malformed point for room %s", room_id)
        return False

    return distance <= GEOFENCE_RADIUS_METERS
