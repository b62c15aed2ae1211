"""
Pickup locations: opening hours, time slots and the check used by checkout.

Hours are wall-clock HH:MM strings compared in UTC, the same clock order schedules use.
"""
import logging
from datetime import date, datetime, timedelta
from typing import Any, Dict, List, Optional

from database import collection, now, to_object_id
from errors import ValidationError
from schemas import WEEKDAYS

logger = logging.getLogger("bloomshop.pickup")

COLLECTION = "pickuplocation"


def _minutes(clock: str) -> int:
    hour, minute = clock.split(":")
    return int(hour) * 60 + int(minute)


def _clock(minutes: int) -> str:
    return f"{minutes // 60:02d}:{minutes % 60:02d}"


def hours_for(location: Dict[str, Any], day: date) -> Optional[Dict[str, Any]]:
    hours = (location.get("businessHours") or {}).get(WEEKDAYS[day.weekday()])
    if not hours or not hours.get("isOpen"):
        return None
    return hours


def time_slots(location: Dict[str, Any], day: date, at: Optional[datetime] = None) -> List[str]:
    """
    Pickup times offered on `day`, every timeSlotInterval minutes from opening until closing.

    Slots earlier than the minimum notice and days past the booking horizon are left out.
    """
    hours = hours_for(location, day)
    settings = location.get("settings") or {}
    if hours is None or not settings.get("isActive", True):
        return []
    at = at or now()
    if day > at.date() + timedelta(days=settings.get("maxAdvanceDays", 30)):
        return []
    earliest = at + timedelta(hours=settings.get("minNoticeHours", 2))
    interval = settings.get("timeSlotInterval", 30)
    slots = []
    for minutes in range(_minutes(hours["open"]), _minutes(hours["close"]), interval):
        slot = datetime.combine(day, datetime.min.time(), tzinfo=at.tzinfo) + timedelta(minutes=minutes)
        if slot >= earliest:
            slots.append(_clock(minutes))
    return slots


def is_open_at(location: Dict[str, Any], at: datetime) -> bool:
    hours = hours_for(location, at.date())
    if hours is None:
        return False
    return hours["open"] <= at.strftime("%H:%M") <= hours["close"]


def availability(location: Dict[str, Any], at: Optional[datetime] = None) -> Dict[str, Any]:
    at = at or now()
    settings = location.get("settings") or {}
    return {
        "isActive": settings.get("isActive", True),
        "isOpenNow": is_open_at(location, at),
        "businessHours": location.get("businessHours") or {},
        "nextAvailableTime": at + timedelta(hours=settings.get("minNoticeHours", 2)),
    }


def check_for_order(location_id: str, shop_id: str) -> Dict[str, Any]:
    """Return the pickup location an order names, or raise ValidationError if it can't be used."""
    oid = to_object_id(location_id)
    location = collection(COLLECTION).find_one({"_id": oid}) if oid else None
    if location is None or str(location.get("shopId")) != str(shop_id):
        raise ValidationError(["delivery.pickupLocationId: unknown pickup location for this shop"])
    if not (location.get("settings") or {}).get("isActive", True):
        raise ValidationError(["delivery.pickupLocationId: pickup location is not accepting pickups"])
    return location
