import math
from datetime import datetime, timezone

from bson import ObjectId
from bson.errors import InvalidId


def utcnow():
    return datetime.now(timezone.utc)


def now_iso():
    return utcnow().isoformat()


def safe_oid(oid_str: str):
    try:
        return ObjectId(oid_str)
    except (InvalidId, TypeError):
        return None


def ensure_aware(dt):
    """Mongo hands back naive datetimes unless told otherwise; treat them as UTC."""
    if dt is None:
        return None
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt


def parse_iso_datetime(value: str):
    """
    Accepts ISO strings, optionally ending with 'Z'. Returns aware datetime or None.
    """
    if not isinstance(value, str):
        return None
    try:
        if value.endswith("Z"):
            value = value[:-1] + "+00:00"
        return ensure_aware(datetime.fromisoformat(value))
    except ValueError:
        return None


def as_datetime(value):
    if isinstance(value, datetime):
        return ensure_aware(value)
    if isinstance(value, str):
        return parse_iso_datetime(value)
    return None


def iso(value):
    if isinstance(value, datetime):
        return ensure_aware(value).isoformat()
    return value


def parse_number(val):
    if val is None or val == "" or isinstance(val, bool):
        return None
    try:
        num = float(val)
    except (TypeError, ValueError):
        return None
    # "nan" and "inf" parse as floats but are never usable values
    return num if math.isfinite(num) else None
