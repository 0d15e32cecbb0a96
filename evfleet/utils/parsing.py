# evfleet/utils/parsing.py
from __future__ import annotations

import math
from typing import Optional

from evfleet.utils.geo import GeoPoint


def int_or_none(v) -> Optional[int]:
    if v is None:
        return None
    if isinstance(v, bool):
        return None
    if isinstance(v, int):
        return v
    if isinstance(v, float):
        return int(v) if math.isfinite(v) else None
    s = str(v).strip()
    if not s:
        return None
    try:
        return int(float(s))
    except ValueError:
        return None


def float_or_none(v) -> Optional[float]:
    if v is None or isinstance(v, bool):
        return None
    if isinstance(v, (int, float)):
        f = float(v)
    else:
        s = str(v).strip()
        if not s:
            return None
        try:
            f = float(s)
        except ValueError:
            return None
    return f if math.isfinite(f) else None


def str_or_none(v) -> Optional[str]:
    if v is None:
        return None
    s = str(v).strip()
    return s if s else None


def bool_or_none(val):
    """
    Safely parse a boolean-like value from JSON or form data.
    Returns:
      True / False / None
    Accepts:
      true/false, "true"/"false", "1"/"0", 1/0, "yes"/"no", "on"/"off"
    """
    if val is None:
        return None

    if isinstance(val, bool):
        return val

    if isinstance(val, (int, float)):
        return bool(val)

    if isinstance(val, str):
        v = val.strip().lower()
        if v in {"true", "1", "yes", "y", "on"}:
            return True
        if v in {"false", "0", "no", "n", "off"}:
            return False

    return None


def str_list(val) -> list[str]:
    """Accepts a list or a comma separated string; drops blanks."""
    if val is None:
        return []
    if isinstance(val, str):
        items = val.split(",")
    elif isinstance(val, (list, tuple, set)):
        items = val
    else:
        return []
    out = []
    for item in items:
        s = str_or_none(item)
        if s:
            out.append(s)
    return out


def parse_location(val) -> tuple[Optional[GeoPoint], Optional[str]]:
    """
    Parse a location payload into a GeoPoint.

    Accepts {"latitude": .., "longitude": ..}, {"lat": .., "lng": ..} or a
    [lat, lng] pair. Returns (point, error); (None, None) when nothing was sent.
    """
    if val is None:
        return None, None

    if isinstance(val, dict):
        lat = float_or_none(val.get("latitude", val.get("lat")))
        lng = float_or_none(val.get("longitude", val.get("lng")))
        address = str_or_none(val.get("address"))
    elif isinstance(val, (list, tuple)) and len(val) == 2:
        lat = float_or_none(val[0])
        lng = float_or_none(val[1])
        address = None
    else:
        return None, "location must be an object with latitude/longitude"

    if lat is None or lng is None:
        return None, "location requires numeric latitude and longitude"
    if not -90.0 <= lat <= 90.0:
        return None, "latitude must be between -90 and 90"
    if not -180.0 <= lng <= 180.0:
        return None, "longitude must be between -180 and 180"

    return GeoPoint(lat, lng, address), None
