"""
Utility functions for the field visits API
"""
import hashlib
import json
import math
from math import radians, sin, cos, sqrt, atan2


def calculate_distance(lat1, lon1, lat2, lon2):
    """
    Calculate the great-circle distance between two points
    on the Earth (specified in decimal degrees)
    Returns distance in meters
    """
    # Convert decimal degrees to radians
    lon1, lat1, lon2, lat2 = map(radians, [lon1, lat1, lon2, lat2])

    # Haversine formula
    dlon = lon2 - lon1
    dlat = lat2 - lat1
    a = sin(dlat/2)**2 + cos(lat1) * cos(lat2) * sin(dlon/2)**2
    c = 2 * atan2(sqrt(a), sqrt(1-a))
    r = 6371000  # Radius of earth in meters
    return c * r


def coerce_page(value, default=1):
    """Parse a 1-indexed page number; anything invalid or below 1 becomes 1."""
    try:
        page = int(value)
    except (TypeError, ValueError):
        return default
    return page if page >= 1 else 1


def total_pages(count, page_size):
    if page_size <= 0:
        raise ValueError("page_size must be positive")
    return math.ceil(count / page_size)


def paginate_list(items, page=1, page_size=20):
    """Slice a list for a 1-indexed page"""
    start = (page - 1) * page_size
    end = start + page_size
    return items[start:end]


def filter_fingerprint(params):
    """Stable short hash of filter parameters, ignoring empty values."""
    cleaned = {k: str(v) for k, v in params.items() if v not in (None, '')}
    payload = json.dumps(cleaned, sort_keys=True)
    return hashlib.sha1(payload.encode('utf-8')).hexdigest()[:12]
