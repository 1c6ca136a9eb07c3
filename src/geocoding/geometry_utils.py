import math
from dataclasses import asdict, dataclass

from ml_config import EARTH_RADIUS_KM


@dataclass(frozen=True)
class ReferenceLocation:
    name: str
    country: str
    latitude: float
    longitude: float
    rate_category: str

    def to_dict(self):
        return asdict(self)

    @classmethod
    def from_dict(cls, d):
        return cls(
            name=str(d['name']),
            country=str(d.get('country') or 'UNK'),
            latitude=float(d['latitude']),
            longitude=float(d['longitude']),
            rate_category=str(d.get('rate_category') or ''),
        )


def haversine(lat1, lng1, lat2, lng2):
    """Great-circle distance in km"""
    dLat = math.radians(lat2 - lat1)
    dLng = math.radians(lng2 - lng1)
    a = math.sin(dLat / 2) ** 2 + \
        math.cos(math.radians(lat1)) * math.cos(math.radians(lat2)) * \
        math.sin(dLng / 2) ** 2
    c = 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))
    return EARTH_RADIUS_KM * c


def find_nearest(reference_set, point, country=None):
    """
    Linear scan for the reference location closest to point {'lat', 'lng'}.
    Returns (location, distance_km), or None for an empty (filtered) set.
    The first location wins on equal distances.
    """
    nearest = None
    min_distance = math.inf

    for loc in reference_set:
        if country and loc.country.upper() != country.upper():
            continue
        dist = haversine(loc.latitude, loc.longitude, point['lat'], point['lng'])
        if dist < min_distance:
            min_distance = dist
            nearest = loc

    if nearest is None:
        return None
    return nearest, min_distance
