"""
Geographic utility functions.

Great-circle distance between two coordinates, used by the visibility gate,
the reconciler's distance display and the distance-fee quote.
"""

from dataclasses import dataclass
from math import asin, cos, radians, sin, sqrt

EARTH_RADIUS_KM = 6371.0


@dataclass(frozen=True)
class Coordinates:
    """A latitude/longitude pair in decimal degrees."""

    lat: float
    lon: float

    def __str__(self) -> str:
        return f"({self.lat:.5f}, {self.lon:.5f})"


def distance_km(a: Coordinates, b: Coordinates) -> float:
    """
    Calculate distance between two points in kilometres using the Haversine formula.

    Returns 0.0 for identical points. NaN coordinates propagate as NaN; callers
    must guard against missing positions themselves.
    """
    lat1, lon1, lat2, lon2 = map(radians, [float(a.lat), float(a.lon), float(b.lat), float(b.lon)])
    dlat = lat2 - lat1
    dlon = lon2 - lon1
    h = sin(dlat / 2) ** 2 + cos(lat1) * cos(lat2) * sin(dlon / 2) ** 2
    # Float error can push h a hair above 1 for antipodal points
    if h > 1.0:
        h = 1.0
    return 2 * EARTH_RADIUS_KM * asin(sqrt(h))
