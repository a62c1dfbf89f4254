"""
Geographic helpers: distances, bounding boxes, polygons and a bucket index
for radius queries.
"""

import math
from dataclasses import dataclass, asdict
from typing import Dict, Iterable, List, Sequence, Tuple, TypeVar, Generic, Callable

EARTH_RADIUS_KM = 6371.0
KM_PER_DEGREE_LAT = 111.0

LatLng = Tuple[float, float]
Polygon = List[LatLng]

T = TypeVar("T")


def haversine_km(lat1: float, lng1: float, lat2: float, lng2: float) -> float:
    """Great-circle distance between two points in kilometers."""
    phi1 = math.radians(lat1)
    phi2 = math.radians(lat2)
    delta_phi = math.radians(lat2 - lat1)
    delta_lambda = math.radians(lng2 - lng1)

    a = math.sin(delta_phi / 2) ** 2 + math.cos(phi1) * math.cos(phi2) * math.sin(delta_lambda / 2) ** 2
    c = 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))

    return EARTH_RADIUS_KM * c


def km_per_degree_lng(lat: float) -> float:
    """Kilometers spanned by one degree of longitude at this latitude."""
    return max(KM_PER_DEGREE_LAT * math.cos(math.radians(lat)), 1e-6)


# ═══════════════════════════════════════════════════════════════════════════
# BOUNDING BOX
# ═══════════════════════════════════════════════════════════════════════════
@dataclass
class BoundingBox:
    """
    Geographic bounding box.

    All coordinates are in decimal degrees (WGS84).
    """
    min_lat: float
    min_lng: float
    max_lat: float
    max_lng: float

    @property
    def center(self) -> LatLng:
        return ((self.min_lat + self.max_lat) / 2, (self.min_lng + self.max_lng) / 2)

    @property
    def height_km(self) -> float:
        return (self.max_lat - self.min_lat) * KM_PER_DEGREE_LAT

    @property
    def width_km(self) -> float:
        return (self.max_lng - self.min_lng) * km_per_degree_lng(self.center[0])

    def contains(self, lat: float, lng: float) -> bool:
        """Check if a point is inside this bounding box."""
        return (self.min_lat <= lat <= self.max_lat and
                self.min_lng <= lng <= self.max_lng)

    def to_dict(self) -> Dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict) -> "BoundingBox":
        return cls(**data)

    @classmethod
    def from_points(cls, points: Iterable[LatLng]) -> "BoundingBox":
        """Smallest box enclosing every point."""
        points = list(points)
        if not points:
            raise ValueError("Cannot build a bounding box from no points")
        lats = [p[0] for p in points]
        lngs = [p[1] for p in points]
        return cls(min(lats), min(lngs), max(lats), max(lngs))

    @classmethod
    def from_center_and_radius(cls, lat: float, lng: float, radius_km: float) -> "BoundingBox":
        """Create a bounding box from a center point and radius."""
        lat_offset = radius_km / KM_PER_DEGREE_LAT
        lng_offset = radius_km / km_per_degree_lng(lat)
        return cls(lat - lat_offset, lng - lng_offset, lat + lat_offset, lng + lng_offset)


# ═══════════════════════════════════════════════════════════════════════════
# POLYGONS
# ═══════════════════════════════════════════════════════════════════════════
def point_in_polygon(lat: float, lng: float, polygon: Sequence[LatLng]) -> bool:
    """
    Ray-casting containment test.

    Points exactly on an edge may land on either side; the pipeline only
    needs a consistent answer, not a topologically exact one.
    """
    inside = False
    n = len(polygon)
    if n < 3:
        return False

    j = n - 1
    for i in range(n):
        lat_i, lng_i = polygon[i]
        lat_j, lng_j = polygon[j]
        if (lat_i > lat) != (lat_j > lat):
            cross_lng = lng_i + (lat - lat_i) * (lng_j - lng_i) / (lat_j - lat_i)
            if lng < cross_lng:
                inside = not inside
        j = i
    return inside


def point_in_any(lat: float, lng: float, polygons: Sequence[Polygon]) -> bool:
    return any(point_in_polygon(lat, lng, poly) for poly in polygons)


# ═══════════════════════════════════════════════════════════════════════════
# SPATIAL INDEX
# ═══════════════════════════════════════════════════════════════════════════
class SpatialIndex(Generic[T]):
    """
    Bucket grid over lat/lng for "everything within r km" queries.

    Cells are sized in kilometers at a reference latitude, the same way a
    regular analysis grid converts meters to degree steps. Queries scan the
    neighbouring cells and confirm with haversine.
    """

    def __init__(self, cell_km: float, reference_lat: float,
                 position: Callable[[T], LatLng]):
        self.cell_km = cell_km
        self.lat_step = cell_km / KM_PER_DEGREE_LAT
        self.lng_step = cell_km / km_per_degree_lng(reference_lat)
        self._position = position
        self._buckets: Dict[Tuple[int, int], List[T]] = {}
        self._size = 0

    def __len__(self) -> int:
        return self._size

    def _cell(self, lat: float, lng: float) -> Tuple[int, int]:
        return (int(math.floor(lat / self.lat_step)), int(math.floor(lng / self.lng_step)))

    def insert(self, item: T) -> None:
        lat, lng = self._position(item)
        self._buckets.setdefault(self._cell(lat, lng), []).append(item)
        self._size += 1

    def extend(self, items: Iterable[T]) -> None:
        for item in items:
            self.insert(item)

    def within(self, lat: float, lng: float, radius_km: float) -> List[Tuple[T, float]]:
        """All items within radius_km of the point, with their distances."""
        row, col = self._cell(lat, lng)
        lat_reach = int(math.ceil(radius_km / self.cell_km)) + 1
        # Longitude cells shrink away from the reference latitude
        lng_reach = int(math.ceil(
            radius_km / (km_per_degree_lng(lat) * self.lng_step)
        )) + 1

        found = []
        for r in range(row - lat_reach, row + lat_reach + 1):
            for c in range(col - lng_reach, col + lng_reach + 1):
                for item in self._buckets.get((r, c), ()):
                    ilat, ilng = self._position(item)
                    d = haversine_km(lat, lng, ilat, ilng)
                    if d <= radius_km:
                        found.append((item, d))
        return found

    def nearest(self, lat: float, lng: float, max_km: float) -> Tuple[T, float]:
        """Closest item within max_km, or (None, inf)."""
        best, best_d = None, float("inf")
        for item, d in self.within(lat, lng, max_km):
            if d < best_d:
                best, best_d = item, d
        return best, best_d
