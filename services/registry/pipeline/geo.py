"""
Geographic primitives for the sweep: territories, bounding boxes, grid
cells, geohash encoding and great-circle distance.

Each territory defines:
  - name, slug, ISO country code, default locale
  - lat/lng bounding box covering the whole ingestion territory

Grid cells are derived deterministically from (bbox, step) and never
persisted. Adjacent cells share their boundary coordinate exactly and the
outermost cells are clipped to the box, so the union of cells is the box.
"""

import math
from dataclasses import dataclass
from typing import Any, Iterator, Optional

EARTH_RADIUS_M = 6_371_000.0

# km per degree, used for coarse radius estimates (mid-latitude Europe)
KM_PER_DEG_LAT = 111.0
KM_PER_DEG_LNG = 85.0

_GEOHASH_BASE32 = "0123456789bcdefghjkmnpqrstuvwxyz"


@dataclass(frozen=True)
class BoundingBox:
    """Geographic bounding box (lat/lng, degrees)."""
    lat_min: float
    lat_max: float
    lng_min: float
    lng_max: float

    def __post_init__(self):
        if not (-90.0 <= self.lat_min < self.lat_max <= 90.0):
            raise ValueError(f"Invalid latitude range: {self.lat_min}..{self.lat_max}")
        if not (-180.0 <= self.lng_min < self.lng_max <= 180.0):
            raise ValueError(f"Invalid longitude range: {self.lng_min}..{self.lng_max}")

    def contains(self, lat: float, lng: float) -> bool:
        """Check if a point falls within this bounding box."""
        return (
            self.lat_min <= lat <= self.lat_max
            and self.lng_min <= lng <= self.lng_max
        )

    @property
    def center(self) -> tuple[float, float]:
        return ((self.lat_min + self.lat_max) / 2, (self.lng_min + self.lng_max) / 2)

    @classmethod
    def parse(cls, value: str) -> "BoundingBox":
        """Parse "south,west,north,east" (the Overpass ordering)."""
        parts = [p.strip() for p in value.split(",")]
        if len(parts) != 4:
            raise ValueError(f"Expected 'south,west,north,east', got {value!r}")
        south, west, north, east = (float(p) for p in parts)
        return cls(lat_min=south, lat_max=north, lng_min=west, lng_max=east)


@dataclass(frozen=True)
class GridCell:
    """One sub-rectangle of a sweep, addressed by (row, col) in row-major order."""
    row: int
    col: int
    bbox: BoundingBox

    @property
    def center(self) -> tuple[float, float]:
        return self.bbox.center

    def overpass_bbox(self) -> str:
        b = self.bbox
        return f"{b.lat_min},{b.lng_min},{b.lat_max},{b.lng_max}"

    def __str__(self) -> str:
        return f"cell[{self.row},{self.col}]({self.overpass_bbox()})"


@dataclass(frozen=True)
class TerritoryConfig:
    """Configuration for an ingestion territory."""
    name: str
    slug: str
    country_code: str
    locale: str
    search_address: str
    bbox: BoundingBox


TERRITORIES: dict[str, TerritoryConfig] = {
    "de": TerritoryConfig(
        name="Germany",
        slug="de",
        country_code="DE",
        locale="de",
        search_address="Deutschland",
        bbox=BoundingBox(lat_min=47.2, lat_max=55.1, lng_min=5.8, lng_max=15.1),
    ),
}


def get_territory(slug: str) -> TerritoryConfig:
    try:
        return TERRITORIES[slug.lower()]
    except KeyError:
        raise ValueError(
            f"Unknown territory {slug!r}; known: {', '.join(sorted(TERRITORIES))}"
        ) from None


# ---------------------------------------------------------------------------
# Grid
# ---------------------------------------------------------------------------

def _step_count(span: float, step: float) -> int:
    # Rounding guards against 1.0 / 0.5 == 2.0000000000000004
    return max(1, math.ceil(round(span / step, 9)))


def _edges(start: float, end: float, step: float) -> list[float]:
    count = _step_count(end - start, step)
    edges = [start + i * step for i in range(count)]
    edges.append(end)
    return edges


def generate_grid(bbox: BoundingBox, step: float) -> Iterator[GridCell]:
    """
    Yield the cells covering bbox at the given step, row-major from the
    south-west corner. Boundary cells are clipped to the box.
    """
    if step <= 0:
        raise ValueError(f"Grid step must be positive, got {step}")

    lat_edges = _edges(bbox.lat_min, bbox.lat_max, step)
    lng_edges = _edges(bbox.lng_min, bbox.lng_max, step)

    for row in range(len(lat_edges) - 1):
        for col in range(len(lng_edges) - 1):
            yield GridCell(
                row=row,
                col=col,
                bbox=BoundingBox(
                    lat_min=lat_edges[row],
                    lat_max=lat_edges[row + 1],
                    lng_min=lng_edges[col],
                    lng_max=lng_edges[col + 1],
                ),
            )


def grid_size(bbox: BoundingBox, step: float) -> int:
    return (
        _step_count(bbox.lat_max - bbox.lat_min, step)
        * _step_count(bbox.lng_max - bbox.lng_min, step)
    )


# ---------------------------------------------------------------------------
# Geohash / distance helpers
# ---------------------------------------------------------------------------

def encode_geohash(lat: float, lng: float, precision: int = 9) -> str:
    """Standard base32 geohash of a point."""
    lat_range = [-90.0, 90.0]
    lng_range = [-180.0, 180.0]
    chars: list[str] = []
    bit = 0
    ch = 0
    even = True

    while len(chars) < precision:
        if even:
            mid = (lng_range[0] + lng_range[1]) / 2
            if lng >= mid:
                ch |= 1 << (4 - bit)
                lng_range[0] = mid
            else:
                lng_range[1] = mid
        else:
            mid = (lat_range[0] + lat_range[1]) / 2
            if lat >= mid:
                ch |= 1 << (4 - bit)
                lat_range[0] = mid
            else:
                lat_range[1] = mid
        even = not even

        if bit < 4:
            bit += 1
        else:
            chars.append(_GEOHASH_BASE32[ch])
            bit = 0
            ch = 0

    return "".join(chars)


def parse_coordinates(lat: Any, lng: Any) -> Optional[tuple[float, float]]:
    """
    Provider coordinates as floats, or None when either value is missing,
    not numeric, or outside the valid lat/lng range.
    """
    try:
        lat_f = float(lat)
        lng_f = float(lng)
    except (TypeError, ValueError):
        return None
    # NaN fails both comparisons
    if not (-90.0 <= lat_f <= 90.0 and -180.0 <= lng_f <= 180.0):
        return None
    return lat_f, lng_f


def haversine_m(lat1: float, lng1: float, lat2: float, lng2: float) -> float:
    """Great-circle distance in meters."""
    phi1 = math.radians(lat1)
    phi2 = math.radians(lat2)
    dphi = math.radians(lat2 - lat1)
    dlmb = math.radians(lng2 - lng1)
    a = (
        math.sin(dphi / 2) ** 2
        + math.cos(phi1) * math.cos(phi2) * math.sin(dlmb / 2) ** 2
    )
    return 2 * EARTH_RADIUS_M * math.asin(math.sqrt(a))


def radius_km_for_box(bbox: BoundingBox) -> int:
    """Radius (km, rounded up) of a circle centred on bbox that reaches its edges."""
    span = max(
        (bbox.lat_max - bbox.lat_min) * KM_PER_DEG_LAT,
        (bbox.lng_max - bbox.lng_min) * KM_PER_DEG_LNG,
    )
    return max(1, math.ceil(span / 2))
