"""
Planar/spherical geometry primitives for the plan pipeline.

Only what the recommendation code needs:
  - centroid of a Point / LineString / Polygon (and Multi* variants)
  - "is this point within N miles of that point" (haversine)
  - point-in-polygon (ray casting, holes respected)

Coordinates are GeoJSON order: (longitude, latitude). Centroids are
computed in raw degrees, which is fine at neighborhood scale.
"""

import math
from typing import Iterable, List, Optional, Sequence, Tuple

Coord = Tuple[float, float]

# Mean Earth radius used by turf/GeoJSON tooling, so distances line up
# with what the web map shows.
EARTH_RADIUS_MILES = 3958.7613

# Collinearity tolerance for "point lies on a ring edge"
_EDGE_EPSILON = 1e-12

POINT_TYPES = ("Point", "MultiPoint")
LINE_TYPES = ("LineString", "MultiLineString")
POLYGON_TYPES = ("Polygon", "MultiPolygon")


# =============================================================================
# DISTANCE
# =============================================================================

def haversine_miles(a: Sequence[float], b: Sequence[float]) -> float:
    """Great-circle distance in miles between two (lon, lat) points."""
    lon1, lat1 = math.radians(a[0]), math.radians(a[1])
    lon2, lat2 = math.radians(b[0]), math.radians(b[1])

    dlat = lat2 - lat1
    dlon = lon2 - lon1

    h = (math.sin(dlat / 2) ** 2
         + math.cos(lat1) * math.cos(lat2) * math.sin(dlon / 2) ** 2)
    return EARTH_RADIUS_MILES * 2 * math.asin(math.sqrt(min(1.0, h)))


def within_radius(origin: Sequence[float], point: Sequence[float], radius_miles: float) -> bool:
    """True if *point* falls inside the circular buffer of *radius_miles* around *origin*."""
    return haversine_miles(origin, point) <= radius_miles


# =============================================================================
# CENTROIDS
# =============================================================================

def _xy(c: Sequence[float]) -> Coord:
    return float(c[0]), float(c[1])


def _vertex_mean(coords: Iterable[Sequence[float]]) -> Optional[Coord]:
    pts = [_xy(c) for c in coords]
    if not pts:
        return None
    return (sum(p[0] for p in pts) / len(pts), sum(p[1] for p in pts) / len(pts))


def ring_signed_area(ring: Sequence[Sequence[float]]) -> float:
    """Shoelace area of one ring: positive counter-clockwise, negative clockwise."""
    a2 = 0.0
    n = len(ring)
    for i in range(n):
        x1, y1 = _xy(ring[i])
        x2, y2 = _xy(ring[(i + 1) % n])
        a2 += x1 * y2 - x2 * y1
    return a2 / 2


def _ring_area_centroid(ring: Sequence[Sequence[float]]) -> Tuple[float, float, float]:
    """Shoelace over one ring. Returns (abs_area, cx, cy); cx/cy are 0 when area is 0."""
    a2 = 0.0
    cx = 0.0
    cy = 0.0
    n = len(ring)
    for i in range(n):
        x1, y1 = _xy(ring[i])
        x2, y2 = _xy(ring[(i + 1) % n])
        cross = x1 * y2 - x2 * y1
        a2 += cross
        cx += (x1 + x2) * cross
        cy += (y1 + y2) * cross
    if a2 == 0:
        return 0.0, 0.0, 0.0
    return abs(a2) / 2, cx / (3 * a2), cy / (3 * a2)


def _polygon_moments(rings: Sequence[Sequence[Sequence[float]]]) -> Tuple[float, float, float]:
    """Area and first moments of one polygon (outer ring minus holes)."""
    area = 0.0
    mx = 0.0
    my = 0.0
    for i, ring in enumerate(rings):
        a, cx, cy = _ring_area_centroid(ring)
        sign = 1.0 if i == 0 else -1.0
        area += sign * a
        mx += sign * a * cx
        my += sign * a * cy
    return area, mx, my


def _line_centroid(lines: Sequence[Sequence[Sequence[float]]]) -> Optional[Coord]:
    """Length-weighted mean of segment midpoints across one or more lines."""
    total = 0.0
    mx = 0.0
    my = 0.0
    for line in lines:
        for i in range(len(line) - 1):
            x1, y1 = _xy(line[i])
            x2, y2 = _xy(line[i + 1])
            seg = math.hypot(x2 - x1, y2 - y1)
            total += seg
            mx += seg * (x1 + x2) / 2
            my += seg * (y1 + y2) / 2
    if total == 0:
        return _vertex_mean(c for line in lines for c in line)
    return mx / total, my / total


def centroid(geom_type: str, coordinates) -> Optional[Coord]:
    """Geometric centroid of a GeoJSON geometry, or None if it has no vertices.

    Points return themselves (MultiPoint: the mean). Degenerate polygons
    (zero area) fall back to the mean of their vertices.
    """
    if not coordinates:
        return None
    if geom_type == "Point":
        return _xy(coordinates)
    if geom_type == "MultiPoint":
        return _vertex_mean(coordinates)
    if geom_type == "LineString":
        return _line_centroid([coordinates])
    if geom_type == "MultiLineString":
        return _line_centroid(coordinates)
    if geom_type in POLYGON_TYPES:
        polygons = [coordinates] if geom_type == "Polygon" else coordinates
        area = 0.0
        mx = 0.0
        my = 0.0
        for rings in polygons:
            a, px, py = _polygon_moments(rings)
            area += a
            mx += px
            my += py
        if area <= 0:
            return _vertex_mean(c for rings in polygons for ring in rings for c in ring)
        return mx / area, my / area
    raise ValueError(f"Unsupported geometry type: {geom_type}")


# =============================================================================
# CONTAINMENT
# =============================================================================

def _on_segment(p: Coord, a: Coord, b: Coord) -> bool:
    cross = (b[0] - a[0]) * (p[1] - a[1]) - (b[1] - a[1]) * (p[0] - a[0])
    if abs(cross) > _EDGE_EPSILON:
        return False
    return (
        min(a[0], b[0]) - _EDGE_EPSILON <= p[0] <= max(a[0], b[0]) + _EDGE_EPSILON
        and min(a[1], b[1]) - _EDGE_EPSILON <= p[1] <= max(a[1], b[1]) + _EDGE_EPSILON
    )


def point_in_ring(point: Sequence[float], ring: Sequence[Sequence[float]], include_boundary: bool = True) -> bool:
    """Even-odd ray cast. Works for closed or open rings."""
    p = _xy(point)
    x, y = p
    inside = False
    n = len(ring)
    for i in range(n):
        a = _xy(ring[i])
        b = _xy(ring[(i + 1) % n])
        if _on_segment(p, a, b):
            return include_boundary
        if (a[1] > y) != (b[1] > y):
            x_cross = a[0] + (y - a[1]) * (b[0] - a[0]) / (b[1] - a[1])
            if x < x_cross:
                inside = not inside
    return inside


def point_in_polygon(point: Sequence[float], geom_type: str, coordinates) -> bool:
    """True if *point* is inside (or on the outer boundary of) a Polygon/MultiPolygon.

    The first ring of each polygon is its exterior; the rest are holes.
    Non-polygon geometries never contain anything.
    """
    if geom_type not in POLYGON_TYPES or not coordinates:
        return False
    polygons = [coordinates] if geom_type == "Polygon" else coordinates
    for rings in polygons:
        if not rings or not point_in_ring(point, rings[0]):
            continue
        if any(point_in_ring(point, hole, include_boundary=False) for hole in rings[1:]):
            continue
        return True
    return False


def bounds_of(geom_type: str, coordinates) -> Optional[List[float]]:
    """[west, south, east, north] of every vertex in the geometry."""
    if not coordinates:
        return None
    if geom_type == "Point":
        flat = [coordinates]
    elif geom_type in ("MultiPoint", "LineString"):
        flat = coordinates
    elif geom_type in ("MultiLineString", "Polygon"):
        flat = [c for part in coordinates for c in part]
    elif geom_type == "MultiPolygon":
        flat = [c for poly in coordinates for ring in poly for c in ring]
    else:
        raise ValueError(f"Unsupported geometry type: {geom_type}")
    if not flat:
        return None
    xs = [float(c[0]) for c in flat]
    ys = [float(c[1]) for c in flat]
    return [min(xs), min(ys), max(xs), max(ys)]
