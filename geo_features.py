"""
GeoFeature / FeatureCollection types and the parsers that build them.

Two wire shapes come back from the data providers:
  - GeoJSON (Healthy Places Index, City of San Diego open data)
  - ArcGIS REST JSON (SANDAG feature services): ``geometry.rings`` for
    polygons, ``geometry.paths`` for lines, ``geometry.x/y`` for points,
    attributes under ``attributes``.

Features are immutable once parsed. Anything that "changes" a feature
(tagging the selected park, say) returns a new object.
"""

import logging
import math
from dataclasses import dataclass, field, replace
from typing import Any, Callable, Dict, Iterator, List, Optional, Tuple

from geometry import Coord, bounds_of, centroid, point_in_polygon, ring_signed_area

logger = logging.getLogger(__name__)

CATEGORY_PARKS = "parks"
CATEGORY_BIKE_PATHS = "bike_paths"
CATEGORY_HEALTHCARE = "healthcare"
CATEGORY_ENVIRONMENTAL = "environmental"

ALL_CATEGORIES = (
    CATEGORY_PARKS,
    CATEGORY_BIKE_PATHS,
    CATEGORY_HEALTHCARE,
    CATEGORY_ENVIRONMENTAL,
)

SUPPORTED_GEOMETRY_TYPES = {
    "Point", "MultiPoint",
    "LineString", "MultiLineString",
    "Polygon", "MultiPolygon",
}


# =============================================================================
# DATA CLASSES
# =============================================================================

@dataclass(frozen=True)
class Geometry:
    type: str
    coordinates: Any

    @classmethod
    def from_geojson(cls, data: Any) -> Optional["Geometry"]:
        """Parse a GeoJSON geometry object. Returns None if it is unusable."""
        if not isinstance(data, dict):
            return None
        geom_type = data.get("type")
        coords = data.get("coordinates")
        if geom_type not in SUPPORTED_GEOMETRY_TYPES or not coords:
            return None
        return cls(type=geom_type, coordinates=coords)

    def to_geojson(self) -> Dict[str, Any]:
        return {"type": self.type, "coordinates": self.coordinates}


@dataclass(frozen=True)
class GeoFeature:
    """A geometry plus named attributes."""
    geometry: Geometry
    properties: Dict[str, Any] = field(default_factory=dict)
    _rep_point: Optional[Coord] = field(default=None, init=False, repr=False, compare=False)
    _bounds: Optional[List[float]] = field(default=None, init=False, repr=False, compare=False)

    def __post_init__(self):
        try:
            point = centroid(self.geometry.type, self.geometry.coordinates)
            bounds = bounds_of(self.geometry.type, self.geometry.coordinates)
        except (TypeError, ValueError, IndexError, ZeroDivisionError):
            logger.debug("Could not compute centroid for %s feature", self.geometry.type)
            point = None
            bounds = None
        object.__setattr__(self, "_rep_point", point)
        object.__setattr__(self, "_bounds", bounds)

    @property
    def representative_point(self) -> Optional[Coord]:
        """Centroid, or the point itself for Point features."""
        return self._rep_point

    @property
    def is_polygon(self) -> bool:
        return self.geometry.type in ("Polygon", "MultiPolygon")

    def contains_point(self, point: Optional[Coord]) -> bool:
        if point is None or self._bounds is None:
            return False
        west, south, east, north = self._bounds
        if not (west <= point[0] <= east and south <= point[1] <= north):
            return False
        return point_in_polygon(point, self.geometry.type, self.geometry.coordinates)

    def get_number(self, key: str) -> Optional[float]:
        """Numeric attribute, or None when missing or malformed."""
        value = self.properties.get(key)
        if value is None or isinstance(value, bool):
            return None
        try:
            number = float(value)
        except (TypeError, ValueError):
            return None
        if math.isnan(number) or math.isinf(number):
            return None
        return number

    def with_properties(self, **updates: Any) -> "GeoFeature":
        return GeoFeature(geometry=self.geometry, properties={**self.properties, **updates})

    def bounds(self) -> Optional[List[float]]:
        return list(self._bounds) if self._bounds else None

    def to_geojson(self) -> Dict[str, Any]:
        return {
            "type": "Feature",
            "geometry": self.geometry.to_geojson(),
            "properties": dict(self.properties),
        }


@dataclass(frozen=True)
class FeatureCollection:
    """Ordered features of one category. Replaced wholesale on refresh."""
    category: str
    features: Tuple[GeoFeature, ...] = ()

    def __len__(self) -> int:
        return len(self.features)

    def __iter__(self) -> Iterator[GeoFeature]:
        return iter(self.features)

    def is_empty(self) -> bool:
        return not self.features

    def filter(self, predicate: Callable[[GeoFeature], bool]) -> "FeatureCollection":
        return replace(self, features=tuple(f for f in self.features if predicate(f)))

    def within_bounds(self, bounds) -> "FeatureCollection":
        """Keep features whose representative point lies in *bounds*."""
        def _inside(feature: GeoFeature) -> bool:
            point = feature.representative_point
            return point is not None and bounds.contains(point[0], point[1])
        return self.filter(_inside)

    def with_selected(self, predicate: Callable[[GeoFeature], bool]) -> "FeatureCollection":
        """New collection with ``selected`` set on every feature."""
        return replace(
            self,
            features=tuple(f.with_properties(selected=bool(predicate(f))) for f in self.features),
        )

    def to_geojson(self) -> Dict[str, Any]:
        return {
            "type": "FeatureCollection",
            "features": [f.to_geojson() for f in self.features],
        }


# =============================================================================
# PARSERS
# =============================================================================

def parse_geojson(data: Any, category: str) -> FeatureCollection:
    """Build a collection from a GeoJSON FeatureCollection dict.

    Features with missing or unsupported geometry are dropped with a
    debug log rather than failing the whole layer.
    """
    raw_features = data.get("features") if isinstance(data, dict) else None
    if not isinstance(raw_features, list):
        raise ValueError(f"{category}: expected a GeoJSON FeatureCollection")

    features: List[GeoFeature] = []
    skipped = 0
    for raw in raw_features:
        geometry = Geometry.from_geojson(raw.get("geometry") if isinstance(raw, dict) else None)
        if geometry is None:
            skipped += 1
            continue
        props = raw.get("properties") or {}
        features.append(GeoFeature(geometry=geometry, properties=dict(props)))

    if skipped:
        logger.debug("%s: skipped %d features with unusable geometry", category, skipped)
    return FeatureCollection(category=category, features=tuple(features))


def _group_arcgis_rings(rings: List[Any]) -> List[List[Any]]:
    """Split ArcGIS rings into GeoJSON polygons.

    ArcGIS marks outer rings clockwise and holes counter-clockwise; a hole
    belongs to the outer ring before it. A leading hole has no owner and is
    treated as an outer ring.
    """
    polygons: List[List[Any]] = []
    for ring in rings:
        if len(ring) < 3:
            continue
        if ring_signed_area(ring) < 0 or not polygons:
            polygons.append([ring])
        else:
            polygons[-1].append(ring)
    return polygons


def _arcgis_geometry(raw: Any) -> Optional[Geometry]:
    if not isinstance(raw, dict):
        return None
    if raw.get("rings"):
        polygons = _group_arcgis_rings(raw["rings"])
        if not polygons:
            return None
        if len(polygons) == 1:
            return Geometry(type="Polygon", coordinates=polygons[0])
        return Geometry(type="MultiPolygon", coordinates=polygons)
    if raw.get("paths"):
        paths = raw["paths"]
        if len(paths) == 1:
            return Geometry(type="LineString", coordinates=paths[0])
        return Geometry(type="MultiLineString", coordinates=paths)
    x, y = raw.get("x"), raw.get("y")
    if x is not None and y is not None:
        return Geometry(type="Point", coordinates=[x, y])
    return None


def parse_arcgis_features(raw_features: Any, category: str) -> List[GeoFeature]:
    """Convert ArcGIS REST ``features`` into GeoFeatures (order preserved)."""
    features: List[GeoFeature] = []
    skipped = 0
    for raw in raw_features or []:
        geometry = _arcgis_geometry(raw.get("geometry") if isinstance(raw, dict) else None)
        if geometry is None:
            skipped += 1
            continue
        features.append(GeoFeature(geometry=geometry, properties=dict(raw.get("attributes") or {})))
    if skipped:
        logger.debug("%s: skipped %d ArcGIS features without geometry", category, skipped)
    return features
