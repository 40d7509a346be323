"""Server-side plan map generation using staticmap + OSM tiles.

Also owns the layer colours shared with the browser map, so the PNG and
the interactive map agree on what "good air" or "selected park" looks
like.
"""

import io
import logging
from typing import Iterable, List, Optional, Sequence, Tuple

from staticmap import CircleMarker, Line, Polygon, StaticMap

from geo_features import GeoFeature

logger = logging.getLogger(__name__)


class GreenRoutesStaticMap(StaticMap):
    """StaticMap with zoom clamped to [11, 16]: a 2-mile plan fits at 12-13."""

    ZOOM_MIN = 11
    ZOOM_MAX = 16

    def _calculate_zoom(self):
        z = super()._calculate_zoom()
        return max(self.ZOOM_MIN, min(self.ZOOM_MAX, z))


USER_AGENT = "GreenRoutes/1.0 (healthy plan map; San Diego open data)"

# Environmental percentile ramp, low (worse) to high (better)
PERCENTILE_RAMP: List[Tuple[float, str]] = [
    (0.0, "#8b0000"),
    (0.25, "#ff0000"),
    (0.5, "#ff00ff"),
    (0.75, "#0000ff"),
    (1.0, "#00008b"),
]

PARK_COLOR = "darkgreen"
SELECTED_PARK_COLOR = "red"
BIKE_PATH_COLOR = "limegreen"
ROUTE_COLOR = "#3887be"
USER_COLOR = "#2563eb"

LAYER_STYLES = {
    "environmental": {"ramp": PERCENTILE_RAMP, "property": "percentile"},
    "parks": {"color": PARK_COLOR, "selected_color": SELECTED_PARK_COLOR},
    "bike_paths": {"color": BIKE_PATH_COLOR},
    "healthcare": {"color": "#7c3aed"},
    "route": {"color": ROUTE_COLOR},
}


def _hex_to_rgb(color: str) -> Tuple[int, int, int]:
    color = color.lstrip("#")
    return int(color[0:2], 16), int(color[2:4], 16), int(color[4:6], 16)


def percentile_color(value: Optional[float]) -> str:
    """Linear interpolation along PERCENTILE_RAMP. Missing -> lowest colour."""
    if value is None:
        return PERCENTILE_RAMP[0][1]
    value = max(0.0, min(1.0, value))
    for (lo, lo_color), (hi, hi_color) in zip(PERCENTILE_RAMP, PERCENTILE_RAMP[1:]):
        if value <= hi:
            t = (value - lo) / (hi - lo)
            a, b = _hex_to_rgb(lo_color), _hex_to_rgb(hi_color)
            r, g, bl = (round(x + (y - x) * t) for x, y in zip(a, b))
            return f"#{r:02x}{g:02x}{bl:02x}"
    return PERCENTILE_RAMP[-1][1]


def _outer_rings(feature: GeoFeature) -> Iterable[Sequence]:
    geom = feature.geometry
    if geom.type == "Polygon":
        yield geom.coordinates[0]
    elif geom.type == "MultiPolygon":
        for polygon in geom.coordinates:
            yield polygon[0]


def _lines(feature: GeoFeature) -> Iterable[Sequence]:
    geom = feature.geometry
    if geom.type == "LineString":
        yield geom.coordinates
    elif geom.type == "MultiLineString":
        yield from geom.coordinates


def _add_feature(m: StaticMap, feature: GeoFeature, fill: Optional[str], outline: str, width: int) -> None:
    for ring in _outer_rings(feature):
        m.add_polygon(Polygon([tuple(c[:2]) for c in ring], fill, outline))
    for line in _lines(feature):
        m.add_line(Line([tuple(c[:2]) for c in line], outline, width))
    if feature.geometry.type == "Point":
        m.add_marker(CircleMarker(tuple(feature.geometry.coordinates[:2]), outline, 12))


def render_plan_map(plan, width: int = 640, height: int = 400) -> Optional[bytes]:
    """Render a RecommendationPlan as PNG bytes.

    Draws the winning parcel tinted by its percentile, the destination,
    the walking route and the user's position. Returns None if rendering
    fails for any reason (tile server down, degenerate geometry).
    """
    try:
        m = GreenRoutesStaticMap(
            width,
            height,
            padding_x=24,
            padding_y=24,
            url_template="http://a.tile.openstreetmap.org/{z}/{x}/{y}.png",
            tile_request_timeout=10,
            headers={"User-Agent": USER_AGENT},
        )

        if plan.parcel is not None:
            _add_feature(m, plan.parcel, percentile_color(plan.quality_score), "#374151", 1)

        dest_color = SELECTED_PARK_COLOR if plan.category == "Park" else BIKE_PATH_COLOR
        _add_feature(m, plan.destination, None, dest_color, 4)

        if plan.route is not None and plan.route.geometry.type == "LineString":
            coords = [tuple(c[:2]) for c in plan.route.geometry.coordinates]
            if len(coords) >= 2:
                m.add_line(Line(coords, ROUTE_COLOR, 5))

        # User pin (staticmap uses lng, lat order)
        if plan.user_location is not None:
            lon, lat = plan.user_location
            m.add_marker(CircleMarker((lon, lat), USER_COLOR, 14))
            m.add_marker(CircleMarker((lon, lat), "white", 8))

        image = m.render()
        buffer = io.BytesIO()
        image.save(buffer, format="PNG", optimize=True)
        return buffer.getvalue()

    except Exception:
        logger.exception("Failed to generate plan map")
        return None
