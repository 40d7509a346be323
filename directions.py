"""
Mapbox client: walking directions and forward geocoding.

walking_route() is the plan's optional routing stage; failures raise
DirectionsError and the plan is shown without a path.

geocode() is the on-demand location fallback used when the browser did
not send coordinates (permission denied, unsupported). Results are biased
to, and must fall inside, the San Diego bounding box; otherwise the
location is treated as unavailable.
"""

import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional, Sequence, Tuple
from urllib.parse import quote

from geo_features import Geometry
from http_client import ServiceError, ServiceHTTPClient
from settings import SD_BOUNDS, BoundingBox

logger = logging.getLogger(__name__)

_REQUEST_TIMEOUT = 10


class DirectionsError(Exception):
    """No walking route could be fetched."""

    pass


class LocationUnavailable(Exception):
    """The user's location could not be determined."""

    pass


@dataclass
class Route:
    geometry: Geometry
    distance_m: Optional[float] = None
    duration_s: Optional[float] = None

    def to_geojson(self) -> Dict[str, Any]:
        return {
            "type": "Feature",
            "properties": {
                "distance_m": self.distance_m,
                "duration_s": self.duration_s,
            },
            "geometry": self.geometry.to_geojson(),
        }


class MapboxClient:
    def __init__(
        self,
        token: Optional[str],
        directions_url: str = "https://api.mapbox.com/directions/v5/mapbox/walking",
        geocoding_url: str = "https://api.mapbox.com/geocoding/v5/mapbox.places",
        bounds: BoundingBox = SD_BOUNDS,
        client: Optional[ServiceHTTPClient] = None,
    ):
        self.token = token
        self.directions_url = directions_url.rstrip("/")
        self.geocoding_url = geocoding_url.rstrip("/")
        self.bounds = bounds
        self._client = client or ServiceHTTPClient(max_retries=1)

    def walking_route(self, start: Sequence[float], end: Sequence[float]) -> Route:
        """Walking path from *start* to *end* (both lon, lat)."""
        if not self.token:
            raise DirectionsError("MAPBOX_TOKEN is not configured")

        url = f"{self.directions_url}/{start[0]},{start[1]};{end[0]},{end[1]}"
        params = {
            "access_token": self.token,
            "geometries": "geojson",
            "steps": "true",
            "overview": "full",
        }
        try:
            data = self._client.get_json(
                url, "mapbox", "walking_route", params=params, timeout=_REQUEST_TIMEOUT,
            )
        except ServiceError as e:
            raise DirectionsError(str(e)) from e

        if not isinstance(data, dict):
            raise DirectionsError("unexpected directions response")
        routes = data.get("routes") or []
        if data.get("code", "Ok") != "Ok" or not routes:
            raise DirectionsError(f"no walking route ({data.get('code', 'NoRoute')})")

        best = routes[0]
        geometry = Geometry.from_geojson(best.get("geometry"))
        if geometry is None:
            raise DirectionsError("walking route had no usable geometry")
        return Route(
            geometry=geometry,
            distance_m=best.get("distance"),
            duration_s=best.get("duration"),
        )

    def geocode(self, query: str) -> Tuple[float, float]:
        """Forward-geocode *query* to (lon, lat) inside the bounding box."""
        query = (query or "").strip()
        if not query:
            raise LocationUnavailable("no location or address provided")
        if not self.token:
            raise LocationUnavailable("MAPBOX_TOKEN is not configured")

        lon0, lat0 = self.bounds.center
        url = f"{self.geocoding_url}/{quote(query, safe='')}.json"
        params = {
            "access_token": self.token,
            "bbox": ",".join(str(v) for v in self.bounds.as_list()),
            "proximity": f"{lon0},{lat0}",
            "limit": 1,
        }
        try:
            data = self._client.get_json(
                url, "mapbox", "geocode", params=params, timeout=_REQUEST_TIMEOUT,
            )
        except ServiceError as e:
            raise LocationUnavailable(f"geocoding failed: {e}") from e

        features = data.get("features") if isinstance(data, dict) else None
        if not features:
            raise LocationUnavailable(f"no geocoding match for {query!r}")
        center = features[0].get("center")
        try:
            lon, lat = float(center[0]), float(center[1])
        except (TypeError, ValueError, IndexError) as e:
            raise LocationUnavailable("geocoding result had no center") from e
        if not self.bounds.contains(lon, lat):
            raise LocationUnavailable(f"{query!r} is outside the San Diego area")
        return lon, lat
