"""
Runtime configuration for Green Routes.

Owns the fixed San Diego bounding box, the plan-building parameters and
the external service endpoints. Secrets (API keys) and deploy-specific
URLs come from the environment; everything else is a frozen dataclass
default so it shows up in one place.
"""

import os
from dataclasses import dataclass, field
from typing import List, Optional, Tuple


# =============================================================================
# Dataclasses
# =============================================================================

@dataclass(frozen=True)
class BoundingBox:
    """Axis-aligned lon/lat box. Edges are inclusive."""
    west: float
    south: float
    east: float
    north: float

    def contains(self, lon: float, lat: float) -> bool:
        return (
            self.west <= lon <= self.east
            and self.south <= lat <= self.north
        )

    def as_list(self) -> List[float]:
        return [self.west, self.south, self.east, self.north]

    @property
    def center(self) -> Tuple[float, float]:
        return ((self.west + self.east) / 2, (self.south + self.north) / 2)


# [west, south, east, north]
SD_BOUNDS = BoundingBox(west=-117.6, south=32.5, east=-116.1, north=33.5)


@dataclass(frozen=True)
class PlanSettings:
    """Parameters for the healthy-plan pipeline."""
    radius_miles: float = 2.0
    # "restart" cancels the in-flight plan; "reject" refuses the new one.
    retrigger_policy: str = "restart"
    flyto_zoom: int = 13


@dataclass(frozen=True)
class ServiceEndpoints:
    parks_url: str = (
        "https://geo.sandag.org/server/rest/services/Hosted/Parks_SD/FeatureServer/0/query"
    )
    healthcare_url: str = (
        "https://geo.sandag.org/server/rest/services/Hosted/Healthcare_Facilities/FeatureServer/0/query"
    )
    bike_routes_url: str = (
        "https://seshat.datasd.org/sde/bike_routes/bike_routes_datasd.geojson"
    )
    bike_routes_path: Optional[str] = None
    hpi_url: str = "https://api.healthyplacesindex.org/api/hpi"
    mapbox_directions_url: str = "https://api.mapbox.com/directions/v5/mapbox/walking"
    mapbox_geocoding_url: str = "https://api.mapbox.com/geocoding/v5/mapbox.places"
    openai_chat_url: str = "https://api.openai.com/v1/chat/completions"


@dataclass(frozen=True)
class Settings:
    bounds: BoundingBox = field(default_factory=lambda: SD_BOUNDS)
    plan: PlanSettings = field(default_factory=PlanSettings)
    endpoints: ServiceEndpoints = field(default_factory=ServiceEndpoints)
    mapbox_token: Optional[str] = None
    openai_api_key: Optional[str] = None
    openai_model: str = "gpt-4o-mini"
    hpi_api_key: Optional[str] = None
    refresh_interval_s: int = 6 * 3600
    # How long a plan waits for a first layer load before ranking without it
    lazy_load_wait_s: float = 10.0

    @classmethod
    def from_env(cls) -> "Settings":
        """Build settings from environment variables (call after load_dotenv)."""
        defaults = ServiceEndpoints()
        endpoints = ServiceEndpoints(
            parks_url=os.environ.get("PARKS_SERVICE_URL", defaults.parks_url),
            healthcare_url=os.environ.get("HEALTHCARE_SERVICE_URL", defaults.healthcare_url),
            bike_routes_url=os.environ.get("BIKE_ROUTES_URL", defaults.bike_routes_url),
            bike_routes_path=os.environ.get("BIKE_ROUTES_PATH") or None,
        )
        plan = PlanSettings(
            radius_miles=float(os.environ.get("PLAN_RADIUS_MILES", "2.0")),
            retrigger_policy=os.environ.get("PLAN_RETRIGGER_POLICY", "restart").lower(),
        )
        if plan.retrigger_policy not in ("restart", "reject"):
            raise ValueError(
                f"PLAN_RETRIGGER_POLICY must be 'restart' or 'reject', got {plan.retrigger_policy!r}"
            )
        return cls(
            plan=plan,
            endpoints=endpoints,
            mapbox_token=os.environ.get("MAPBOX_TOKEN") or None,
            openai_api_key=os.environ.get("OPENAI_API_KEY") or None,
            openai_model=os.environ.get("OPENAI_MODEL", "gpt-4o-mini"),
            hpi_api_key=os.environ.get("HPI_API_KEY") or None,
            refresh_interval_s=int(os.environ.get("LAYER_REFRESH_INTERVAL", str(6 * 3600))),
            lazy_load_wait_s=float(os.environ.get("LAYER_LAZY_LOAD_WAIT", "10")),
        )

    def missing_keys(self) -> List[str]:
        """Names of unset secrets. The app still starts; affected stages degrade."""
        missing = []
        if not self.mapbox_token:
            missing.append("MAPBOX_TOKEN")
        if not self.openai_api_key:
            missing.append("OPENAI_API_KEY")
        if not self.hpi_api_key:
            missing.append("HPI_API_KEY")
        return missing
