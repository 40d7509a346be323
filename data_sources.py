"""
Geo data source adapters and the in-memory layer store.

Four independent fetchers, one per map layer:
  - parks          SANDAG ArcGIS feature service (polygons, acreage, facilities)
  - bike_paths     City of San Diego bike routes GeoJSON (local file or URL)
  - healthcare     SANDAG ArcGIS feature service (points)
  - environmental  Healthy Places Index "clean_enviro" tracts (polygons, percentile)

Every fetcher drops features whose representative point falls outside the
San Diego bounding box. Nothing downstream re-checks that.

LayerStore owns the current collection for each layer. A refresh runs the
fetchers concurrently; each one replaces only its own slot, so completion
order doesn't matter. A failed fetch keeps the previous collection.
A plan that finds a layer never loaded starts a lazy load and waits for it
only briefly; see LayerStore.ensure_loaded.
"""

import json
import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from typing import Callable, Dict, Iterable, List, Optional

from geo_features import (
    ALL_CATEGORIES,
    CATEGORY_BIKE_PATHS,
    CATEGORY_ENVIRONMENTAL,
    CATEGORY_HEALTHCARE,
    CATEGORY_PARKS,
    FeatureCollection,
    GeoFeature,
    parse_arcgis_features,
    parse_geojson,
)
from gr_trace import clear_trace, get_trace, set_trace, timed_stage_in_thread
from http_client import ServiceError, ServiceHTTPClient
from settings import Settings

logger = logging.getLogger(__name__)

# ArcGIS paging: hosted SANDAG services cap each response at 2000 records.
ARCGIS_PAGE_SIZE = 2000
ARCGIS_MAX_PAGES = 25

HPI_QUERY = {
    "geography": "tracts",
    "year": "2019",
    "indicator": "clean_enviro",
    "format": "geojson",
}


class DataSourceError(Exception):
    """A layer could not be fetched or parsed."""

    pass


# =============================================================================
# ARCGIS HELPERS
# =============================================================================

def _query_arcgis(
    client: ServiceHTTPClient,
    url: str,
    category: str,
) -> List[GeoFeature]:
    """Run ``where=1=1`` against an ArcGIS layer, following exceededTransferLimit."""
    features: List[GeoFeature] = []
    offset = 0
    for _ in range(ARCGIS_MAX_PAGES):
        params = {
            "where": "1=1",
            "outFields": "*",
            "outSR": "4326",
            "f": "json",
            "resultOffset": offset,
            "resultRecordCount": ARCGIS_PAGE_SIZE,
        }
        data = client.get_json(url, "sandag", category, params=params)
        if not isinstance(data, dict):
            raise DataSourceError(f"{category}: unexpected ArcGIS response")
        # ArcGIS reports query errors with HTTP 200 and an "error" body
        if data.get("error"):
            err = data["error"]
            raise DataSourceError(
                f"{category}: ArcGIS error {err.get('code')}: {err.get('message')}"
            )
        raw = data.get("features") or []
        features.extend(parse_arcgis_features(raw, category))
        if not data.get("exceededTransferLimit") or not raw:
            return features
        offset += len(raw)

    logger.warning(
        "%s: stopped paging after %d pages (%d features); layer may be incomplete",
        category, ARCGIS_MAX_PAGES, len(features),
    )
    return features


# =============================================================================
# FETCHERS
# =============================================================================

def fetch_parks(client: ServiceHTTPClient, settings: Settings) -> FeatureCollection:
    features = _query_arcgis(client, settings.endpoints.parks_url, CATEGORY_PARKS)
    return FeatureCollection(CATEGORY_PARKS, tuple(features)).within_bounds(settings.bounds)


def fetch_healthcare_facilities(client: ServiceHTTPClient, settings: Settings) -> FeatureCollection:
    features = _query_arcgis(client, settings.endpoints.healthcare_url, CATEGORY_HEALTHCARE)
    return FeatureCollection(CATEGORY_HEALTHCARE, tuple(features)).within_bounds(settings.bounds)


def fetch_bike_paths(client: ServiceHTTPClient, settings: Settings) -> FeatureCollection:
    """Static dataset: read BIKE_ROUTES_PATH if configured, otherwise download it."""
    path = settings.endpoints.bike_routes_path
    if path:
        try:
            with open(path, encoding="utf-8") as f:
                data = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            raise DataSourceError(f"bike_paths: cannot read {path}: {e}") from e
    else:
        data = client.get_json(settings.endpoints.bike_routes_url, "bike_routes", CATEGORY_BIKE_PATHS)
    try:
        collection = parse_geojson(data, CATEGORY_BIKE_PATHS)
    except ValueError as e:
        raise DataSourceError(str(e)) from e
    return collection.within_bounds(settings.bounds)


def fetch_environmental_index(client: ServiceHTTPClient, settings: Settings) -> FeatureCollection:
    if not settings.hpi_api_key:
        raise DataSourceError("environmental: HPI_API_KEY is not configured")
    params = dict(HPI_QUERY, key=settings.hpi_api_key)
    data = client.get_json(settings.endpoints.hpi_url, "hpi", CATEGORY_ENVIRONMENTAL, params=params)
    try:
        collection = parse_geojson(data, CATEGORY_ENVIRONMENTAL)
    except ValueError as e:
        raise DataSourceError(str(e)) from e
    return collection.within_bounds(settings.bounds)


Fetcher = Callable[[ServiceHTTPClient, Settings], FeatureCollection]

FETCHERS: Dict[str, Fetcher] = {
    CATEGORY_PARKS: fetch_parks,
    CATEGORY_BIKE_PATHS: fetch_bike_paths,
    CATEGORY_HEALTHCARE: fetch_healthcare_facilities,
    CATEGORY_ENVIRONMENTAL: fetch_environmental_index,
}


# =============================================================================
# LAYER STORE
# =============================================================================

class LayerStore:
    """
    Current FeatureCollection per layer.

    Usage:
        store = LayerStore(settings)
        store.refresh()                 # all layers, concurrently
        parks = store.get("parks")
    """

    def __init__(
        self,
        settings: Settings,
        client: Optional[ServiceHTTPClient] = None,
        fetchers: Optional[Dict[str, Fetcher]] = None,
    ):
        self.settings = settings
        self._client = client or ServiceHTTPClient()
        self._fetchers = dict(fetchers or FETCHERS)
        self._lock = threading.Lock()
        self._refresh_lock = threading.Lock()
        self._collections: Dict[str, FeatureCollection] = {
            c: FeatureCollection(c) for c in self._fetchers
        }
        self._loaded_at: Dict[str, Optional[float]] = {c: None for c in self._fetchers}
        self._errors: Dict[str, Optional[str]] = {c: None for c in self._fetchers}
        self._lazy_loader: Optional[threading.Thread] = None

    @property
    def categories(self) -> List[str]:
        known = [c for c in ALL_CATEGORIES if c in self._fetchers]
        return known + [c for c in self._fetchers if c not in known]

    def get(self, category: str) -> FeatureCollection:
        """Current collection for *category*. KeyError if the layer is unknown."""
        with self._lock:
            return self._collections[category]

    def _replace(self, category: str, collection: FeatureCollection) -> None:
        with self._lock:
            self._collections[category] = collection
            self._loaded_at[category] = time.time()
            self._errors[category] = None

    def _mark_failed(self, category: str, error: str) -> None:
        with self._lock:
            self._errors[category] = error

    def refresh(self, categories: Optional[Iterable[str]] = None) -> Dict[str, bool]:
        """Fetch the given layers (default: all) concurrently.

        Returns {category: succeeded}. Never raises for a single layer's
        failure; the old collection stays in place and the error is kept
        for the summary.
        """
        wanted = [c for c in (categories or self._fetchers) if c in self._fetchers]
        if not wanted:
            return {}

        parent_trace = get_trace()
        results: Dict[str, bool] = {}
        with self._refresh_lock, ThreadPoolExecutor(max_workers=len(wanted)) as pool:
            futures = {
                c: pool.submit(
                    timed_stage_in_thread, parent_trace,
                    f"layer:{c}", self._fetchers[c], self._client, self.settings,
                )
                for c in wanted
            }
            for category, future in futures.items():
                try:
                    collection = future.result()
                except (DataSourceError, ServiceError) as e:
                    logger.warning("Layer %s refresh failed: %s", category, e)
                    self._mark_failed(category, str(e))
                    results[category] = False
                    continue
                except Exception as e:
                    logger.exception("Unexpected error refreshing layer %s", category)
                    self._mark_failed(category, f"{type(e).__name__}: {e}")
                    results[category] = False
                    continue
                self._replace(category, collection)
                logger.info("Layer %s refreshed: %d features", category, len(collection))
                results[category] = True
        return results

    def ensure_loaded(
        self,
        categories: Optional[Iterable[str]] = None,
        wait_s: Optional[float] = None,
    ) -> None:
        """Load any of *categories* that have never loaded successfully.

        The load runs on its own thread and this call waits at most *wait_s*
        (default ``settings.lazy_load_wait_s``) for it. A slow upstream keeps
        loading in the background and fills the store for later callers;
        meanwhile the layers stay as they are. One lazy load runs at a time.
        """
        if wait_s is None:
            wait_s = self.settings.lazy_load_wait_s
        with self._lock:
            pending = [
                c for c in (categories or self._fetchers)
                if c in self._loaded_at and self._loaded_at[c] is None
            ]
            if not pending:
                return
            loader = self._lazy_loader
            if loader is None or not loader.is_alive():
                loader = threading.Thread(
                    target=self._lazy_load, args=(pending, get_trace()),
                    daemon=True, name="layer-lazy-load",
                )
                self._lazy_loader = loader
                loader.start()

        loader.join(timeout=wait_s)
        if loader.is_alive():
            logger.warning(
                "Layer load still running after %.1fs; continuing without %s",
                wait_s, ", ".join(pending),
            )

    def _lazy_load(self, categories: List[str], trace) -> None:
        set_trace(trace)
        try:
            self.refresh(categories)
        finally:
            clear_trace()

    def summary(self) -> Dict[str, Dict[str, object]]:
        with self._lock:
            return {
                c: {
                    "count": len(self._collections[c]),
                    "loaded_at": self._loaded_at[c],
                    "error": self._errors[c],
                }
                for c in self.categories
            }
