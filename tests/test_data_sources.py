"""Unit tests for data_sources.py: provider adapters and the LayerStore.

HTTP is replaced by a fake ServiceHTTPClient that records calls and
returns canned payloads.
"""

import json
import threading
from dataclasses import replace

import pytest

from data_sources import (
    ARCGIS_PAGE_SIZE,
    DataSourceError,
    LayerStore,
    fetch_bike_paths,
    fetch_environmental_index,
    fetch_healthcare_facilities,
    fetch_parks,
)
from geo_features import (
    CATEGORY_BIKE_PATHS,
    CATEGORY_ENVIRONMENTAL,
    CATEGORY_HEALTHCARE,
    CATEGORY_PARKS,
    FeatureCollection,
)
from http_client import ServiceRequestError
from settings import ServiceEndpoints, Settings


class FakeClient:
    """Stands in for ServiceHTTPClient. Returns queued responses in order."""

    def __init__(self, *responses):
        self.responses = list(responses)
        self.calls = []

    def get_json(self, url, service, endpoint, **kwargs):
        self.calls.append({"url": url, "service": service, "endpoint": endpoint, **kwargs})
        response = self.responses.pop(0)
        if isinstance(response, Exception):
            raise response
        return response


def _arcgis_park(lon, lat, name, acres):
    d = 0.001
    return {
        "attributes": {"common_name": name, "acres": acres},
        "geometry": {"rings": [[[lon - d, lat - d], [lon + d, lat - d],
                                [lon + d, lat + d], [lon - d, lat - d]]]},
    }


def _geojson_tract(lon, lat, percentile):
    d = 0.01
    return {
        "type": "Feature",
        "properties": {"geoid": "06073000100", "percentile": percentile},
        "geometry": {"type": "Polygon", "coordinates": [[
            [lon - d, lat - d], [lon + d, lat - d], [lon + d, lat + d],
            [lon - d, lat + d], [lon - d, lat - d],
        ]]},
    }


# =========================================================================
# ArcGIS-backed fetchers
# =========================================================================

class TestFetchParks:
    def test_query_parameters(self):
        client = FakeClient({"features": []})
        fetch_parks(client, Settings())

        call = client.calls[0]
        assert call["url"] == ServiceEndpoints().parks_url
        assert call["service"] == "sandag"
        assert call["endpoint"] == CATEGORY_PARKS
        params = call["params"]
        assert params["where"] == "1=1"
        assert params["outFields"] == "*"
        assert params["outSR"] == "4326"
        assert params["f"] == "json"

    def test_parses_and_filters_to_bounds(self):
        client = FakeClient({"features": [
            _arcgis_park(-117.15, 32.73, "Balboa Park", 1200),
            _arcgis_park(-118.25, 34.05, "Grand Park", 12),  # Los Angeles
        ]})
        parks = fetch_parks(client, Settings())

        assert parks.category == CATEGORY_PARKS
        assert [p.properties["common_name"] for p in parks] == ["Balboa Park"]

    def test_follows_transfer_limit(self):
        page1 = {"features": [_arcgis_park(-117.15, 32.73, "A", 1)], "exceededTransferLimit": True}
        page2 = {"features": [_arcgis_park(-117.14, 32.74, "B", 2)]}
        client = FakeClient(page1, page2)

        parks = fetch_parks(client, Settings())

        assert [p.properties["common_name"] for p in parks] == ["A", "B"]
        assert client.calls[0]["params"]["resultOffset"] == 0
        assert client.calls[1]["params"]["resultOffset"] == 1
        assert client.calls[1]["params"]["resultRecordCount"] == ARCGIS_PAGE_SIZE

    def test_arcgis_error_body_raises(self):
        client = FakeClient({"error": {"code": 400, "message": "Invalid query"}})
        with pytest.raises(DataSourceError, match="Invalid query"):
            fetch_parks(client, Settings())

    def test_non_dict_response_raises(self):
        with pytest.raises(DataSourceError):
            fetch_parks(FakeClient(["not", "a", "dict"]), Settings())


class TestFetchHealthcare:
    def test_points(self):
        client = FakeClient({"features": [
            {"attributes": {"name": "UCSD Medical Center"}, "geometry": {"x": -117.166, "y": 32.754}},
            {"attributes": {"name": "Nowhere"}, "geometry": {"x": 0, "y": 0}},
        ]})
        facilities = fetch_healthcare_facilities(client, Settings())

        assert facilities.category == CATEGORY_HEALTHCARE
        assert [f.properties["name"] for f in facilities] == ["UCSD Medical Center"]
        assert client.calls[0]["url"] == ServiceEndpoints().healthcare_url


# =========================================================================
# Bike paths
# =========================================================================

BIKE_GEOJSON = {
    "type": "FeatureCollection",
    "features": [
        {"type": "Feature", "properties": {"name": "Bayshore Bikeway"},
         "geometry": {"type": "LineString", "coordinates": [[-117.17, 32.70], [-117.16, 32.69]]}},
        {"type": "Feature", "properties": {"name": "Far away"},
         "geometry": {"type": "LineString", "coordinates": [[-100.0, 40.0], [-100.1, 40.0]]}},
    ],
}


class TestFetchBikePaths:
    def test_downloads_when_no_path(self):
        client = FakeClient(BIKE_GEOJSON)
        paths = fetch_bike_paths(client, Settings())

        assert client.calls[0]["service"] == "bike_routes"
        assert client.calls[0]["url"] == ServiceEndpoints().bike_routes_url
        assert [p.properties["name"] for p in paths] == ["Bayshore Bikeway"]

    def test_reads_local_file(self, tmp_path):
        path = tmp_path / "bike_routes.geojson"
        path.write_text(json.dumps(BIKE_GEOJSON))
        settings = Settings(endpoints=replace(ServiceEndpoints(), bike_routes_path=str(path)))
        client = FakeClient()

        paths = fetch_bike_paths(client, settings)

        assert client.calls == []
        assert paths.category == CATEGORY_BIKE_PATHS
        assert len(paths) == 1

    def test_missing_file_raises(self, tmp_path):
        settings = Settings(endpoints=replace(
            ServiceEndpoints(), bike_routes_path=str(tmp_path / "missing.geojson"),
        ))
        with pytest.raises(DataSourceError, match="cannot read"):
            fetch_bike_paths(FakeClient(), settings)

    def test_not_geojson_raises(self):
        with pytest.raises(DataSourceError):
            fetch_bike_paths(FakeClient({"rows": []}), Settings())


# =========================================================================
# Environmental index
# =========================================================================

class TestFetchEnvironmentalIndex:
    def test_requires_key(self):
        with pytest.raises(DataSourceError, match="HPI_API_KEY"):
            fetch_environmental_index(FakeClient(), Settings(hpi_api_key=None))

    def test_query_and_parse(self):
        client = FakeClient({"type": "FeatureCollection", "features": [
            _geojson_tract(-117.16, 32.72, 0.81),
            _geojson_tract(-122.4, 37.77, 0.99),  # San Francisco
        ]})
        tracts = fetch_environmental_index(client, Settings(hpi_api_key="k"))

        params = client.calls[0]["params"]
        assert params == {
            "geography": "tracts",
            "year": "2019",
            "indicator": "clean_enviro",
            "format": "geojson",
            "key": "k",
        }
        assert client.calls[0]["service"] == "hpi"
        assert tracts.category == CATEGORY_ENVIRONMENTAL
        assert [t.get_number("percentile") for t in tracts] == [0.81]


# =========================================================================
# LayerStore
# =========================================================================

def _const_fetcher(collection):
    return lambda client, settings: collection


def _failing_fetcher(exc):
    def _fetch(client, settings):
        raise exc
    return _fetch


class TestLayerStore:
    def test_starts_empty(self):
        store = LayerStore(Settings(), client=FakeClient())
        assert store.categories == [
            CATEGORY_PARKS, CATEGORY_BIKE_PATHS, CATEGORY_HEALTHCARE, CATEGORY_ENVIRONMENTAL,
        ]
        for category in store.categories:
            assert store.get(category).is_empty()
            assert store.summary()[category]["loaded_at"] is None

    def test_unknown_category_raises(self):
        store = LayerStore(Settings(), client=FakeClient())
        with pytest.raises(KeyError):
            store.get("volcanoes")

    def test_refresh_replaces_each_layer(self, make_park):
        parks = FeatureCollection(CATEGORY_PARKS, (make_park(-117.15, 32.73),))
        store = LayerStore(Settings(), client=FakeClient(), fetchers={
            CATEGORY_PARKS: _const_fetcher(parks),
        })

        results = store.refresh()

        assert results == {CATEGORY_PARKS: True}
        assert store.get(CATEGORY_PARKS) is parks
        summary = store.summary()[CATEGORY_PARKS]
        assert summary["count"] == 1
        assert summary["loaded_at"] is not None
        assert summary["error"] is None

    def test_failed_layer_keeps_previous_collection(self, make_park):
        parks = FeatureCollection(CATEGORY_PARKS, (make_park(-117.15, 32.73),))
        fetchers = {CATEGORY_PARKS: _const_fetcher(parks)}
        store = LayerStore(Settings(), client=FakeClient(), fetchers=fetchers)
        store.refresh()

        fetchers_after = {CATEGORY_PARKS: _failing_fetcher(ServiceRequestError("sandag down", "sandag", 503))}
        store._fetchers = fetchers_after
        results = store.refresh()

        assert results == {CATEGORY_PARKS: False}
        assert store.get(CATEGORY_PARKS) is parks
        assert "sandag down" in store.summary()[CATEGORY_PARKS]["error"]

    def test_one_failure_does_not_block_others(self, make_park):
        parks = FeatureCollection(CATEGORY_PARKS, (make_park(-117.15, 32.73),))
        store = LayerStore(Settings(), client=FakeClient(), fetchers={
            CATEGORY_PARKS: _const_fetcher(parks),
            CATEGORY_ENVIRONMENTAL: _failing_fetcher(DataSourceError("no key")),
            CATEGORY_HEALTHCARE: _failing_fetcher(RuntimeError("bug")),
        })

        results = store.refresh()

        assert results == {
            CATEGORY_PARKS: True,
            CATEGORY_ENVIRONMENTAL: False,
            CATEGORY_HEALTHCARE: False,
        }
        assert len(store.get(CATEGORY_PARKS)) == 1
        assert "RuntimeError" in store.summary()[CATEGORY_HEALTHCARE]["error"]

    def test_refresh_subset(self):
        calls = []

        def _recording(category):
            def _fetch(client, settings):
                calls.append(category)
                return FeatureCollection(category)
            return _fetch

        store = LayerStore(Settings(), client=FakeClient(), fetchers={
            CATEGORY_PARKS: _recording(CATEGORY_PARKS),
            CATEGORY_BIKE_PATHS: _recording(CATEGORY_BIKE_PATHS),
        })
        store.refresh([CATEGORY_BIKE_PATHS, "unknown"])

        assert calls == [CATEGORY_BIKE_PATHS]

    def test_ensure_loaded_only_fetches_missing(self):
        calls = []

        def _fetch(client, settings):
            calls.append(1)
            return FeatureCollection(CATEGORY_PARKS)

        store = LayerStore(Settings(), client=FakeClient(), fetchers={CATEGORY_PARKS: _fetch})
        store.ensure_loaded()
        store.ensure_loaded()

        assert calls == [1]

    def test_ensure_loaded_retries_after_failure(self):
        outcomes = [DataSourceError("first fails"), FeatureCollection(CATEGORY_PARKS)]

        def _fetch(client, settings):
            result = outcomes.pop(0)
            if isinstance(result, Exception):
                raise result
            return result

        store = LayerStore(Settings(), client=FakeClient(), fetchers={CATEGORY_PARKS: _fetch})
        store.ensure_loaded()
        store.ensure_loaded()

        assert outcomes == []
        assert store.summary()[CATEGORY_PARKS]["loaded_at"] is not None

    def test_ensure_loaded_stops_waiting_on_slow_fetch(self, make_park):
        release = threading.Event()
        parks = FeatureCollection(CATEGORY_PARKS, (make_park(-117.15, 32.73),))

        def _slow(client, settings):
            release.wait(timeout=5)
            return parks

        store = LayerStore(Settings(), client=FakeClient(), fetchers={CATEGORY_PARKS: _slow})
        store.ensure_loaded(wait_s=0.05)

        assert store.get(CATEGORY_PARKS).is_empty()
        assert store._lazy_loader.is_alive()

        release.set()
        store._lazy_loader.join(timeout=5)
        assert store.get(CATEGORY_PARKS) is parks

    def test_ensure_loaded_runs_one_load_at_a_time(self):
        release = threading.Event()
        calls = []

        def _slow(client, settings):
            calls.append(1)
            release.wait(timeout=5)
            return FeatureCollection(CATEGORY_PARKS)

        store = LayerStore(Settings(), client=FakeClient(), fetchers={CATEGORY_PARKS: _slow})
        store.ensure_loaded(wait_s=0.05)
        store.ensure_loaded(wait_s=0.05)
        release.set()
        store._lazy_loader.join(timeout=5)

        assert calls == [1]
