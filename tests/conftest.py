"""Shared fixtures for the Green Routes test suite.

Provides a Flask test client with CSRF disabled, small feature factories
(square parcels and parks, short trail segments) and an in-memory
LayerStore whose fetchers return fixed collections instead of calling
the network.
"""

import os

import pytest

# Suppress the SECRET_KEY startup guard and the missing-key warnings
# BEFORE importing app (it reads the environment at import time)
os.environ.setdefault("SECRET_KEY", "test-secret-key")
os.environ.setdefault("MAPBOX_TOKEN", "fake-mapbox-token")
os.environ.setdefault("OPENAI_API_KEY", "fake-openai-key")
os.environ.setdefault("HPI_API_KEY", "fake-hpi-key")

from app import app  # noqa: E402
from data_sources import LayerStore  # noqa: E402
from geo_features import (  # noqa: E402
    CATEGORY_BIKE_PATHS,
    CATEGORY_ENVIRONMENTAL,
    CATEGORY_HEALTHCARE,
    CATEGORY_PARKS,
    FeatureCollection,
    GeoFeature,
    Geometry,
)
from settings import Settings  # noqa: E402

# Downtown San Diego
ORIGIN = (-117.16, 32.72)


def square(lon, lat, half):
    """Closed square ring centred on (lon, lat) as Polygon coordinates."""
    return [[
        [lon - half, lat - half],
        [lon + half, lat - half],
        [lon + half, lat + half],
        [lon - half, lat + half],
        [lon - half, lat - half],
    ]]


@pytest.fixture()
def client():
    """Flask test client with CSRF disabled (we're testing logic, not CSRF)."""
    app.config["TESTING"] = True
    app.config["WTF_CSRF_ENABLED"] = False
    with app.test_client() as c:
        yield c


@pytest.fixture()
def make_parcel():
    def _make(lon, lat, percentile=None, half=0.01, **props):
        if percentile is not None:
            props["percentile"] = percentile
        return GeoFeature(Geometry("Polygon", square(lon, lat, half)), props)
    return _make


@pytest.fixture()
def make_park():
    def _make(lon, lat, acres=None, name="Test Park", half=0.001, **props):
        props.setdefault("common_name", name)
        if acres is not None:
            props["acres"] = acres
        return GeoFeature(Geometry("Polygon", square(lon, lat, half)), props)
    return _make


@pytest.fixture()
def make_trail():
    def _make(lon, lat, name=None, **props):
        if name is not None:
            props["name"] = name
        coords = [[lon - 0.001, lat], [lon + 0.001, lat]]
        return GeoFeature(Geometry("LineString", coords), props)
    return _make


@pytest.fixture()
def make_layer_store():
    """LayerStore backed by fixed collections, already loaded."""
    def _make(parcels=(), parks=(), trails=(), healthcare=(), settings=None, load=True):
        collections = {
            CATEGORY_PARKS: FeatureCollection(CATEGORY_PARKS, tuple(parks)),
            CATEGORY_BIKE_PATHS: FeatureCollection(CATEGORY_BIKE_PATHS, tuple(trails)),
            CATEGORY_HEALTHCARE: FeatureCollection(CATEGORY_HEALTHCARE, tuple(healthcare)),
            CATEGORY_ENVIRONMENTAL: FeatureCollection(CATEGORY_ENVIRONMENTAL, tuple(parcels)),
        }
        fetchers = {
            category: (lambda client, s, c=collection: c)
            for category, collection in collections.items()
        }
        store = LayerStore(settings or Settings(), client=object(), fetchers=fetchers)
        if load:
            store.refresh()
        return store
    return _make
