"""
Recommendation pipeline: radius filter → parcel ranking → destination pick.

  filter_within_radius    parcels whose centroid is within N miles of the user
  best_parcel_containing  highest-percentile parcel that has somewhere to go
  select_destination      biggest park in that parcel, else the first trail

Ranking is rank-first-then-filter: the chosen parcel is the best-scoring
one that is also actionable, not the best-scoring one overall.

Malformed data never raises here. A parcel without a numeric
``percentile`` ranks below every scored parcel; a park without numeric
``acres`` loses to every park that has one.
"""

import math
from itertools import chain
from typing import Callable, Iterable, List, Optional, Sequence

from geo_features import FeatureCollection, GeoFeature
from geometry import within_radius

PERCENTILE_KEY = "percentile"
AREA_KEY = "acres"

CATEGORY_PARK = "Park"
CATEGORY_TRAIL = "Trail"


# =============================================================================
# SPATIAL FILTER
# =============================================================================

def filter_within_radius(
    origin: Optional[Sequence[float]],
    radius_miles: float,
    candidates: FeatureCollection,
) -> FeatureCollection:
    """Candidates whose representative point lies inside the radius buffer.

    Input order is preserved. No origin or no candidates gives an empty
    collection of the same category.
    """
    if origin is None or candidates.is_empty():
        return FeatureCollection(candidates.category)

    def _inside(feature: GeoFeature) -> bool:
        point = feature.representative_point
        return point is not None and within_radius(origin, point, radius_miles)

    return candidates.filter(_inside)


# =============================================================================
# PARCEL RANKER
# =============================================================================

def _score_key(parcel: GeoFeature) -> float:
    score = parcel.get_number(PERCENTILE_KEY)
    return -math.inf if score is None else score


def rank_parcels(parcels: Iterable[GeoFeature]) -> List[GeoFeature]:
    """Descending percentile. sorted() is stable, so ties keep fetch order."""
    return sorted(parcels, key=_score_key, reverse=True)


def features_inside(parcel: GeoFeature, candidates: Iterable[GeoFeature]) -> List[GeoFeature]:
    return [f for f in candidates if parcel.contains_point(f.representative_point)]


def contains_any(*collections: Iterable[GeoFeature]) -> Callable[[GeoFeature], bool]:
    """Predicate: does the parcel contain the representative point of any candidate?"""
    candidates = list(chain.from_iterable(collections))

    def _contains(parcel: GeoFeature) -> bool:
        return any(parcel.contains_point(f.representative_point) for f in candidates)

    return _contains


def best_parcel_containing(
    parcels: Iterable[GeoFeature],
    contains: Callable[[GeoFeature], bool],
) -> Optional[GeoFeature]:
    """First parcel in percentile order for which *contains* holds, else None."""
    for parcel in rank_parcels(parcels):
        if contains(parcel):
            return parcel
    return None


# =============================================================================
# DESTINATION SELECTOR
# =============================================================================

def _area_key(park: GeoFeature) -> float:
    area = park.get_number(AREA_KEY)
    return -math.inf if area is None else area


def select_destination(
    parcel: GeoFeature,
    parks: Iterable[GeoFeature],
    trails: Iterable[GeoFeature],
) -> Optional[GeoFeature]:
    """Largest park (by acres) inside *parcel*; otherwise the first trail inside it.

    max() returns the first of several equal maxima, which gives the
    first-occurrence tie-break. Trails are not ranked: the first one in
    dataset order wins.
    """
    parks_inside = features_inside(parcel, parks)
    if parks_inside:
        return max(parks_inside, key=_area_key)

    trails_inside = features_inside(parcel, trails)
    return trails_inside[0] if trails_inside else None


def destination_category(feature: GeoFeature) -> str:
    """Parks are polygons; everything else we can recommend is a trail."""
    return CATEGORY_PARK if feature.is_polygon else CATEGORY_TRAIL
