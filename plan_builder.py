"""
Plan builder: turns a user location into a RecommendationPlan.

State machine per visitor:

    IDLE -> LOCATING -> RANKING -> DESCRIBING -> ROUTING -> READY
                |           |            |             |
                +-----------+------------+-------------+--> FAILED

Required stages (location, parcel ranking, destination selection) end the
plan in FAILED with a user-facing reason. Optional stages (narrative,
route) degrade: a fallback guide, or no path drawn.

Each visitor owns an AppState. Triggering a new plan while one is in
flight follows the configured policy:
  restart  cancel the running plan's token; its late results are dropped
  reject   raise PlanInProgressError
A cancelled plan never commits, so it cannot overwrite a newer plan or
the selected-park tag.
"""

import logging
import threading
from collections import OrderedDict
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

from data_sources import LayerStore
from directions import DirectionsError, LocationUnavailable, MapboxClient, Route
from geo_features import (
    CATEGORY_BIKE_PATHS,
    CATEGORY_ENVIRONMENTAL,
    CATEGORY_PARKS,
    FeatureCollection,
    GeoFeature,
)
from geometry import Coord
from gr_trace import degrade_stage, timed_stage
from narrative import FALLBACK_NARRATIVE, NarrativeError, NarrativeGenerator
from recommendation import (
    CATEGORY_PARK,
    PERCENTILE_KEY,
    best_parcel_containing,
    contains_any,
    destination_category,
    filter_within_radius,
    select_destination,
)
from settings import Settings

logger = logging.getLogger(__name__)

REASON_NO_LOCATION = "location unavailable"
REASON_NO_AREA = "no suitable area found"
REASON_NO_DESTINATION = "no destination found"

GOOGLE_MAPS_SEARCH_URL = "https://www.google.com/maps/search/?api=1&query={lat},{lon}"
UNNAMED_TRAIL = "Unnamed Trail"

POLICY_RESTART = "restart"
POLICY_REJECT = "reject"


class PlanState(str, Enum):
    IDLE = "idle"
    LOCATING = "locating"
    RANKING = "ranking"
    DESCRIBING = "describing"
    ROUTING = "routing"
    READY = "ready"
    FAILED = "failed"


# A new trigger is accepted without a policy decision from these states.
SETTLED_STATES = (PlanState.IDLE, PlanState.READY, PlanState.FAILED)


class PlanInProgressError(Exception):
    """A plan is already running for this visitor and the policy is reject."""

    pass


class PlanCancelled(Exception):
    """The running plan was superseded by a newer trigger."""

    pass


class CancelToken:
    """One per plan run. Cancelling it tells the run to stop and discard."""

    def __init__(self):
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise PlanCancelled("plan superseded by a newer request")


# =============================================================================
# DATA CLASSES
# =============================================================================

@dataclass
class RecommendationPlan:
    category: str                       # "Park" or "Trail"
    destination: GeoFeature
    quality_score: Optional[float]      # parcel percentile, 0..1
    narrative: str
    route: Optional[Route] = None
    parcel: Optional[GeoFeature] = None
    user_location: Optional[Coord] = None
    narrative_is_fallback: bool = False

    @property
    def destination_point(self) -> Optional[Coord]:
        return self.destination.representative_point

    def directions_url(self) -> Optional[str]:
        point = self.destination_point
        if point is None:
            return None
        return GOOGLE_MAPS_SEARCH_URL.format(lat=point[1], lon=point[0])

    def to_dict(self, flyto_zoom: int = 13) -> Dict[str, Any]:
        """Presentation record for the plan panel and the map."""
        score = self.quality_score
        point = self.destination_point
        out: Dict[str, Any] = {
            "type": self.category,
            "environmental_rating": score,
            "environmental_rating_pct": f"{score * 100:.2f}%" if score is not None else None,
            "guide": self.narrative,
            "guide_is_fallback": self.narrative_is_fallback,
            "destination": self.destination.to_geojson(),
            "center": list(point) if point else None,
            "view": (
                {"longitude": point[0], "latitude": point[1], "zoom": flyto_zoom}
                if point else None
            ),
            "route": self.route.to_geojson() if self.route else None,
            "directions_url": self.directions_url(),
            "user_location": list(self.user_location) if self.user_location else None,
        }
        props = self.destination.properties
        if self.category == CATEGORY_PARK:
            acres = self.destination.get_number("acres")
            out["park"] = {
                "name": props.get("full_name") or props.get("common_name"),
                "address": props.get("address_lo"),
                "acres": f"{acres:.2f}" if acres is not None else None,
            }
        else:
            out["trail"] = {"name": props.get("name") or UNNAMED_TRAIL}
        return out


@dataclass
class PlanOutcome:
    status: PlanState
    plan: Optional[RecommendationPlan] = None
    reason: Optional[str] = None
    transitions: List[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return self.status == PlanState.READY

    def to_dict(self, flyto_zoom: int = 13) -> Dict[str, Any]:
        return {
            "status": self.status.value,
            "reason": self.reason,
            "transitions": list(self.transitions),
            "plan": self.plan.to_dict(flyto_zoom) if self.plan else None,
        }


@dataclass
class AppState:
    """Everything one visitor's session can see or change.

    The shared LayerStore is read-only from here; the visitor's own view
    of the parks layer (with the ``selected`` tag) is kept separately so
    one visitor's plan never restyles another's map.
    """
    layers: LayerStore
    state: PlanState = PlanState.IDLE
    plan: Optional[RecommendationPlan] = None
    selected_park_name: Optional[str] = None
    parks_view: Optional[FeatureCollection] = None
    lock: threading.Lock = field(default_factory=threading.Lock, repr=False)
    active_token: Optional[CancelToken] = field(default=None, repr=False)

    def parks_layer(self) -> FeatureCollection:
        """Parks as this visitor sees them; the shared layer until a plan tags one."""
        if self.parks_view is not None:
            return self.parks_view
        return self.layers.get(CATEGORY_PARKS)


class AppStateRegistry:
    """Per-visitor AppState, least-recently-used eviction."""

    def __init__(self, layers: LayerStore, max_visitors: int = 1000):
        self.layers = layers
        self.max_visitors = max_visitors
        self._states: "OrderedDict[str, AppState]" = OrderedDict()
        self._lock = threading.Lock()

    def get(self, visitor_id: str) -> AppState:
        with self._lock:
            state = self._states.get(visitor_id)
            if state is None:
                state = AppState(layers=self.layers)
                self._states[visitor_id] = state
            self._states.move_to_end(visitor_id)
            while len(self._states) > self.max_visitors:
                self._states.popitem(last=False)
            return state

    def peek(self, visitor_id: str) -> Optional[AppState]:
        with self._lock:
            return self._states.get(visitor_id)

    def __len__(self) -> int:
        with self._lock:
            return len(self._states)


# =============================================================================
# BUILDER
# =============================================================================

class _PlanRun:
    """Bookkeeping for one build() call: its token and the states it passed."""

    def __init__(self, app_state: AppState, token: CancelToken,
                 on_stage: Optional[Callable[[str], None]]):
        self.app_state = app_state
        self.token = token
        self.on_stage = on_stage
        self.transitions: List[str] = [PlanState.IDLE.value]

    def advance(self, new_state: PlanState) -> None:
        self.token.raise_if_cancelled()
        with self.app_state.lock:
            if self.app_state.active_token is not self.token:
                raise PlanCancelled("plan superseded by a newer request")
            self.app_state.state = new_state
        self.transitions.append(new_state.value)
        if self.on_stage:
            self.on_stage(new_state.value)


class PlanBuilder:
    """
    Runs the plan pipeline against a visitor's AppState.

    Usage:
        builder = PlanBuilder(settings, narrator, mapbox)
        outcome = builder.build(registry.get(visitor_id), location=(lon, lat))
    """

    def __init__(
        self,
        settings: Settings,
        narrator: NarrativeGenerator,
        mapbox: MapboxClient,
    ):
        self.settings = settings
        self.narrator = narrator
        self.mapbox = mapbox

    # -- entry point --------------------------------------------------------

    def build(
        self,
        app_state: AppState,
        location: Optional[Sequence[float]] = None,
        address: Optional[str] = None,
        on_stage: Optional[Callable[[str], None]] = None,
    ) -> PlanOutcome:
        """Build a fresh plan for *app_state*.

        Returns a READY or FAILED outcome. Raises PlanInProgressError when
        the visitor already has a plan running and the policy is reject,
        and PlanCancelled when this run was superseded before finishing.
        """
        run = self._begin(app_state, on_stage)
        try:
            return self._run(run, location, address)
        except PlanCancelled:
            logger.info("Plan superseded after %s", " -> ".join(run.transitions))
            raise
        except Exception:
            logger.exception("Plan failed unexpectedly after %s", " -> ".join(run.transitions))
            self._fail(run, None)
            raise

    def _begin(self, app_state: AppState, on_stage) -> _PlanRun:
        token = CancelToken()
        with app_state.lock:
            if app_state.state not in SETTLED_STATES and app_state.active_token is not None:
                if self.settings.plan.retrigger_policy == POLICY_REJECT:
                    raise PlanInProgressError(
                        f"a plan is already {app_state.state.value}"
                    )
                logger.info("Cancelling in-flight plan (%s)", app_state.state.value)
                app_state.active_token.cancel()
            app_state.active_token = token
            app_state.state = PlanState.IDLE
            # A new trigger discards the previous plan in full
            app_state.plan = None
            app_state.selected_park_name = None
            app_state.parks_view = None
        return _PlanRun(app_state, token, on_stage)

    def _run(self, run: _PlanRun, location, address) -> PlanOutcome:
        # LOCATING
        run.advance(PlanState.LOCATING)
        origin = timed_stage("locating", self._locate, location, address)
        if origin is None:
            return self._fail(run, REASON_NO_LOCATION)

        # RANKING
        run.advance(PlanState.RANKING)
        layers = run.app_state.layers
        parcel, parks, trails = timed_stage("ranking", self._rank, layers, origin)
        if parcel is None:
            return self._fail(run, REASON_NO_AREA)

        # DESCRIBING
        run.advance(PlanState.DESCRIBING)
        destination = select_destination(parcel, parks, trails)
        if destination is None:
            return self._fail(run, REASON_NO_DESTINATION)
        category = destination_category(destination)
        narrative, is_fallback = timed_stage("describing", self._describe, destination, category)
        run.token.raise_if_cancelled()

        # ROUTING
        run.advance(PlanState.ROUTING)
        route = timed_stage("routing", self._route, origin, destination)
        run.token.raise_if_cancelled()

        plan = RecommendationPlan(
            category=category,
            destination=destination,
            quality_score=parcel.get_number(PERCENTILE_KEY),
            narrative=narrative,
            route=route,
            parcel=parcel,
            user_location=origin,
            narrative_is_fallback=is_fallback,
        )
        return self._commit(run, plan)

    # -- stages -------------------------------------------------------------

    def _locate(self, location, address) -> Optional[Coord]:
        if location is not None:
            try:
                lon, lat = float(location[0]), float(location[1])
            except (TypeError, ValueError, IndexError):
                logger.warning("Ignoring malformed location %r", location)
            else:
                return (lon, lat)
        if not address:
            return None
        try:
            return self.mapbox.geocode(address)
        except LocationUnavailable as e:
            logger.warning("Location acquisition failed: %s", e)
            return None

    def _rank(
        self, layers: LayerStore, origin: Coord,
    ) -> Tuple[Optional[GeoFeature], FeatureCollection, FeatureCollection]:
        layers.ensure_loaded([CATEGORY_ENVIRONMENTAL, CATEGORY_PARKS, CATEGORY_BIKE_PATHS])
        parks = layers.get(CATEGORY_PARKS)
        trails = layers.get(CATEGORY_BIKE_PATHS)
        nearby = filter_within_radius(
            origin, self.settings.plan.radius_miles, layers.get(CATEGORY_ENVIRONMENTAL),
        )
        logger.info(
            "Ranking %d parcels within %.1f mi (%d parks, %d trails)",
            len(nearby), self.settings.plan.radius_miles, len(parks), len(trails),
        )
        parcel = best_parcel_containing(nearby, contains_any(parks, trails))
        return parcel, parks, trails

    def _describe(self, destination: GeoFeature, category: str) -> Tuple[str, bool]:
        try:
            return self.narrator.generate(destination, category), False
        except NarrativeError as e:
            logger.warning("Narrative unavailable, using fallback: %s", e)
            degrade_stage("fallback narrative")
            return FALLBACK_NARRATIVE, True

    def _route(self, origin: Coord, destination: GeoFeature) -> Optional[Route]:
        end = destination.representative_point
        if end is None:
            degrade_stage("destination has no point")
            return None
        try:
            return self.mapbox.walking_route(origin, end)
        except DirectionsError as e:
            logger.warning("No walking route: %s", e)
            degrade_stage("no route")
            return None

    # -- terminal transitions ----------------------------------------------

    def _commit(self, run: _PlanRun, plan: RecommendationPlan) -> PlanOutcome:
        app_state = run.app_state
        with app_state.lock:
            if run.token.cancelled or app_state.active_token is not run.token:
                raise PlanCancelled("plan superseded by a newer request")
            app_state.plan = plan
            app_state.state = PlanState.READY
            app_state.active_token = None
            self._tag_selected(app_state, plan)
        run.transitions.append(PlanState.READY.value)
        if run.on_stage:
            run.on_stage(PlanState.READY.value)
        logger.info(
            "Plan ready: %s %r (score=%s, route=%s)",
            plan.category,
            plan.destination.properties.get("common_name") or plan.destination.properties.get("name"),
            plan.quality_score,
            "yes" if plan.route else "no",
        )
        return PlanOutcome(PlanState.READY, plan=plan, transitions=run.transitions)

    def _tag_selected(self, app_state: AppState, plan: RecommendationPlan) -> None:
        """Caller holds app_state.lock."""
        if plan.category != CATEGORY_PARK:
            app_state.selected_park_name = None
            app_state.parks_view = None
            return
        name = plan.destination.properties.get("common_name")
        if not name:
            logger.error("Selected park has no common_name; parks layer left untagged")
            app_state.selected_park_name = None
            app_state.parks_view = None
            return
        app_state.selected_park_name = name
        app_state.parks_view = app_state.layers.get(CATEGORY_PARKS).with_selected(
            lambda f: f.properties.get("common_name") == name
        )

    def _fail(self, run: _PlanRun, reason: Optional[str]) -> PlanOutcome:
        app_state = run.app_state
        with app_state.lock:
            superseded = app_state.active_token is not run.token
            if not superseded:
                app_state.state = PlanState.FAILED
                app_state.active_token = None
        if superseded and reason:
            raise PlanCancelled("plan superseded by a newer request")
        run.transitions.append(PlanState.FAILED.value)
        if reason:
            logger.info("Plan failed: %s", reason)
        return PlanOutcome(PlanState.FAILED, reason=reason, transitions=run.transitions)
