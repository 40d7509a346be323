import os
import sys
import logging
import uuid
from flask import (
    Flask, request, render_template, jsonify, g, Response
)
from flask_wtf.csrf import CSRFProtect
from flask_limiter import Limiter
from flask_limiter.util import get_remote_address
from werkzeug.middleware.proxy_fix import ProxyFix
from dotenv import load_dotenv

load_dotenv()

from gr_trace import TraceContext, set_trace, clear_trace
from settings import Settings
from data_sources import LayerStore
from directions import MapboxClient
from narrative import NarrativeGenerator
from plan_builder import (
    AppStateRegistry, PlanBuilder, PlanCancelled, PlanInProgressError,
)
from map_generator import LAYER_STYLES, render_plan_map
from geo_features import CATEGORY_PARKS
import health_monitor

# ---------------------------------------------------------------------------
# Sentry error tracking: gated on SENTRY_DSN; silent when unset (local dev)
# ---------------------------------------------------------------------------
_sentry_dsn = os.environ.get("SENTRY_DSN")
if _sentry_dsn:
    import sentry_sdk
    from sentry_sdk.integrations.flask import FlaskIntegration
    import requests.exceptions
    from http_client import ServiceError, ServiceRateLimitError

    def _sentry_before_send(event, hint):
        """Demote expected failures to breadcrumbs; only unexpected errors become Sentry events."""
        exc_info = hint.get("exc_info")
        if exc_info:
            exc_type, exc_value, _ = exc_info
            msg = str(exc_value) if exc_value else ""
            # Provider 429s after all retries
            if exc_type is not None and issubclass(exc_type, ServiceRateLimitError):
                sentry_sdk.add_breadcrumb(
                    category="rate_limit",
                    message=msg or "HTTP 429",
                    level="warning",
                )
                return None
            # Upstream data/directions/narrative failures
            if exc_type is not None and issubclass(
                exc_type, (ServiceError, requests.exceptions.RequestException)
            ):
                sentry_sdk.add_breadcrumb(
                    category="upstream",
                    message=msg,
                    level="warning",
                )
                return None
            # Superseded plans are normal user behaviour
            if exc_type is not None and issubclass(exc_type, (PlanCancelled, PlanInProgressError)):
                return None
        return event

    sentry_sdk.init(
        dsn=_sentry_dsn,
        integrations=[FlaskIntegration()],
        traces_sample_rate=0.0,
        release=os.environ.get("RAILWAY_GIT_COMMIT_SHA"),
        environment=os.environ.get("RAILWAY_ENVIRONMENT", "production"),
        before_send=_sentry_before_send,
    )

app = Flask(__name__)
app.config['SECRET_KEY'] = os.environ.get('SECRET_KEY', 'greenroutes-dev-key')
if (not app.config['SECRET_KEY'] or app.config['SECRET_KEY'] == 'greenroutes-dev-key') and os.environ.get('FLASK_DEBUG') != '1':
    print("FATAL: SECRET_KEY is not set. Refusing to start with insecure default.", file=sys.stderr)
    print("Set SECRET_KEY in your environment or .env file.", file=sys.stderr)
    sys.exit(1)

# Proxy fix: the app runs behind a reverse proxy that sets X-Forwarded-For.
# ProxyFix rewrites request.remote_addr to the real client IP so both
# Flask-Limiter and logging see the correct address.
app.wsgi_app = ProxyFix(app.wsgi_app, x_for=1)

# CSRF protection: validates X-CSRFToken header on all POST requests.
# Token is rendered into a <meta> tag in index.html; JS reads it and sends
# it as a header on every fetch() call.
csrf = CSRFProtect(app)

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Rate limiting: plan requests cost an LLM call and a directions call.
# In-memory storage is per-process (with 2 gunicorn workers the effective
# limit is ~2x nominal).
# ---------------------------------------------------------------------------
RATE_LIMIT_DEFAULT = os.environ.get("RATE_LIMIT_DEFAULT", "60/minute")
RATE_LIMIT_PLAN = os.environ.get("RATE_LIMIT_PLAN", "20/hour")

limiter = Limiter(
    get_remote_address,
    app=app,
    default_limits=[RATE_LIMIT_DEFAULT],
    storage_uri="memory://",
)
logging.getLogger("flask-limiter").setLevel(logging.WARNING)

# ---------------------------------------------------------------------------
# Application state: one layer store per process, one AppState per visitor
# ---------------------------------------------------------------------------
SETTINGS = Settings.from_env()
LAYERS = LayerStore(SETTINGS)
REGISTRY = AppStateRegistry(LAYERS)
BUILDER = PlanBuilder(
    SETTINGS,
    narrator=NarrativeGenerator(
        SETTINGS.openai_api_key,
        model=SETTINGS.openai_model,
        url=SETTINGS.endpoints.openai_chat_url,
    ),
    mapbox=MapboxClient(
        SETTINGS.mapbox_token,
        directions_url=SETTINGS.endpoints.mapbox_directions_url,
        geocoding_url=SETTINGS.endpoints.mapbox_geocoding_url,
        bounds=SETTINGS.bounds,
    ),
)
health_monitor.configure_probe("sandag", SETTINGS.endpoints.parks_url)

VISITOR_COOKIE = "gr_vid"

# ---------------------------------------------------------------------------
# Startup: warn immediately if required config is missing
# ---------------------------------------------------------------------------
_missing_at_startup = SETTINGS.missing_keys()
if _missing_at_startup:
    logger.warning(
        "Missing configuration: %s. Affected plan stages and layers will degrade. "
        "For local development, copy .env.example to .env and add your keys.",
        ", ".join(_missing_at_startup),
    )


# ---------------------------------------------------------------------------
# Request ID middleware: every request gets a unique ID for tracing
# ---------------------------------------------------------------------------
def _generate_request_id():
    return uuid.uuid4().hex[:10]


@app.before_request
def _set_request_context():
    """Set visitor ID and request ID on every request."""
    g.request_id = _generate_request_id()

    # Visitor ID: anonymous, cookie-based, keys the visitor's AppState
    g.visitor_id = request.cookies.get(VISITOR_COOKIE)
    if not g.visitor_id:
        g.visitor_id = uuid.uuid4().hex[:12]
        g.set_visitor_cookie = True
    else:
        g.set_visitor_cookie = False


@app.after_request
def _after_request(response):
    """Set the visitor cookie (1 year) on first contact."""
    if getattr(g, "set_visitor_cookie", False):
        response.set_cookie(
            VISITOR_COOKIE, g.visitor_id,
            max_age=365 * 24 * 3600, httponly=True, samesite="Lax"
        )
    return response


def _parse_location(data: dict):
    """(lon, lat) from a plan request body, or None if not supplied."""
    lat = data.get("lat", data.get("latitude"))
    lng = data.get("lng", data.get("lon", data.get("longitude")))
    if lat is None or lng is None:
        return None
    try:
        return float(lng), float(lat)
    except (TypeError, ValueError):
        return None


# ---------------------------------------------------------------------------
# Pages
# ---------------------------------------------------------------------------

@app.route("/")
def index():
    return render_template(
        "index.html",
        mapbox_token=SETTINGS.mapbox_token or "",
        bounds=SETTINGS.bounds.as_list(),
        layer_styles=LAYER_STYLES,
    )


# ---------------------------------------------------------------------------
# Layers
# ---------------------------------------------------------------------------

@app.route("/api/layers")
def layers_summary():
    return jsonify({
        "bounds": SETTINGS.bounds.as_list(),
        "layers": LAYERS.summary(),
        "styles": LAYER_STYLES,
    })


@app.route("/api/layers/<category>")
def layer_geojson(category):
    if category not in LAYERS.categories:
        return jsonify({"error": f"Unknown layer: {category}"}), 404
    if category == CATEGORY_PARKS:
        state = REGISTRY.peek(g.visitor_id)
        collection = state.parks_layer() if state else LAYERS.get(category)
    else:
        collection = LAYERS.get(category)
    return jsonify(collection.to_geojson())


# ---------------------------------------------------------------------------
# Plan
# ---------------------------------------------------------------------------

@app.route("/api/plan", methods=["POST"])
@limiter.limit(RATE_LIMIT_PLAN)
def create_plan():
    """Build a healthy plan for this visitor.

    Accepts JSON: {"lat": 32.7, "lng": -117.1} or {"address": "..."}
    Returns: {"status": "ready"|"failed", "reason", "plan", "_trace"}
    """
    data = request.get_json(silent=True) or {}
    location = _parse_location(data)
    address = (data.get("address") or "").strip() or None

    request_id = getattr(g, "request_id", "unknown")
    trace_ctx = TraceContext(trace_id=request_id)
    set_trace(trace_ctx)
    try:
        outcome = BUILDER.build(REGISTRY.get(g.visitor_id), location=location, address=address)
    except PlanInProgressError as e:
        return jsonify({"error": str(e), "status": "busy"}), 409
    except PlanCancelled:
        return jsonify({
            "error": "Superseded by a newer plan request.",
            "status": "cancelled",
        }), 409
    finally:
        trace_ctx.log_summary()
        clear_trace()

    body = outcome.to_dict(SETTINGS.plan.flyto_zoom)
    body["_trace"] = trace_ctx.summary_dict()
    return jsonify(body)


@app.route("/api/plan")
def current_plan():
    state = REGISTRY.peek(g.visitor_id)
    if state is None or state.plan is None:
        return jsonify({
            "error": "No plan yet.",
            "status": state.state.value if state else "idle",
        }), 404
    return jsonify({
        "status": state.state.value,
        "plan": state.plan.to_dict(SETTINGS.plan.flyto_zoom),
    })


@app.route("/api/plan/map.png")
def plan_map():
    state = REGISTRY.peek(g.visitor_id)
    if state is None or state.plan is None:
        return jsonify({"error": "No plan yet."}), 404
    png = render_plan_map(state.plan)
    if png is None:
        return jsonify({"error": "Map rendering is unavailable right now."}), 503
    return Response(png, mimetype="image/png", headers={"Cache-Control": "no-store"})


# ---------------------------------------------------------------------------
# Health
# ---------------------------------------------------------------------------

@app.route("/healthz")
@limiter.exempt
def healthz():
    """Lightweight health-check endpoint for monitoring."""
    missing = SETTINGS.missing_keys()
    services = health_monitor.get_status()
    return jsonify({
        "status": "ok" if not missing else "degraded",
        "missing_keys": missing,
        "layers": LAYERS.summary(),
        "services": services,
        "services_down": health_monitor.services_down(services),
    }), 200 if not missing else 503


# ---------------------------------------------------------------------------
# Error handlers
# ---------------------------------------------------------------------------

@app.errorhandler(429)
def rate_limit_exceeded(e):
    return jsonify({
        "error": "Too many requests. Please wait and try again.",
    }), 429


@app.errorhandler(404)
def not_found(e):
    return jsonify({"error": "Not found"}), 404


@app.errorhandler(500)
def internal_error(e):
    return jsonify({"error": "Something went wrong. Please try again."}), 500


# ---------------------------------------------------------------------------
# Startup
# ---------------------------------------------------------------------------

if __name__ == "__main__":
    # Development: start the refresher and health monitor in this process
    from refresher import start_refresher
    start_refresher(LAYERS)
    health_monitor.start_monitor()
    port = int(os.environ.get("PORT", 5001))
    debug = os.environ.get("FLASK_DEBUG", "0") == "1"
    app.run(host="0.0.0.0", port=port, debug=debug)
