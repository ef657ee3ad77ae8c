import os
import logging
import hmac
import uuid

from flask import Flask, request, jsonify, g
from flask_limiter import Limiter
from flask_limiter.util import get_remote_address
from werkzeug.middleware.proxy_fix import ProxyFix
from dotenv import load_dotenv

# .env must be loaded before preview_config reads the environment
load_dotenv()

from sr_trace import TraceContext, set_trace, clear_trace  # noqa: E402
from route_preview import (  # noqa: E402
    PreviewError,
    NoImageryError,
    PreviewTimeoutError,
    build_default_service,
)
from preview_config import (  # noqa: E402
    CACHE_ADMIN_SECRET,
    DEFAULT_MAX_POINTS,
    DEFAULT_SAMPLING_DISTANCE_M,
    DEFAULT_TIMEOUT_MS,
    MAX_POINTS_RANGE,
    SAMPLING_DISTANCE_RANGE_M,
    TIMEOUT_MS_RANGE,
)

# ---------------------------------------------------------------------------
# Sentry error tracking: gated on SENTRY_DSN; silent when unset (local dev)
# ---------------------------------------------------------------------------
_sentry_dsn = os.environ.get("SENTRY_DSN")
if _sentry_dsn:
    import sentry_sdk
    from sentry_sdk.integrations.flask import FlaskIntegration
    import requests.exceptions

    def _sentry_before_send(event, hint):
        """Demote expected failures to breadcrumbs; only unexpected errors become Sentry events."""
        exc_info = hint.get("exc_info")
        if exc_info:
            exc_type, exc_value, _ = exc_info
            msg = str(exc_value) if exc_value else ""
            # Routes without coverage, slow imagery fetches
            if exc_type is not None and issubclass(exc_type, (NoImageryError, PreviewTimeoutError)):
                sentry_sdk.add_breadcrumb(
                    category="preview",
                    message=msg,
                    level="warning",
                )
                return None
            # Google API timeouts / request failures
            if exc_type is not None and issubclass(exc_type, requests.exceptions.RequestException):
                sentry_sdk.add_breadcrumb(
                    category="google_api",
                    message=msg,
                    level="warning",
                )
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

# Behind a reverse proxy: ProxyFix rewrites request.remote_addr to the real
# client IP so both Flask-Limiter and logging see the correct address.
app.wsgi_app = ProxyFix(app.wsgi_app, x_for=1)

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Rate limiting: preview generation costs Street View + Vision quota.
# In-memory storage is per-process (with 2 gunicorn workers the effective
# limit is ~2x nominal).
# ---------------------------------------------------------------------------
RATE_LIMIT_DEFAULT = os.environ.get("RATE_LIMIT_DEFAULT", "60/minute")
RATE_LIMIT_PREVIEW = os.environ.get("RATE_LIMIT_PREVIEW", "10/minute")

limiter = Limiter(
    get_remote_address,
    app=app,
    default_limits=[RATE_LIMIT_DEFAULT],
    storage_uri="memory://",
)
logging.getLogger("flask-limiter").setLevel(logging.WARNING)

# ---------------------------------------------------------------------------
# Startup: warn immediately if required config is missing
# ---------------------------------------------------------------------------
REQUIRED_KEYS = ("GOOGLE_MAPS_API_KEY", "GOOGLE_CLOUD_VISION_API_KEY")

for _key in REQUIRED_KEYS:
    if not os.environ.get(_key):
        logger.warning(
            "%s is not set. Route previews will fail until it is configured. "
            "For local development, add it to a .env file.",
            _key,
        )

# Built once per process; tests swap it for a service over a MemoryStore.
preview_service = build_default_service()


# ---------------------------------------------------------------------------
# Request ID + trace middleware
# ---------------------------------------------------------------------------
def _generate_request_id():
    return uuid.uuid4().hex[:10]


@app.before_request
def _set_request_context():
    """Give every request an ID and a fresh trace context."""
    g.request_id = _generate_request_id()
    g.trace = TraceContext(trace_id=g.request_id)
    set_trace(g.trace)


@app.teardown_request
def _finish_trace(exc):
    trace = getattr(g, "trace", None)
    if trace is not None and trace.stages:
        trace.log_summary()
    clear_trace()


def _check_service_config():
    """
    Validate required service configuration.
    Returns (is_ok, missing_keys) tuple.
    """
    missing = [key for key in REQUIRED_KEYS if not os.environ.get(key)]
    return (len(missing) == 0, missing)


def _error(message, status, **extra):
    body = {"error": message, "request_id": getattr(g, "request_id", "unknown")}
    body.update(extra)
    return jsonify(body), status


def _json_body():
    body = request.get_json(silent=True)
    return body if isinstance(body, dict) else {}


def _coordinates_from_body(body):
    coordinates = body.get("coordinates")
    if not isinstance(coordinates, list) or len(coordinates) < 2:
        raise ValueError("coordinates must be a list of at least 2 points")
    return coordinates


def _bounded(body, name, default, cast, bounds):
    value = cast(body.get(name, default))
    low, high = bounds
    if not low <= value <= high:
        raise ValueError(f"{name} must be between {low} and {high}, got {value}")
    return value


def _preview_options(body):
    """Pipeline options from the request body, with environment defaults."""
    return {
        "sampling_distance": _bounded(
            body, "sampling_distance", DEFAULT_SAMPLING_DISTANCE_M, float, SAMPLING_DISTANCE_RANGE_M,
        ),
        "max_points": _bounded(body, "max_points", DEFAULT_MAX_POINTS, int, MAX_POINTS_RANGE),
        "timeout_ms": _bounded(body, "timeout_ms", DEFAULT_TIMEOUT_MS, int, TIMEOUT_MS_RANGE),
    }


def _is_cache_admin(req):
    """True when the request carries the cache admin secret.

    Sent as the X-Admin-Key header. With CACHE_ADMIN_SECRET unset nobody
    qualifies.
    """
    if not CACHE_ADMIN_SECRET:
        return False
    supplied = req.headers.get("X-Admin-Key", "")
    return hmac.compare_digest(supplied.encode(), CACHE_ADMIN_SECRET.encode())


# ---------------------------------------------------------------------------
# Preview API
# ---------------------------------------------------------------------------
@app.route("/api/preview", methods=["POST"])
@limiter.limit(RATE_LIMIT_PREVIEW)
def create_preview():
    """Generate (or return the cached) safety preview for a route."""
    request_id = g.request_id
    body = _json_body()

    try:
        coordinates = _coordinates_from_body(body)
        options = _preview_options(body)
    except (TypeError, ValueError, OverflowError) as e:
        return _error(str(e), 400)

    config_ok, missing_keys = _check_service_config()
    if not config_ok:
        logger.error("[%s] Missing required env vars: %s", request_id, missing_keys)
        return _error("Service is not configured", 503, missing_keys=missing_keys)

    use_cache = body.get("use_cache", True) is not False

    try:
        if use_cache:
            cached = preview_service.get_cached_preview(coordinates)
            if cached is not None:
                g.trace.cache_hit = True
                return jsonify(dict(cached.to_dict(), from_cache=True))
        preview = preview_service.generate_preview(coordinates, use_cache=False, **options)
    except ValueError as e:
        return _error(str(e), 400)
    except PreviewError as e:
        logger.warning("[%s] Preview failed, serving fallback: %s", request_id, e)
        try:
            fallback = preview_service.generate_fallback_preview(coordinates)
        except ValueError as fallback_error:
            return _error(str(fallback_error), 400)
        return jsonify(dict(
            fallback.to_dict(), from_cache=False, fallback=True, error=str(e),
        ))

    logger.info(
        "[%s] Preview generated: score=%.1f grade=%s",
        request_id,
        preview.statistics.overall_safety_score,
        preview.statistics.grade,
    )
    return jsonify(dict(preview.to_dict(), from_cache=False))


@app.route("/api/preview/cached", methods=["POST"])
def cached_preview():
    """Return a live cached preview without generating one."""
    body = _json_body()
    try:
        coordinates = _coordinates_from_body(body)
    except ValueError as e:
        return _error(str(e), 400)

    preview = preview_service.get_cached_preview(coordinates)
    if preview is None:
        return _error("No cached preview for this route", 404)
    return jsonify(dict(preview.to_dict(), from_cache=True))


@app.route("/api/preview/fallback", methods=["POST"])
@limiter.limit(RATE_LIMIT_PREVIEW)
def fallback_preview():
    """Imagery-only preview, no AI analysis."""
    body = _json_body()
    try:
        coordinates = _coordinates_from_body(body)
        preview = preview_service.generate_fallback_preview(coordinates)
    except ValueError as e:
        return _error(str(e), 400)
    return jsonify(dict(preview.to_dict(), from_cache=False, fallback=True))


@app.route("/api/cache", methods=["DELETE"])
def clear_cache():
    if not _is_cache_admin(request):
        logger.warning("[%s] Rejected cache clear without admin key", g.request_id)
        return _error("Forbidden", 403)
    counts = preview_service.clear_all_caches()
    logger.info("[%s] Caches cleared: %s", g.request_id, counts)
    return jsonify({"cleared": counts})


@app.route("/healthz")
@limiter.exempt
def healthz():
    """Lightweight health-check endpoint for monitoring."""
    config_ok, missing = _check_service_config()
    return jsonify({
        "status": "ok" if config_ok else "degraded",
        "missing_keys": missing,
    }), 200 if config_ok else 503


# ---------------------------------------------------------------------------
# Error handlers (JSON only)
# ---------------------------------------------------------------------------
@app.errorhandler(429)
def rate_limit_exceeded(e):
    return jsonify({
        "error": "Too many requests. Please wait and try again.",
    }), 429


@app.errorhandler(404)
def not_found(e):
    return jsonify({"error": "Not found"}), 404


@app.errorhandler(405)
def method_not_allowed(e):
    return jsonify({"error": "Method not allowed"}), 405


@app.errorhandler(500)
def internal_error(e):
    return jsonify({"error": "Internal server error"}), 500


if __name__ == "__main__":
    port = int(os.environ.get("PORT", 5001))
    debug = os.environ.get("FLASK_DEBUG", "0") == "1"
    app.run(host="0.0.0.0", port=port, debug=debug)
