# evfleet/routes/analytics.py
from datetime import timedelta

from flask import Blueprint, current_app, jsonify, request
from flask_caching import Cache

from evfleet.services.analytics import analyze_fleet_utilization, generate_deployment_report, get_deployment_analytics
from evfleet.services.errors import ValidationFailed
from evfleet.utils.dates import parse_timestamp, utcnow
from evfleet.utils.parsing import bool_or_none, int_or_none, str_list
from evfleet.routes.access import error_response, require_module

# Backend comes from app.config (CACHE_TYPE / CACHE_DEFAULT_TIMEOUT)
cache = Cache()


def init_cache(app):
    cache.init_app(app)
    app.logger.info("Analytics cache: %s", app.config.get("CACHE_TYPE"))


analytics_bp = Blueprint('analytics', __name__, url_prefix='/api/analytics')

MODULE = "trip_analytics"


def _window(default_days=30):
    """(start, end, None) from ?start=&end=, or (None, None, error response)."""
    errors = {}
    end = utcnow()
    if request.args.get("end"):
        end = parse_timestamp(request.args.get("end"))
        if end is None:
            errors["end"] = "must be an ISO-8601 timestamp"
    start = None
    if request.args.get("start"):
        start = parse_timestamp(request.args.get("start"))
        if start is None:
            errors["start"] = "must be an ISO-8601 timestamp"
    if errors:
        return None, None, error_response(ValidationFailed(fields=errors))

    start = start or end - timedelta(days=default_days)
    if start >= end:
        return None, None, error_response(ValidationFailed(fields={"start": "must be before end"}))
    return start, end, None


def _int_ids(raw):
    ids = []
    for item in str_list(raw):
        value = int_or_none(item)
        if value is not None:
            ids.append(value)
    return ids


@analytics_bp.get("/deployments")
@require_module(MODULE)
@cache.cached(timeout=300, query_string=True)  # Cache for 5 minutes (300 seconds)
def deployments():
    start, end, bad = _window()
    if bad:
        return bad

    top_n = int_or_none(request.args.get("top")) or 5
    result = get_deployment_analytics(
        start,
        end,
        vehicle_id=int_or_none(request.args.get("vehicle_id")),
        pilot_id=int_or_none(request.args.get("pilot_id")),
        top_n=max(1, min(top_n, 50)),
    )
    current_app.logger.info(
        "Deployment analytics %s -> %s: %d deployments",
        start.isoformat(), end.isoformat(), result["summary"]["total_deployments"],
    )
    return jsonify(result)


@analytics_bp.get("/report")
@require_module(MODULE)
@cache.cached(timeout=300, query_string=True)
def report():
    start, end, bad = _window()
    if bad:
        return bad

    include_details = bool_or_none(request.args.get("include_details"))
    result = generate_deployment_report(
        start,
        end,
        vehicle_ids=_int_ids(request.args.get("vehicle_ids")),
        pilot_ids=_int_ids(request.args.get("pilot_ids")),
        include_details=True if include_details is None else include_details,
    )
    return jsonify(result)


@analytics_bp.get("/fleet-utilization")
@require_module(MODULE)
@cache.cached(timeout=300, query_string=True)
def fleet_utilization():
    days = int_or_none(request.args.get("days")) or 30
    if days <= 0 or days > 365:
        return error_response(ValidationFailed(fields={"days": "must be between 1 and 365"}))
    return jsonify(analyze_fleet_utilization(days=days))
