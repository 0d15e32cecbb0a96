# evfleet/routes/deployments.py
from flask import Blueprint, current_app, g, jsonify, request

from evfleet.services.access_control import can_act_on_deployment, require_role_level
from evfleet.services.availability import DeploymentRequest, create_deployment
from evfleet.services.deployment_state import (
    DEPLOYMENT_STATUSES,
    cancel_deployment,
    get_deployment,
    list_deployments,
    serialize_deployment,
    serialize_history,
    update_deployment_status,
)
from evfleet.services.errors import DeploymentError, DeploymentNotFound, ValidationFailed
from evfleet.services.tracking import TrackingSample, get_tracking_dispatcher, ingest_tracking
from evfleet.utils.dates import parse_timestamp, utcnow
from evfleet.utils.parsing import float_or_none, int_or_none, parse_location, str_list, str_or_none
from evfleet.routes.access import error_response, json_body, require_module

deployments_bp = Blueprint('deployments', __name__, url_prefix='/api/deployments')

MODULE = "vehicle_deployment"


def _is_staff(principal) -> bool:
    return require_role_level(principal.role, ("employee", "admin", "super_admin"))


# -----------------------------------------------------------------------------
# POST /api/deployments
# Books a vehicle for a pilot. Without vehicle_id the best-ranked vehicle
# near start_location that passes every booking rule is picked.
# -----------------------------------------------------------------------------
@deployments_bp.post("")
@require_module(MODULE)
def create():
    body, bad = json_body()
    if bad:
        return bad

    errors = {}
    pilot_id = int_or_none(body.get("pilot_id"))
    if pilot_id is None:
        errors["pilot_id"] = "required"

    start_time = parse_timestamp(body.get("start_time"))
    if start_time is None:
        errors["start_time"] = "required ISO-8601 timestamp"
    end_time = parse_timestamp(body.get("estimated_end_time"))
    if end_time is None:
        errors["estimated_end_time"] = "required ISO-8601 timestamp"

    start_location, loc_err = parse_location(body.get("start_location"))
    if loc_err:
        errors["start_location"] = loc_err

    revenue = float_or_none(body.get("revenue"))
    cost = float_or_none(body.get("operational_cost"))
    if revenue is not None and revenue < 0:
        errors["revenue"] = "must be >= 0"
    if cost is not None and cost < 0:
        errors["operational_cost"] = "must be >= 0"

    if errors:
        return error_response(ValidationFailed(fields=errors))

    req = DeploymentRequest(
        pilot_id=pilot_id,
        start_time=start_time,
        estimated_end_time=end_time,
        vehicle_ref=str_or_none(body.get("vehicle_id")),
        start_location=start_location,
        purpose=str_or_none(body.get("purpose")),
        revenue=revenue,
        operational_cost=cost,
        preferred_make=str_or_none(body.get("preferred_make")),
        required_equipment=tuple(str_list(body.get("required_equipment"))),
        min_battery_level=float_or_none(body.get("min_battery_level")),
        approved_by=str_or_none(body.get("approved_by")),
    )

    result = create_deployment(req, g.principal)
    if isinstance(result, DeploymentError):
        return error_response(result)
    return jsonify({"deployment": serialize_deployment(result)}), 201


@deployments_bp.get("")
@require_module(MODULE)
def index():
    statuses = str_list(request.args.get("status"))
    unknown = [s for s in statuses if s not in DEPLOYMENT_STATUSES]
    if unknown:
        return error_response(ValidationFailed(fields={"status": f"unknown status {', '.join(unknown)}"}))

    pilot_id = int_or_none(request.args.get("pilot_id"))
    if not _is_staff(g.principal):
        # pilots only ever see their own deployments
        pilot_id = g.principal.user_id if g.principal.user_id is not None else -1

    limit = int_or_none(request.args.get("limit")) or 200
    rows = list_deployments(
        status=statuses or None,
        pilot_id=pilot_id,
        vehicle_id=int_or_none(request.args.get("vehicle_id")),
        limit=max(1, min(limit, 1000)),
    )
    return jsonify({"deployments": [serialize_deployment(d) for d in rows], "count": len(rows)})


@deployments_bp.get("/<ref>")
@require_module(MODULE)
def show(ref):
    deployment = get_deployment(ref)
    if deployment is None:
        return error_response(DeploymentNotFound(ref=ref))
    denied = can_act_on_deployment(g.principal, deployment, "read")
    if denied:
        return error_response(denied)
    return jsonify({"deployment": serialize_deployment(deployment)})


@deployments_bp.get("/<ref>/history")
@require_module(MODULE)
def history(ref):
    deployment = get_deployment(ref)
    if deployment is None:
        return error_response(DeploymentNotFound(ref=ref))
    denied = can_act_on_deployment(g.principal, deployment, "read")
    if denied:
        return error_response(denied)
    if deployment.history is None:
        return jsonify({"history": None})
    return jsonify({"history": serialize_history(deployment.history)})


@deployments_bp.patch("/<ref>/status")
@require_module(MODULE)
def patch_status(ref):
    body, bad = json_body()
    if bad:
        return bad

    new_status = (str_or_none(body.get("status")) or "").lower()
    if not new_status:
        return error_response(ValidationFailed(fields={"status": "required"}))

    errors = {}
    actual_end_time = None
    if body.get("actual_end_time") is not None:
        actual_end_time = parse_timestamp(body.get("actual_end_time"))
        if actual_end_time is None:
            errors["actual_end_time"] = "must be an ISO-8601 timestamp"
    elif new_status == "completed":
        actual_end_time = utcnow()

    end_location, loc_err = parse_location(body.get("end_location"))
    if loc_err:
        errors["end_location"] = loc_err
    if errors:
        return error_response(ValidationFailed(fields=errors))

    result = update_deployment_status(
        ref,
        new_status,
        g.principal,
        reason=str_or_none(body.get("reason")),
        actual_end_time=actual_end_time,
        end_location=end_location,
        revenue=float_or_none(body.get("revenue")),
        operational_cost=float_or_none(body.get("operational_cost")),
    )
    if isinstance(result, DeploymentError):
        return error_response(result)
    return jsonify({"deployment": serialize_deployment(result)})


@deployments_bp.post("/<ref>/cancel")
@require_module(MODULE, verb="PATCH")
def cancel(ref):
    body, bad = json_body()
    if bad:
        return bad

    result = cancel_deployment(ref, g.principal, reason=str_or_none(body.get("reason")))
    if isinstance(result, DeploymentError):
        return error_response(result)
    return jsonify({"deployment": serialize_deployment(result)})


# -----------------------------------------------------------------------------
# POST /api/deployments/<ref>/tracking
# One telemetry sample. Runs on the tracking pool; the response reports the
# telemetry outcome and any requested status change separately.
# -----------------------------------------------------------------------------
def _ingest_job(ref, sample, principal):
    result = ingest_tracking(ref, sample, principal)
    if isinstance(result, DeploymentError):
        return result.to_dict(), result.http_status
    return result.to_dict(), 200


@deployments_bp.post("/<ref>/tracking")
@require_module(MODULE, verb="PATCH")
def tracking(ref):
    body, bad = json_body()
    if bad:
        return bad

    errors = {}
    raw_ts = body.get("timestamp")
    recorded_at = parse_timestamp(raw_ts) if raw_ts is not None else utcnow()
    if recorded_at is None:
        errors["timestamp"] = "must be an ISO-8601 timestamp or epoch seconds"

    location, loc_err = parse_location(body.get("location"))
    if loc_err:
        errors["location"] = loc_err

    numbers = {}
    for key in ("battery_level", "speed", "odometer"):
        raw = body.get(key)
        numbers[key] = float_or_none(raw)
        if raw is not None and numbers[key] is None:
            errors[key] = "must be a number"

    if errors:
        return error_response(ValidationFailed(fields=errors))

    status = str_or_none(body.get("status"))
    sample = TrackingSample(
        recorded_at=recorded_at,
        location=location,
        battery_level=numbers["battery_level"],
        speed=numbers["speed"],
        odometer=numbers["odometer"],
        status=status.lower() if status else None,
        reason=str_or_none(body.get("reason")),
    )

    outcome = get_tracking_dispatcher().run(_ingest_job, ref, sample, g.principal)
    if isinstance(outcome, DeploymentError):
        current_app.logger.warning("Tracking for %s gave up: %s", ref, outcome.message)
        return error_response(outcome)

    payload, status_code = outcome
    return jsonify(payload), status_code
