# evfleet/routes/maintenance.py
from flask import Blueprint, g, jsonify, request

from evfleet.services.errors import DeploymentError, ValidationFailed
from evfleet.services.fleet_registry import serialize_vehicle
from evfleet.services.maintenance import (
    MaintenanceSkipped,
    auto_schedule_maintenance,
    days_until,
    due_offset_days,
    get_due_maintenance,
    serialize_maintenance,
    update_maintenance_status,
)
from evfleet.utils.parsing import float_or_none, int_or_none, str_list, str_or_none
from evfleet.routes.access import error_response, json_body, require_module

maintenance_bp = Blueprint('maintenance', __name__, url_prefix='/api/maintenance')

MODULE = "energy_management"


@maintenance_bp.post("/auto-schedule")
@require_module(MODULE)
def auto_schedule():
    body, bad = json_body()
    if bad:
        return bad

    vehicle_ref = str_or_none(body.get("vehicle_id"))
    if not vehicle_ref:
        return error_response(ValidationFailed(fields={"vehicle_id": "required"}))
    maintenance_type = (str_or_none(body.get("maintenance_type")) or "routine_service").lower()

    result = auto_schedule_maintenance(vehicle_ref, maintenance_type, principal=g.principal)
    if isinstance(result, DeploymentError):
        return error_response(result)
    if isinstance(result, MaintenanceSkipped):
        return jsonify(result.to_dict()), 200

    return jsonify({"scheduled": True, "maintenance": serialize_maintenance(result)}), 201


@maintenance_bp.get("/due")
@require_module(MODULE)
def due():
    days_ahead = int_or_none(request.args.get("days_ahead"))
    if days_ahead is None:
        days_ahead = 7
    if days_ahead < 0 or days_ahead > 365:
        return error_response(ValidationFailed(fields={"days_ahead": "must be between 0 and 365"}))

    report = get_due_maintenance(days_ahead)
    scheduled = []
    for m in report.scheduled:
        row = serialize_maintenance(m)
        row["days_until_due"] = round(days_until(m), 2)
        scheduled.append(row)

    early = []
    for v in report.early_warning:
        row = serialize_vehicle(v)
        row["recommended_within_days"] = due_offset_days(v.mileage_total, v.battery_health)
        early.append(row)

    return jsonify({
        "days_ahead": days_ahead,
        "scheduled_maintenance": scheduled,
        "high_usage_vehicles": early,
        "total_due": report.total_due,
    })


@maintenance_bp.patch("/<ref>/status")
@require_module(MODULE)
def patch_status(ref):
    body, bad = json_body()
    if bad:
        return bad

    new_status = (str_or_none(body.get("status")) or "").lower()
    if not new_status:
        return error_response(ValidationFailed(fields={"status": "required"}))

    raw_cost = body.get("cost")
    cost = float_or_none(raw_cost)
    if raw_cost is not None and cost is None:
        return error_response(ValidationFailed(fields={"cost": "must be a number"}))

    parts = body.get("parts_used")
    if parts is not None and not isinstance(parts, list):
        parts = str_list(parts)

    result = update_maintenance_status(
        ref,
        new_status,
        g.principal,
        cost=cost,
        parts_used=parts,
        notes=str_or_none(body.get("notes")),
    )
    if isinstance(result, DeploymentError):
        return error_response(result)
    return jsonify({"maintenance": serialize_maintenance(result)})
