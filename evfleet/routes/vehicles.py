# evfleet/routes/vehicles.py
from flask import Blueprint, jsonify, request

from evfleet.services.errors import ValidationFailed, VehicleNotFound
from evfleet.services.fleet_registry import get_vehicle, list_available_vehicles, serialize_vehicle
from evfleet.services.vehicle_selector import criteria_from_config, find_optimal_vehicles
from evfleet.utils.parsing import bool_or_none, float_or_none, int_or_none, parse_location, str_list, str_or_none
from evfleet.routes.access import error_response, json_body, require_module

vehicles_bp = Blueprint('vehicles', __name__, url_prefix='/api/vehicles')

MODULE = "vehicle_deployment"


# -----------------------------------------------------------------------------
# POST /api/vehicles/optimal
# Ranks candidates for a trip. Read-only: nothing is reserved, so the verb
# checked against the permission matrix is GET.
# -----------------------------------------------------------------------------
@vehicles_bp.post("/optimal")
@require_module(MODULE, verb="GET")
def optimal():
    body, bad = json_body()
    if bad:
        return bad

    errors = {}
    location, loc_err = parse_location(body.get("location"))
    if loc_err:
        errors["location"] = loc_err

    min_battery = float_or_none(body.get("min_battery_level"))
    if min_battery is not None and not 0 <= min_battery <= 100:
        errors["min_battery_level"] = "must be between 0 and 100"
    max_distance = float_or_none(body.get("max_distance_km"))
    if max_distance is not None and max_distance <= 0:
        errors["max_distance_km"] = "must be > 0"
    limit = int_or_none(body.get("limit"))
    if limit is not None and limit <= 0:
        errors["limit"] = "must be > 0"
    if errors:
        return error_response(ValidationFailed(fields=errors))

    criteria = criteria_from_config(
        location=location,
        min_battery_level=min_battery,
        max_distance_km=max_distance,
        preferred_make=str_or_none(body.get("preferred_make")),
        requires_special_equipment=bool_or_none(body.get("requires_special_equipment")),
        required_equipment=tuple(str_list(body.get("required_equipment"))) or None,
    )
    ranked = find_optimal_vehicles(criteria, limit=limit)
    return jsonify({
        "vehicles": [r.to_dict(serialize_vehicle) for r in ranked],
        "count": len(ranked),
        "criteria": {
            "location": location.to_dict() if location else None,
            "min_battery_level": criteria.min_battery_level,
            "max_distance_km": criteria.max_distance_km,
            "preferred_make": criteria.preferred_make,
        },
    })


@vehicles_bp.get("/available")
@require_module(MODULE)
def available():
    rows = list_available_vehicles(
        min_battery=float_or_none(request.args.get("min_battery")),
        make=str_or_none(request.args.get("make")),
    )
    return jsonify({"vehicles": [serialize_vehicle(v) for v in rows], "count": len(rows)})


@vehicles_bp.get("/<ref>")
@require_module(MODULE)
def show(ref):
    vehicle = get_vehicle(ref)
    if vehicle is None:
        return error_response(VehicleNotFound(ref=ref))
    return jsonify({"vehicle": serialize_vehicle(vehicle)})
