# evfleet/services/fleet_registry.py
"""
Vehicle records: lookups, serialization and the import boundary.

Onboarding feeds arrive in a few historical shapes (camelCase keys, nested
batteryStatus / mileage objects, lower-case registrations). They are folded
into one canonical dict by normalize_vehicle_payload() before anything is
written; the rest of the code only ever sees Vehicle rows.
"""
from __future__ import annotations

from typing import Any, Optional, Union

from flask import current_app
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from evfleet.db_models import db, Deployment, MaintenanceLog, Vehicle
from evfleet.services.errors import (
    DeploymentError,
    DuplicateKey,
    InternalError,
    ValidationFailed,
    VehicleNotFound,
    VehicleUnavailable,
)
from evfleet.services.locks import run_locked
from evfleet.utils.dates import isoformat_or_none, parse_timestamp, utcnow
from evfleet.utils.ids import next_vehicle_id
from evfleet.utils.parsing import float_or_none, int_or_none, str_list, str_or_none, bool_or_none

VEHICLE_STATUSES = ("available", "deployed", "maintenance", "charging", "out_of_service")


def get_vehicle(ref: Union[int, str, None], for_update: bool = False) -> Optional[Vehicle]:
    """Resolve a vehicle by primary key, vehicle_id (EVZ_VEH_001) or registration number."""
    if ref is None:
        return None

    q = db.session.query(Vehicle)
    if for_update:
        q = q.populate_existing().with_for_update()

    if isinstance(ref, int) and not isinstance(ref, bool):
        return q.filter(Vehicle.id == ref).one_or_none()

    s = str(ref).strip()
    if not s:
        return None
    if s.isdigit():
        return q.filter(Vehicle.id == int(s)).one_or_none()

    vehicle = q.filter(Vehicle.vehicle_id == s).one_or_none()
    if vehicle is None:
        vehicle = q.filter(Vehicle.registration_number == s.upper()).one_or_none()
    return vehicle


def list_available_vehicles(min_battery: Optional[float] = None, make: Optional[str] = None) -> list[Vehicle]:
    q = db.session.query(Vehicle).filter(Vehicle.status == "available", Vehicle.is_active.is_(True))
    if min_battery is not None:
        q = q.filter(Vehicle.battery_level >= min_battery)
    if make:
        q = q.filter(db.func.lower(Vehicle.make) == make.strip().lower())
    return q.order_by(Vehicle.battery_level.desc(), Vehicle.vehicle_id.asc()).all()


def serialize_vehicle(v: Vehicle) -> dict:
    return {
        "id": v.id,
        "vehicle_id": v.vehicle_id,
        "registration_number": v.registration_number,
        "make": v.make,
        "model": v.model,
        "year": v.year,
        "status": v.status,
        "is_active": v.is_active,
        "battery_level": v.battery_level,
        "battery_health": v.battery_health,
        "mileage_total": v.mileage_total,
        "special_equipment": list(v.special_equipment or []),
        "location": (
            {
                "latitude": v.latitude,
                "longitude": v.longitude,
                "updated_at": isoformat_or_none(v.location_updated_at),
            }
            if v.has_location
            else None
        ),
        "assigned_pilot_id": v.assigned_pilot_id,
        "maintenance_flagged": v.maintenance_flagged,
        "last_maintenance_date": isoformat_or_none(v.last_maintenance_date),
        "current_hub": v.current_hub,
    }


def _first(body: dict, *keys):
    for key in keys:
        if key in body and body[key] is not None:
            return body[key]
    return None


def normalize_vehicle_payload(body: dict) -> tuple[Optional[dict], Optional[ValidationFailed]]:
    """
    Fold legacy/camelCase vehicle payloads into the canonical column dict.

    Returns (canonical, None) or (None, ValidationFailed).
    """
    errors = {}

    registration = str_or_none(_first(body, "registration_number", "registrationNumber"))
    if not registration:
        errors["registration_number"] = "required"

    make = str_or_none(_first(body, "make", "brand"))
    model = str_or_none(body.get("model"))
    if not make:
        errors["make"] = "required"
    if not model:
        errors["model"] = "required"

    battery = body.get("batteryStatus") if isinstance(body.get("batteryStatus"), dict) else {}
    battery_level = float_or_none(_first(body, "battery_level", "batteryLevel"))
    if battery_level is None:
        battery_level = float_or_none(battery.get("currentLevel"))
    battery_health = float_or_none(_first(body, "battery_health", "batteryHealth"))
    if battery_health is None:
        battery_health = float_or_none(battery.get("health"))

    for name, value in (("battery_level", battery_level), ("battery_health", battery_health)):
        if value is not None and not 0.0 <= value <= 100.0:
            errors[name] = "must be between 0 and 100"

    mileage_raw = _first(body, "mileage_total", "mileage")
    if isinstance(mileage_raw, dict):
        mileage_raw = mileage_raw.get("total")
    mileage = float_or_none(mileage_raw)
    if mileage is not None and mileage < 0:
        errors["mileage_total"] = "must be >= 0"

    status = str_or_none(body.get("status"))
    if status is not None:
        status = status.lower()
        if status not in VEHICLE_STATUSES:
            errors["status"] = f"must be one of {', '.join(VEHICLE_STATUSES)}"

    location = _first(body, "location", "currentLocation") or {}
    lat = float_or_none(_first(location, "latitude", "lat")) if isinstance(location, dict) else None
    lng = float_or_none(_first(location, "longitude", "lng")) if isinstance(location, dict) else None

    if errors:
        return None, ValidationFailed(fields=errors)

    canonical: dict[str, Any] = {
        "registration_number": registration.upper().replace(" ", ""),
        "make": make,
        "model": model,
    }
    # optional columns are only written when the feed carries them
    optional = (
        ("vehicle_id", ("vehicle_id", "vehicleId"), str_or_none),
        ("year", ("year",), int_or_none),
        ("color", ("color",), str_or_none),
        ("current_hub", ("current_hub", "currentHub"), str_or_none),
        ("special_equipment", ("special_equipment", "specialEquipment"), str_list),
    )
    for column, keys, parse in optional:
        if any(k in body for k in keys):
            canonical[column] = parse(_first(body, *keys))
    if status is not None:
        canonical["status"] = status
    if battery_level is not None:
        canonical["battery_level"] = battery_level
    if battery_health is not None:
        canonical["battery_health"] = battery_health
    if mileage is not None:
        canonical["mileage_total"] = mileage
    if lat is not None and lng is not None:
        canonical["latitude"] = lat
        canonical["longitude"] = lng
        canonical["location_updated_at"] = (
            parse_timestamp(location.get("timestamp") or location.get("lastUpdated")) or utcnow()
        )
    is_active = bool_or_none(_first(body, "is_active", "isActive"))
    if is_active is not None:
        canonical["is_active"] = is_active
    return canonical, None


# Deployments in these states hold the vehicle; only their lifecycle moves its status.
HOLDING_DEPLOYMENT_STATUSES = ("scheduled", "in_progress", "emergency_stop")


def status_held_by(vehicle_pk: int) -> Optional[str]:
    """The deployment or maintenance job that owns the vehicle's status, if any."""
    deployment = (
        db.session.query(Deployment.deployment_id)
        .filter(Deployment.vehicle_id == vehicle_pk, Deployment.status.in_(HOLDING_DEPLOYMENT_STATUSES))
        .first()
    )
    if deployment is not None:
        return f"deployment {deployment[0]}"
    maintenance = (
        db.session.query(MaintenanceLog.maintenance_id)
        .filter(MaintenanceLog.vehicle_id == vehicle_pk, MaintenanceLog.status == "in_progress")
        .first()
    )
    if maintenance is not None:
        return f"maintenance {maintenance[0]}"
    return None


def _create_vehicle(canonical: dict):
    vehicle = Vehicle(vehicle_id=canonical.pop("vehicle_id", None) or next_vehicle_id(Vehicle.vehicle_id))
    db.session.add(vehicle)
    for key, value in canonical.items():
        setattr(vehicle, key, value)

    try:
        db.session.commit()
    except IntegrityError:
        db.session.rollback()
        return DuplicateKey(field_name="vehicle_id", value=vehicle.vehicle_id)
    except SQLAlchemyError:
        db.session.rollback()
        current_app.logger.exception("Failed to save vehicle %s", canonical.get("registration_number"))
        return InternalError()
    return vehicle, True


def upsert_vehicle(body: dict):
    """
    Create or update a vehicle from a raw payload, matched on registration number.
    Returns (vehicle, created) or an error result.

    An update only writes the columns the payload carries. A feed can never
    mark a vehicle deployed, and can't change its status at all while a
    deployment or a running maintenance job holds it.
    """
    canonical, err = normalize_vehicle_payload(body)
    if err:
        return err
    if canonical.get("status") == "deployed":
        return ValidationFailed(fields={"status": "deployed is set by booking a deployment"})

    existing = (
        db.session.query(Vehicle)
        .filter(Vehicle.registration_number == canonical["registration_number"])
        .one_or_none()
    )
    if existing is None:
        return _create_vehicle(canonical)

    vehicle_pk = existing.id
    canonical.pop("vehicle_id", None)
    new_status = canonical.pop("status", None)

    def _apply():
        vehicle = (
            db.session.query(Vehicle)
            .filter(Vehicle.id == vehicle_pk)
            .populate_existing()
            .with_for_update()
            .one()
        )
        if new_status is not None and new_status != vehicle.status:
            holder = status_held_by(vehicle_pk)
            if holder:
                return VehicleUnavailable(ref=vehicle.vehicle_id, reason=f"status is managed by {holder}")
            vehicle.status = new_status
        for key, value in canonical.items():
            setattr(vehicle, key, value)
        return vehicle

    result = run_locked([("vehicle", vehicle_pk)], "import_vehicle", _apply)
    if isinstance(result, DeploymentError):
        return result
    return result, False


def require_vehicle(ref):
    vehicle = get_vehicle(ref)
    if vehicle is None:
        return VehicleNotFound(ref=ref)
    return vehicle
