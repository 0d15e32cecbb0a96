# evfleet/services/availability.py
"""
Booking validation and deployment creation.

Rules run in a fixed order and the first failure wins:

  1. estimated_end_time > start_time, start not in the past (small grace)
  2. pilot exists, is active and holds no scheduled/in_progress deployment
  3. vehicle exists, is active, available, not double-booked, not due in the shop
  4. battery level >= MIN_DEPLOYMENT_BATTERY
  5. vehicle within MAX_START_DISTANCE_KM of the start location
  6. duration <= MAX_DEPLOYMENT_HOURS, notice >= MIN_ADVANCE_NOTICE_MINUTES

The check and the reservation (vehicle -> deployed, new Deployment row)
happen inside one critical section keyed on vehicle + pilot.
"""
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

from flask import current_app

from evfleet.db_models import (
    db,
    ACTIVE_MAINTENANCE_STATUSES,
    Deployment,
    DeploymentHistory,
    MaintenanceLog,
    User,
    Vehicle,
)
from evfleet.services.access_control import Principal
from evfleet.services.deployment_state import active_deployment_for, record_status_change
from evfleet.services.errors import (
    DeploymentError,
    DistanceTooFar,
    DuplicateKey,
    InsufficientBattery,
    MaintenanceRequired,
    PilotUnavailable,
    ValidationFailed,
    VehicleNotFound,
    VehicleUnavailable,
)
from evfleet.services.fleet_registry import get_vehicle
from evfleet.services.locks import run_locked
from evfleet.services.vehicle_selector import criteria_from_config, find_optimal_vehicles
from evfleet.utils.dates import as_utc, utcnow
from evfleet.utils.geo import GeoPoint, haversine_km
from evfleet.utils.ids import DEPLOYMENT_PREFIX, next_sequential_id

# Failures that only concern the candidate vehicle; auto-selection moves on to the next one.
VEHICLE_SPECIFIC_ERRORS = (VehicleUnavailable, MaintenanceRequired, InsufficientBattery, DistanceTooFar)

DEPLOYMENT_ID_ATTEMPTS = 3


@dataclass(frozen=True)
class DeploymentRequest:
    pilot_id: int
    start_time: datetime
    estimated_end_time: datetime
    vehicle_ref: Optional[object] = None
    start_location: Optional[GeoPoint] = None
    purpose: Optional[str] = None
    revenue: Optional[float] = None
    operational_cost: Optional[float] = None
    preferred_make: Optional[str] = None
    required_equipment: tuple[str, ...] = ()
    min_battery_level: Optional[float] = None
    approved_by: Optional[str] = None


@dataclass(frozen=True)
class ValidationLimits:
    min_battery: float = 20.0
    max_start_distance_km: float = 5.0
    max_duration_hours: float = 12.0
    min_advance_notice_minutes: float = 30.0
    start_grace_seconds: float = 60.0

    @classmethod
    def from_config(cls, config) -> "ValidationLimits":
        return cls(
            min_battery=float(config.get("MIN_DEPLOYMENT_BATTERY", 20.0)),
            max_start_distance_km=float(config.get("MAX_START_DISTANCE_KM", 5.0)),
            max_duration_hours=float(config.get("MAX_DEPLOYMENT_HOURS", 12.0)),
            min_advance_notice_minutes=float(config.get("MIN_ADVANCE_NOTICE_MINUTES", 30.0)),
            start_grace_seconds=float(config.get("START_GRACE_SECONDS", 60)),
        )


# -----------------------------------------------------------------------------
# Individual rules
# -----------------------------------------------------------------------------
def check_time_window(start: datetime, end: datetime, now: datetime, limits: ValidationLimits):
    fields = {}
    if start is None:
        fields["start_time"] = "required"
    if end is None:
        fields["estimated_end_time"] = "required"
    if fields:
        return ValidationFailed(fields=fields)

    if end <= start:
        return ValidationFailed(fields={"estimated_end_time": "must be after start_time"})
    if start < now - timedelta(seconds=limits.start_grace_seconds):
        return ValidationFailed(fields={"start_time": "must not be in the past"})
    return None


def check_pilot(pilot_id) -> Optional[DeploymentError]:
    pilot = db.session.get(User, pilot_id) if pilot_id is not None else None
    if pilot is None:
        return PilotUnavailable(ref=pilot_id, reason="pilot not found")
    if not pilot.is_active:
        return PilotUnavailable(ref=pilot_id, reason="pilot is inactive")
    existing = active_deployment_for(pilot_id=pilot_id)
    if existing is not None:
        return PilotUnavailable(
            ref=pilot_id,
            reason=f"pilot already has an active deployment ({existing.deployment_id})",
        )
    return None


def check_vehicle_availability(vehicle: Optional[Vehicle], ref, start: datetime, end: datetime):
    if vehicle is None:
        return VehicleNotFound(ref=ref)
    label = vehicle.vehicle_id
    if not vehicle.is_active:
        return VehicleUnavailable(ref=label, reason="vehicle is inactive")
    if vehicle.status != "available":
        return VehicleUnavailable(ref=label, reason=f"vehicle is {vehicle.status}")
    existing = active_deployment_for(vehicle_id=vehicle.id)
    if existing is not None:
        return VehicleUnavailable(
            ref=label, reason=f"vehicle already has an active deployment ({existing.deployment_id})"
        )

    if vehicle.maintenance_flagged:
        return MaintenanceRequired(ref=label, reason="vehicle is flagged for maintenance")
    clash = (
        db.session.query(MaintenanceLog)
        .filter(
            MaintenanceLog.vehicle_id == vehicle.id,
            MaintenanceLog.status.in_(ACTIVE_MAINTENANCE_STATUSES),
            db.or_(
                MaintenanceLog.status == "in_progress",
                MaintenanceLog.scheduled_date.between(start, end),
            ),
        )
        .first()
    )
    if clash is not None:
        return MaintenanceRequired(
            ref=label,
            reason=f"{clash.maintenance_type} ({clash.maintenance_id}) falls inside the deployment window",
        )
    return None


def check_battery(vehicle: Vehicle, limits: ValidationLimits):
    current = float(vehicle.battery_level or 0.0)
    if current < limits.min_battery:
        return InsufficientBattery(current=current, required=limits.min_battery)
    return None


def check_distance(vehicle: Vehicle, start_location: Optional[GeoPoint], limits: ValidationLimits):
    if start_location is None or not vehicle.has_location:
        return None
    distance = haversine_km(start_location.latitude, start_location.longitude, vehicle.latitude, vehicle.longitude)
    if distance > limits.max_start_distance_km:
        return DistanceTooFar(distance_km=distance, max_km=limits.max_start_distance_km)
    return None


def check_duration(start: datetime, end: datetime, now: datetime, limits: ValidationLimits):
    if (end - start) > timedelta(hours=limits.max_duration_hours):
        return ValidationFailed(
            fields={"estimated_end_time": f"deployment cannot exceed {limits.max_duration_hours:g} hours"}
        )
    if (start - now) < timedelta(minutes=limits.min_advance_notice_minutes):
        return ValidationFailed(
            fields={"start_time": f"requires at least {limits.min_advance_notice_minutes:g} minutes notice"}
        )
    return None


def check_vehicle(vehicle, ref, req: DeploymentRequest, start, end, limits):
    return (
        check_vehicle_availability(vehicle, ref, start, end)
        or check_battery(vehicle, limits)
        or check_distance(vehicle, req.start_location, limits)
    )


def validate_deployment_request(
    req: DeploymentRequest,
    vehicle: Optional[Vehicle],
    now: Optional[datetime] = None,
    limits: Optional[ValidationLimits] = None,
):
    """Returns the vehicle on success, else the first failing rule's error."""
    now = now or utcnow()
    limits = limits or ValidationLimits.from_config(current_app.config)
    start, end = as_utc(req.start_time), as_utc(req.estimated_end_time)

    err = (
        check_time_window(start, end, now, limits)
        or check_pilot(req.pilot_id)
        or check_vehicle(vehicle, req.vehicle_ref, req, start, end, limits)
        or check_duration(start, end, now, limits)
    )
    return err or vehicle


# -----------------------------------------------------------------------------
# Creation
# -----------------------------------------------------------------------------
def _integrity_to_error(pilot_id, vehicle_label):
    def _map(exc):
        msg = str(exc.orig).lower()
        if "deployment_id" in msg:
            return DuplicateKey(field_name="deployment_id", value=None)
        if "pilot" in msg:
            return PilotUnavailable(ref=pilot_id, reason="pilot already has an active deployment")
        if "vehicle" in msg:
            return VehicleUnavailable(ref=vehicle_label, reason="vehicle already has an active deployment")
        return DuplicateKey(field_name="deployment", value=None)
    return _map


def _reserve(req: DeploymentRequest, vehicle_pk: int, principal: Principal, limits: ValidationLimits):
    now = utcnow()
    vehicle = (
        db.session.query(Vehicle)
        .filter(Vehicle.id == vehicle_pk)
        .populate_existing()
        .with_for_update()
        .one_or_none()
    )
    result = validate_deployment_request(req, vehicle, now=now, limits=limits)
    if isinstance(result, DeploymentError):
        return result

    start = as_utc(req.start_time)
    loc = req.start_location
    deployment = Deployment(
        deployment_id=next_sequential_id(Deployment.deployment_id, DEPLOYMENT_PREFIX, now),
        vehicle_id=vehicle.id,
        pilot_id=req.pilot_id,
        start_time=start,
        estimated_end_time=as_utc(req.estimated_end_time),
        start_latitude=loc.latitude if loc else None,
        start_longitude=loc.longitude if loc else None,
        start_address=loc.address if loc else None,
        status="scheduled",
        purpose=req.purpose,
        revenue=req.revenue or 0.0,
        operational_cost=req.operational_cost or 0.0,
        created_by=principal.actor,
        approved_by=req.approved_by,
    )
    deployment.history = DeploymentHistory()
    record_status_change(deployment, None, "scheduled", principal.actor, now, reason="deployment created")

    vehicle.status = "deployed"
    vehicle.assigned_pilot_id = req.pilot_id
    db.session.add(deployment)
    db.session.flush()

    current_app.logger.info(
        "Deployment %s created: vehicle %s -> pilot %s (%s - %s)",
        deployment.deployment_id, vehicle.vehicle_id, req.pilot_id,
        deployment.start_time.isoformat(), deployment.estimated_end_time.isoformat(),
    )
    return deployment


def _create_for_vehicle(req: DeploymentRequest, vehicle_pk: int, vehicle_label, principal, limits):
    # bookings for different vehicles run in parallel; the unique deployment_id
    # column settles two of them picking the same daily sequence number
    for attempt in range(1, DEPLOYMENT_ID_ATTEMPTS + 1):
        result = run_locked(
            [("vehicle", vehicle_pk), ("pilot", req.pilot_id)],
            "create_deployment",
            lambda: _reserve(req, vehicle_pk, principal, limits),
            on_integrity_error=_integrity_to_error(req.pilot_id, vehicle_label),
        )
        if not (isinstance(result, DuplicateKey) and result.field_name == "deployment_id"):
            return result
        current_app.logger.info("Deployment id taken while booking %s, retrying (%d)", vehicle_label, attempt)
    return result


def create_deployment(req: DeploymentRequest, principal: Principal):
    """
    Validate and reserve. Returns the new Deployment or an error result.

    Without a vehicle_ref the selector's candidates are tried in rank order
    and the first one that passes every rule is booked.
    """
    limits = ValidationLimits.from_config(current_app.config)

    if req.vehicle_ref is not None:
        vehicle = get_vehicle(req.vehicle_ref)
        if vehicle is None:
            # rules 1-2 still take precedence over the missing vehicle
            return validate_deployment_request(req, None, limits=limits)
        return _create_for_vehicle(req, vehicle.id, vehicle.vehicle_id, principal, limits)

    now = utcnow()
    err = check_time_window(as_utc(req.start_time), as_utc(req.estimated_end_time), now, limits) or check_pilot(req.pilot_id)
    if err:
        return err

    criteria = criteria_from_config(
        location=req.start_location,
        min_battery_level=req.min_battery_level,
        preferred_make=req.preferred_make,
        required_equipment=tuple(req.required_equipment) or None,
    )
    # commits and rollbacks below expire the ORM rows, so keep plain keys
    targets = [(c.vehicle.id, c.vehicle.vehicle_id) for c in find_optimal_vehicles(criteria)]
    last_error = None
    for vehicle_pk, label in targets:
        result = _create_for_vehicle(req, vehicle_pk, label, principal, limits)
        if not isinstance(result, VEHICLE_SPECIFIC_ERRORS):
            return result
        last_error = result
        current_app.logger.info("Candidate %s skipped: %s", label, result.message)

    current_app.logger.info("No vehicle matched for pilot %s (last error: %s)", req.pilot_id, last_error)
    return VehicleUnavailable(ref=None, reason="no vehicle matches the criteria")
