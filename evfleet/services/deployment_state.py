# evfleet/services/deployment_state.py
"""
Deployment lifecycle.

    scheduled -> in_progress -> completed
    scheduled -> cancelled
    in_progress -> emergency_stop -> completed | cancelled

completed and cancelled are terminal. Every accepted transition appends one
DeploymentStatusChange; a rejected one leaves the deployment untouched.
"""
from __future__ import annotations

from datetime import datetime
from typing import Optional, Union

from flask import current_app

from evfleet.db_models import (
    db,
    ACTIVE_DEPLOYMENT_STATUSES,
    Deployment,
    DeploymentHistory,
    DeploymentStatusChange,
    Vehicle,
)
from evfleet.services.access_control import Principal, can_act_on_deployment
from evfleet.services.errors import (
    DeploymentNotFound,
    InvalidStatusTransition,
    ValidationFailed,
)
from evfleet.services.locks import run_locked
from evfleet.utils.dates import as_utc, isoformat_or_none, utcnow
from evfleet.utils.geo import GeoPoint, path_length_km

DEPLOYMENT_STATUSES = ("scheduled", "in_progress", "completed", "cancelled", "emergency_stop")

TRANSITIONS = {
    "scheduled": frozenset({"in_progress", "cancelled"}),
    "in_progress": frozenset({"completed", "emergency_stop"}),
    "emergency_stop": frozenset({"completed", "cancelled"}),
    "completed": frozenset(),
    "cancelled": frozenset(),
}

TERMINAL_STATUSES = frozenset(s for s, targets in TRANSITIONS.items() if not targets)
REASON_REQUIRED = frozenset({"cancelled", "emergency_stop"})

SYSTEM_ACTOR = "system"


def is_valid_transition(from_status: Optional[str], to_status: str) -> bool:
    return to_status in TRANSITIONS.get(from_status or "", frozenset())


def is_valid_walk(statuses: list[str]) -> bool:
    """True when `statuses` starts at scheduled and follows the transition table."""
    if not statuses or statuses[0] != "scheduled":
        return False
    return all(is_valid_transition(a, b) for a, b in zip(statuses, statuses[1:]))


# -----------------------------------------------------------------------------
# Lookups
# -----------------------------------------------------------------------------
def get_deployment(ref: Union[int, str, None], for_update: bool = False) -> Optional[Deployment]:
    """By primary key or deployment_id (DEP_001_261018)."""
    if ref is None:
        return None
    q = db.session.query(Deployment)
    if for_update:
        q = q.populate_existing().with_for_update()
    if isinstance(ref, int) and not isinstance(ref, bool):
        return q.filter(Deployment.id == ref).one_or_none()
    s = str(ref).strip()
    if s.isdigit():
        return q.filter(Deployment.id == int(s)).one_or_none()
    return q.filter(Deployment.deployment_id == s).one_or_none()


def list_deployments(status=None, pilot_id=None, vehicle_id=None, limit: int = 200) -> list[Deployment]:
    q = db.session.query(Deployment)
    if status:
        statuses = [s for s in status if s] if isinstance(status, (list, tuple)) else [status]
        q = q.filter(Deployment.status.in_(statuses))
    if pilot_id is not None:
        q = q.filter(Deployment.pilot_id == pilot_id)
    if vehicle_id is not None:
        q = q.filter(Deployment.vehicle_id == vehicle_id)
    return q.order_by(Deployment.start_time.desc(), Deployment.id.desc()).limit(limit).all()


def active_deployment_for(vehicle_id=None, pilot_id=None, exclude_id=None) -> Optional[Deployment]:
    q = db.session.query(Deployment).filter(Deployment.status.in_(ACTIVE_DEPLOYMENT_STATUSES))
    if vehicle_id is not None:
        q = q.filter(Deployment.vehicle_id == vehicle_id)
    if pilot_id is not None:
        q = q.filter(Deployment.pilot_id == pilot_id)
    if exclude_id is not None:
        q = q.filter(Deployment.id != exclude_id)
    return q.first()


def ensure_history(deployment: Deployment) -> DeploymentHistory:
    if deployment.history is None:
        deployment.history = DeploymentHistory()
    return deployment.history


def record_status_change(
    deployment: Deployment,
    from_status: Optional[str],
    to_status: str,
    actor: str,
    at: datetime,
    reason: Optional[str] = None,
    system_generated: bool = False,
) -> DeploymentStatusChange:
    history = ensure_history(deployment)
    change = DeploymentStatusChange(
        from_status=from_status,
        to_status=to_status,
        changed_by=actor,
        changed_at=at,
        reason=reason,
        system_generated=system_generated,
    )
    history.status_changes.append(change)
    return change


# -----------------------------------------------------------------------------
# Vehicle release / completion metrics
# -----------------------------------------------------------------------------
def release_vehicle(vehicle: Vehicle) -> str:
    """Hand the vehicle back after a deployment ends; flagged vehicles go to maintenance."""
    if vehicle.maintenance_flagged:
        vehicle.status = "maintenance"
    elif vehicle.status == "deployed":
        vehicle.status = "available"
    vehicle.assigned_pilot_id = None
    return vehicle.status


def actual_start(deployment: Deployment, history: Optional[DeploymentHistory] = None) -> datetime:
    """Scheduled start, or the in_progress transition when the pilot set off early."""
    start = as_utc(deployment.start_time)
    changes = history.status_changes if history is not None else []
    started = [as_utc(c.changed_at) for c in changes if c.to_status == "in_progress"]
    return min([start] + started)


def compute_completion_metrics(deployment: Deployment, history: DeploymentHistory, end_time: datetime) -> dict:
    """
    Metrics stored on DeploymentHistory when a deployment completes.

    Distance prefers the odometer delta; without two odometer readings it
    falls back to the Haversine path through the start point and the
    location samples.
    """
    telemetry = sorted(history.telemetry_samples, key=lambda s: s.recorded_at)
    locations = sorted(history.location_samples, key=lambda s: s.recorded_at)

    odometers = [s.odometer for s in telemetry if s.odometer is not None]
    distance_from_odometer = None
    if len(odometers) >= 2 and odometers[-1] >= odometers[0]:
        distance_from_odometer = odometers[-1] - odometers[0]

    if distance_from_odometer is not None:
        total_distance = distance_from_odometer
    else:
        points = []
        if deployment.start_latitude is not None and deployment.start_longitude is not None:
            points.append((deployment.start_latitude, deployment.start_longitude))
        points.extend((s.latitude, s.longitude) for s in locations)
        total_distance = path_length_km(points)

    duration_minutes = max((end_time - actual_start(deployment, history)).total_seconds(), 0.0) / 60.0

    speeds = [s.speed for s in telemetry if s.speed is not None]
    speeds.extend(s.speed for s in locations if s.speed is not None)
    if speeds:
        average_speed = sum(speeds) / len(speeds)
        max_speed = max(speeds)
    elif duration_minutes > 0:
        average_speed = total_distance / (duration_minutes / 60.0)
        max_speed = None
    else:
        average_speed = 0.0
        max_speed = None

    batteries = [s.battery_level for s in telemetry if s.battery_level is not None]
    battery_used = max(batteries[0] - batteries[-1], 0.0) if len(batteries) >= 2 else None

    return {
        "total_distance_km": round(total_distance, 3),
        "average_speed": round(average_speed, 2),
        "max_speed": max_speed,
        "battery_used": battery_used,
        "total_duration_minutes": round(duration_minutes, 2),
        # tracking already copied the latest reading onto the vehicle
        "odometer_reported": bool(odometers),
    }


# -----------------------------------------------------------------------------
# Transition core (no locking, no commit; callers own the critical section)
# -----------------------------------------------------------------------------
def apply_transition(
    deployment: Deployment,
    new_status: str,
    actor: str,
    at: Optional[datetime] = None,
    reason: Optional[str] = None,
    actual_end_time: Optional[datetime] = None,
    end_location: Optional[GeoPoint] = None,
    system_generated: bool = False,
):
    """Validate and apply one transition. Returns None or an error result."""
    at = at or utcnow()
    current = deployment.status

    if new_status not in DEPLOYMENT_STATUSES:
        return ValidationFailed(fields={"status": f"must be one of {', '.join(DEPLOYMENT_STATUSES)}"})
    if not is_valid_transition(current, new_status):
        return InvalidStatusTransition(from_status=current, to_status=new_status)
    if new_status in REASON_REQUIRED and not (reason and reason.strip()):
        return ValidationFailed(fields={"reason": f"required when moving to {new_status}"})

    vehicle = deployment.vehicle

    if new_status == "completed":
        end_time = as_utc(actual_end_time) or at
        history = ensure_history(deployment)
        if end_time < actual_start(deployment, history):
            return ValidationFailed(fields={"actual_end_time": "must not be before the deployment started"})

        metrics = compute_completion_metrics(deployment, history, end_time)
        history.total_distance_km = metrics["total_distance_km"]
        history.average_speed = metrics["average_speed"]
        history.max_speed = metrics["max_speed"]
        history.battery_used = metrics["battery_used"]
        history.total_duration_minutes = metrics["total_duration_minutes"]

        deployment.actual_end_time = end_time
        deployment.distance_km = metrics["total_distance_km"]
        deployment.end_reason = "completed"
        if end_location is not None:
            deployment.end_latitude = end_location.latitude
            deployment.end_longitude = end_location.longitude
            deployment.end_address = end_location.address
        elif deployment.current_latitude is not None:
            deployment.end_latitude = deployment.current_latitude
            deployment.end_longitude = deployment.current_longitude

        if vehicle is not None:
            if not metrics["odometer_reported"]:
                vehicle.mileage_total = (vehicle.mileage_total or 0.0) + metrics["total_distance_km"]
            release_vehicle(vehicle)

    elif new_status == "cancelled":
        deployment.end_reason = "cancelled"
        if deployment.actual_end_time is None and current == "emergency_stop":
            deployment.actual_end_time = at
        if vehicle is not None:
            release_vehicle(vehicle)

    elif new_status == "emergency_stop":
        deployment.end_reason = "emergency_stop"

    if reason:
        note = f"[{at.isoformat()}] {new_status}: {reason.strip()}"
        deployment.notes = f"{deployment.notes}\n{note}" if deployment.notes else note

    deployment.status = new_status
    record_status_change(
        deployment, current, new_status, actor, at, reason=reason, system_generated=system_generated
    )
    current_app.logger.info(
        "Deployment %s: %s -> %s by %s", deployment.deployment_id, current, new_status, actor
    )
    return None


# -----------------------------------------------------------------------------
# Service entry points
# -----------------------------------------------------------------------------
def update_deployment_status(
    ref,
    new_status: str,
    principal: Principal,
    reason: Optional[str] = None,
    actual_end_time: Optional[datetime] = None,
    end_location: Optional[GeoPoint] = None,
    revenue: Optional[float] = None,
    operational_cost: Optional[float] = None,
    action: str = "update",
):
    """Returns the Deployment or an error result."""
    found = get_deployment(ref)
    if found is None:
        return DeploymentNotFound(ref=ref)

    # the vehicle never changes on a deployment, so its key is known before locking
    dep_pk, vehicle_pk = found.id, found.vehicle_id

    def _apply():
        deployment = get_deployment(dep_pk, for_update=True)
        if deployment is None:
            return DeploymentNotFound(ref=ref)
        db.session.query(Vehicle).filter(Vehicle.id == vehicle_pk).populate_existing().with_for_update().one_or_none()

        denied = can_act_on_deployment(principal, deployment, action)
        if denied:
            return denied

        err = apply_transition(
            deployment,
            new_status,
            actor=principal.actor,
            reason=reason,
            actual_end_time=actual_end_time,
            end_location=end_location,
        )
        if err:
            return err

        if revenue is not None:
            deployment.revenue = revenue
        if operational_cost is not None:
            deployment.operational_cost = operational_cost
        return deployment

    return run_locked(
        [("vehicle", vehicle_pk), ("deployment", dep_pk)],
        "update_deployment_status",
        _apply,
    )


def cancel_deployment(ref, principal: Principal, reason: Optional[str]):
    """Employees and above may cancel any deployment; a pilot only their own."""
    return update_deployment_status(ref, "cancelled", principal, reason=reason, action="cancel")


# -----------------------------------------------------------------------------
# Serialization
# -----------------------------------------------------------------------------
def _point(lat, lng, address=None):
    if lat is None or lng is None:
        return None
    return {"latitude": lat, "longitude": lng, "address": address}


def serialize_deployment(d: Deployment) -> dict:
    return {
        "id": d.id,
        "deployment_id": d.deployment_id,
        "vehicle_id": d.vehicle_id,
        "vehicle_code": d.vehicle.vehicle_id if d.vehicle else None,
        "pilot_id": d.pilot_id,
        "status": d.status,
        "purpose": d.purpose,
        "start_time": isoformat_or_none(d.start_time),
        "estimated_end_time": isoformat_or_none(d.estimated_end_time),
        "actual_end_time": isoformat_or_none(d.actual_end_time),
        "start_location": _point(d.start_latitude, d.start_longitude, d.start_address),
        "current_location": _point(d.current_latitude, d.current_longitude),
        "end_location": _point(d.end_latitude, d.end_longitude, d.end_address),
        "distance_km": d.distance_km,
        "revenue": d.revenue,
        "operational_cost": d.operational_cost,
        "end_reason": d.end_reason,
        "notes": d.notes,
        "created_by": d.created_by,
        "approved_by": d.approved_by,
        "created_at": isoformat_or_none(d.created_at),
        "updated_at": isoformat_or_none(d.updated_at),
    }


def serialize_history(h: DeploymentHistory) -> dict:
    return {
        "deployment_id": h.deployment.deployment_id if h.deployment else None,
        "status_changes": [
            {
                "from": c.from_status,
                "to": c.to_status,
                "changed_by": c.changed_by,
                "changed_at": isoformat_or_none(c.changed_at),
                "reason": c.reason,
                "system_generated": c.system_generated,
            }
            for c in h.status_changes
        ],
        "location_history": [
            {
                "latitude": s.latitude,
                "longitude": s.longitude,
                "address": s.address,
                "speed": s.speed,
                "recorded_at": isoformat_or_none(s.recorded_at),
            }
            for s in h.location_samples
        ],
        "telemetry": [
            {
                "battery_level": s.battery_level,
                "speed": s.speed,
                "odometer": s.odometer,
                "recorded_at": isoformat_or_none(s.recorded_at),
            }
            for s in h.telemetry_samples
        ],
        "metrics": {
            "total_distance_km": h.total_distance_km,
            "average_speed": h.average_speed,
            "max_speed": h.max_speed,
            "battery_used": h.battery_used,
            "total_duration_minutes": h.total_duration_minutes,
        },
    }
