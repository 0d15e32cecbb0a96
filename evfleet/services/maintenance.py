# evfleet/services/maintenance.py
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

from flask import current_app

from evfleet.db_models import db, ACTIVE_MAINTENANCE_STATUSES, MaintenanceLog, Vehicle
from evfleet.services.access_control import Principal
from evfleet.services.errors import (
    DuplicateKey,
    InvalidStatusTransition,
    MaintenanceNotFound,
    ValidationFailed,
    VehicleNotFound,
)
from evfleet.services.fleet_registry import get_vehicle
from evfleet.services.locks import run_locked
from evfleet.utils.dates import as_utc, isoformat_or_none, utcnow
from evfleet.utils.ids import MAINTENANCE_PREFIX, next_sequential_id

MAINTENANCE_TYPES = (
    "routine_service",
    "battery_check",
    "tire_replacement",
    "brake_service",
    "emergency_repair",
    "software_update",
    "charging_system_check",
    "motor_service",
    "body_repair",
    "electrical_repair",
)
MAINTENANCE_PRIORITIES = ("low", "medium", "high", "critical", "emergency")

MAINTENANCE_TRANSITIONS = {
    "scheduled": frozenset({"in_progress", "cancelled"}),
    "in_progress": frozenset({"completed", "cancelled"}),
    "completed": frozenset(),
    "cancelled": frozenset(),
}

# Usage thresholds that pull the next service date forward
HIGH_MILEAGE_KM = 15000
ELEVATED_MILEAGE_KM = 10000
BATTERY_HEALTH_WATERMARK = 85


@dataclass(frozen=True)
class MaintenanceSkipped:
    reason: str
    existing_maintenance_id: Optional[str] = None

    def to_dict(self) -> dict:
        return {"scheduled": False, "reason": self.reason, "existing_maintenance_id": self.existing_maintenance_id}


def due_offset_days(mileage_total: Optional[float], battery_health: Optional[float]) -> int:
    mileage = mileage_total or 0.0
    health = 100.0 if battery_health is None else battery_health
    if mileage > HIGH_MILEAGE_KM:
        return 7
    if mileage > ELEVATED_MILEAGE_KM or health < BATTERY_HEALTH_WATERMARK:
        return 14
    return 30


def needs_early_service(vehicle) -> bool:
    return due_offset_days(vehicle.mileage_total, vehicle.battery_health) < 30


def estimated_duration_hours(maintenance_type: str) -> float:
    return 2.0 if maintenance_type == "battery_check" else 4.0


def active_maintenance_for(vehicle_pk: int, maintenance_type: Optional[str] = None):
    q = db.session.query(MaintenanceLog).filter(
        MaintenanceLog.vehicle_id == vehicle_pk,
        MaintenanceLog.status.in_(ACTIVE_MAINTENANCE_STATUSES),
    )
    if maintenance_type:
        q = q.filter(MaintenanceLog.maintenance_type == maintenance_type)
    return q.first()


def get_maintenance(ref, for_update: bool = False) -> Optional[MaintenanceLog]:
    if ref is None:
        return None
    q = db.session.query(MaintenanceLog)
    if for_update:
        q = q.populate_existing().with_for_update()
    s = str(ref).strip()
    if s.isdigit():
        return q.filter(MaintenanceLog.id == int(s)).one_or_none()
    return q.filter(MaintenanceLog.maintenance_id == s).one_or_none()


def auto_schedule_maintenance(vehicle_ref, maintenance_type: str = "routine_service", principal: Optional[Principal] = None):
    """
    Returns the new MaintenanceLog, MaintenanceSkipped when an active record
    of the same type exists, or an error result.
    """
    if maintenance_type not in MAINTENANCE_TYPES:
        return ValidationFailed(fields={"maintenance_type": f"must be one of {', '.join(MAINTENANCE_TYPES)}"})

    vehicle = get_vehicle(vehicle_ref)
    if vehicle is None:
        return VehicleNotFound(ref=vehicle_ref)
    vehicle_pk = vehicle.id
    actor = principal.actor if principal else "system"

    def _schedule():
        v = db.session.query(Vehicle).filter(Vehicle.id == vehicle_pk).populate_existing().with_for_update().one()
        existing = active_maintenance_for(v.id, maintenance_type)
        if existing is not None:
            return MaintenanceSkipped(reason="already scheduled", existing_maintenance_id=existing.maintenance_id)

        now = utcnow()
        days = due_offset_days(v.mileage_total, v.battery_health)
        cfg = current_app.config
        log = MaintenanceLog(
            maintenance_id=next_sequential_id(MaintenanceLog.maintenance_id, MAINTENANCE_PREFIX, now),
            vehicle_id=v.id,
            maintenance_type=maintenance_type,
            priority="high" if days == 7 else "medium",
            description=f"Auto-scheduled {maintenance_type} based on usage patterns",
            status="scheduled",
            scheduled_date=now + timedelta(days=days),
            estimated_duration_hours=estimated_duration_hours(maintenance_type),
            service_provider_name=cfg.get("DEFAULT_SERVICE_PROVIDER"),
            service_provider_contact=cfg.get("DEFAULT_SERVICE_CONTACT"),
            auto_scheduled=True,
            created_by=actor,
        )
        db.session.add(log)
        db.session.flush()
        current_app.logger.info(
            "Maintenance %s (%s) scheduled for %s in %d days",
            log.maintenance_id, maintenance_type, v.vehicle_id, days,
        )
        return log

    def _on_integrity(exc):
        existing = active_maintenance_for(vehicle_pk, maintenance_type)
        if existing is not None:
            return MaintenanceSkipped(reason="already scheduled", existing_maintenance_id=existing.maintenance_id)
        return DuplicateKey(field_name="maintenance_id", value=None)

    return run_locked(
        [("vehicle", vehicle_pk), ("sequence", MAINTENANCE_PREFIX)],
        "auto_schedule_maintenance",
        _schedule,
        on_integrity_error=_on_integrity,
    )


@dataclass
class DueMaintenance:
    scheduled: list
    early_warning: list

    @property
    def total_due(self) -> int:
        return len(self.scheduled)


def get_due_maintenance(days_ahead: int = 7, now: Optional[datetime] = None) -> DueMaintenance:
    """
    Scheduled records due within `days_ahead` (overdue ones included), plus
    vehicles past the usage thresholds that have nothing on the books yet.
    """
    now = now or utcnow()
    cutoff = now + timedelta(days=days_ahead)

    scheduled = (
        db.session.query(MaintenanceLog)
        .filter(MaintenanceLog.status == "scheduled", MaintenanceLog.scheduled_date <= cutoff)
        .order_by(MaintenanceLog.scheduled_date.asc(), MaintenanceLog.id.asc())
        .all()
    )

    booked = {
        vid
        for (vid,) in db.session.query(MaintenanceLog.vehicle_id)
        .filter(MaintenanceLog.status.in_(ACTIVE_MAINTENANCE_STATUSES))
        .distinct()
        .all()
    }
    candidates = (
        db.session.query(Vehicle)
        .filter(
            Vehicle.is_active.is_(True),
            Vehicle.status.in_(("available", "deployed")),
            db.or_(
                Vehicle.mileage_total > ELEVATED_MILEAGE_KM,
                Vehicle.battery_health < BATTERY_HEALTH_WATERMARK,
            ),
        )
        .order_by(Vehicle.mileage_total.desc(), Vehicle.vehicle_id.asc())
        .all()
    )
    early_warning = [v for v in candidates if v.id not in booked]
    return DueMaintenance(scheduled=scheduled, early_warning=early_warning)


def update_maintenance_status(
    ref,
    new_status: str,
    principal: Principal,
    cost: Optional[float] = None,
    parts_used: Optional[list] = None,
    notes: Optional[str] = None,
):
    """
    scheduled -> in_progress -> completed, and scheduled|in_progress -> cancelled.

    Starting work takes the vehicle off the road (or flags it if it is out on
    a deployment); finishing or cancelling hands it back.
    """
    log = get_maintenance(ref)
    if log is None:
        return MaintenanceNotFound(ref=ref)
    log_pk, vehicle_pk = log.id, log.vehicle_id

    if new_status not in MAINTENANCE_TRANSITIONS:
        return ValidationFailed(fields={"status": f"must be one of {', '.join(MAINTENANCE_TRANSITIONS)}"})
    if cost is not None and cost < 0:
        return ValidationFailed(fields={"cost": "must be >= 0"})

    def _apply():
        m = get_maintenance(log_pk, for_update=True)
        vehicle = db.session.query(Vehicle).filter(Vehicle.id == vehicle_pk).populate_existing().with_for_update().one()
        if new_status not in MAINTENANCE_TRANSITIONS.get(m.status, frozenset()):
            return InvalidStatusTransition(from_status=m.status, to_status=new_status)

        now = utcnow()
        previous = m.status
        m.status = new_status
        m.updated_by = principal.actor

        if new_status == "in_progress":
            m.started_at = now
            if vehicle.status == "deployed":
                vehicle.maintenance_flagged = True
            elif vehicle.status == "maintenance":
                # already in the shop for another job; carry that job's status forward
                m.vehicle_status_before = _status_before_open_work(vehicle, exclude_pk=m.id)
            else:
                m.vehicle_status_before = vehicle.status
                vehicle.status = "maintenance"

        elif new_status == "completed":
            m.completed_at = now
            if cost is not None:
                m.cost = cost
            if parts_used is not None:
                m.parts_used = list(parts_used)
            vehicle.last_maintenance_date = now
            _release_from_maintenance(vehicle, m)

        elif new_status == "cancelled":
            _release_from_maintenance(vehicle, m)

        if notes:
            m.service_notes = f"{m.service_notes}\n{notes}" if m.service_notes else notes

        current_app.logger.info(
            "Maintenance %s: %s -> %s by %s (vehicle %s now %s)",
            m.maintenance_id, previous, new_status, principal.actor, vehicle.vehicle_id, vehicle.status,
        )
        return m

    return run_locked(
        [("vehicle", vehicle_pk), ("maintenance", log_pk)],
        "update_maintenance_status",
        _apply,
    )


def _open_work(vehicle: Vehicle, exclude_pk: int):
    return (
        db.session.query(MaintenanceLog)
        .filter(
            MaintenanceLog.vehicle_id == vehicle.id,
            MaintenanceLog.id != exclude_pk,
            MaintenanceLog.status == "in_progress",
        )
        .order_by(MaintenanceLog.started_at.asc())
        .first()
    )


def _status_before_open_work(vehicle: Vehicle, exclude_pk: int) -> Optional[str]:
    running = _open_work(vehicle, exclude_pk)
    return running.vehicle_status_before if running is not None else None


def _release_from_maintenance(vehicle: Vehicle, m: MaintenanceLog):
    """
    Hand the vehicle back once no other job is running on it: to the status it
    had when work started (charging, out_of_service...), else available.
    A vehicle that came in flagged off a deployment has nothing recorded.
    """
    if _open_work(vehicle, m.id) is not None:
        return
    vehicle.maintenance_flagged = False
    if vehicle.status == "maintenance":
        vehicle.status = m.vehicle_status_before or "available"


def serialize_maintenance(m: MaintenanceLog) -> dict:
    return {
        "id": m.id,
        "maintenance_id": m.maintenance_id,
        "vehicle_id": m.vehicle_id,
        "vehicle_code": m.vehicle.vehicle_id if m.vehicle else None,
        "registration_number": m.vehicle.registration_number if m.vehicle else None,
        "maintenance_type": m.maintenance_type,
        "priority": m.priority,
        "description": m.description,
        "status": m.status,
        "scheduled_date": isoformat_or_none(m.scheduled_date),
        "estimated_duration_hours": m.estimated_duration_hours,
        "started_at": isoformat_or_none(m.started_at),
        "completed_at": isoformat_or_none(m.completed_at),
        "cost": m.cost,
        "parts_used": list(m.parts_used or []),
        "service_provider": {"name": m.service_provider_name, "contact": m.service_provider_contact},
        "auto_scheduled": m.auto_scheduled,
        "created_by": m.created_by,
    }


def days_until(m: MaintenanceLog, now: Optional[datetime] = None) -> float:
    now = now or utcnow()
    return (as_utc(m.scheduled_date) - now).total_seconds() / 86400.0
