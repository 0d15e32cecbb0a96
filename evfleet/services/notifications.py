# evfleet/services/notifications.py
"""
Dashboard notification content. Delivery (push, email, ...) is someone
else's job; this only decides what should be said.
"""
from __future__ import annotations

from datetime import datetime, timedelta
from typing import Optional

from flask import current_app
from sqlalchemy.orm import joinedload

from evfleet.db_models import db, Deployment, MaintenanceLog, Vehicle
from evfleet.utils.dates import as_utc, isoformat_or_none, utcnow


def _item(kind, message, priority, data):
    return {"type": kind, "message": message, "priority": priority, "data": data}


def urgent_maintenance(now: datetime, hours: int) -> list[dict]:
    rows = (
        db.session.query(MaintenanceLog)
        .options(joinedload(MaintenanceLog.vehicle))
        .filter(
            MaintenanceLog.status == "scheduled",
            MaintenanceLog.scheduled_date <= now + timedelta(hours=hours),
        )
        .order_by(MaintenanceLog.scheduled_date.asc())
        .all()
    )
    out = []
    for m in rows:
        code = m.vehicle.vehicle_id if m.vehicle else m.vehicle_id
        overdue = as_utc(m.scheduled_date) < now
        out.append(_item(
            "maintenance",
            f"{m.maintenance_type.replace('_', ' ').title()} {'overdue' if overdue else 'due'} for {code}",
            "high" if overdue else "medium",
            {
                "maintenance_id": m.maintenance_id,
                "vehicle_id": code,
                "registration_number": m.vehicle.registration_number if m.vehicle else None,
                "maintenance_type": m.maintenance_type,
                "scheduled_date": isoformat_or_none(m.scheduled_date),
            },
        ))
    return out


def low_battery(threshold: float) -> list[dict]:
    rows = (
        db.session.query(Vehicle)
        .filter(
            Vehicle.is_active.is_(True),
            Vehicle.status.in_(("available", "deployed")),
            Vehicle.battery_level <= threshold,
        )
        .order_by(Vehicle.battery_level.asc(), Vehicle.vehicle_id.asc())
        .all()
    )
    return [
        _item(
            "battery",
            f"{v.vehicle_id} battery at {v.battery_level:g}%",
            "high" if v.battery_level <= threshold / 2 else "medium",
            {
                "vehicle_id": v.vehicle_id,
                "registration_number": v.registration_number,
                "battery_level": v.battery_level,
                "status": v.status,
            },
        )
        for v in rows
    ]


def overdue_deployments(now: datetime) -> list[dict]:
    rows = (
        db.session.query(Deployment)
        .options(joinedload(Deployment.vehicle), joinedload(Deployment.pilot))
        .filter(Deployment.status == "in_progress", Deployment.estimated_end_time < now)
        .order_by(Deployment.estimated_end_time.asc())
        .all()
    )
    out = []
    for d in rows:
        minutes = int((now - as_utc(d.estimated_end_time)).total_seconds() // 60)
        out.append(_item(
            "deployment_overdue",
            f"{d.deployment_id} is {minutes} min past its estimated end",
            "high",
            {
                "deployment_id": d.deployment_id,
                "vehicle_id": d.vehicle.vehicle_id if d.vehicle else d.vehicle_id,
                "pilot": d.pilot.full_name if d.pilot else d.pilot_id,
                "estimated_end_time": isoformat_or_none(d.estimated_end_time),
                "minutes_overdue": minutes,
            },
        ))
    return out


def upcoming_deployments(now: datetime, hours: int) -> list[dict]:
    rows = (
        db.session.query(Deployment)
        .options(joinedload(Deployment.vehicle), joinedload(Deployment.pilot))
        .filter(
            Deployment.status == "scheduled",
            Deployment.start_time >= now,
            Deployment.start_time <= now + timedelta(hours=hours),
        )
        .order_by(Deployment.start_time.asc())
        .all()
    )
    return [
        _item(
            "deployment_upcoming",
            f"{d.deployment_id} starts at {as_utc(d.start_time).strftime('%H:%M')} UTC",
            "low",
            {
                "deployment_id": d.deployment_id,
                "vehicle_id": d.vehicle.vehicle_id if d.vehicle else d.vehicle_id,
                "pilot": d.pilot.full_name if d.pilot else d.pilot_id,
                "start_time": isoformat_or_none(d.start_time),
            },
        )
        for d in rows
    ]


def get_notifications(now: Optional[datetime] = None) -> dict:
    now = now or utcnow()
    cfg = current_app.config
    feed = {
        "urgent_maintenance": urgent_maintenance(now, int(cfg.get("URGENT_MAINTENANCE_HOURS", 24))),
        "low_battery": low_battery(float(cfg.get("LOW_BATTERY_ALERT_LEVEL", 20.0))),
        "overdue_deployments": overdue_deployments(now),
        "upcoming_deployments": upcoming_deployments(now, int(cfg.get("UPCOMING_DEPLOYMENT_HOURS", 2))),
    }
    feed["total"] = sum(len(v) for v in feed.values())
    feed["generated_at"] = now.isoformat()
    return feed
