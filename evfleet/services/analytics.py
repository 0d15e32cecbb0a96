# evfleet/services/analytics.py
"""
Read-only reporting over Deployment rows.

The summarize/build functions are pure: they take already-loaded rows and
return plain dicts, so they can be tested without a database. The get_*
wrappers do the querying. A deployment belongs to a window when its
start_time falls inside it.
"""
from __future__ import annotations

from collections import defaultdict
from datetime import datetime, timedelta
from typing import Iterable, Optional

from evfleet.db_models import db, Deployment, User, Vehicle
from evfleet.services.deployment_state import serialize_deployment
from evfleet.utils.dates import as_utc, isoformat_or_none, utcnow

STATUS_KEYS = ("scheduled", "in_progress", "completed", "cancelled", "emergency_stop")
PRIORITY_WEIGHT = {"high": 3, "medium": 2, "low": 1}

LOW_UTILIZATION_PCT = 20
POOR_BATTERY_HEALTH_PCT = 80
HIGH_MILEAGE_KM = 15000


def completed_hours(d) -> float:
    """Hours for a completed deployment; a missing end time contributes nothing."""
    if d.status != "completed" or d.actual_end_time is None or d.start_time is None:
        return 0.0
    history = getattr(d, "history", None)
    if history is not None and history.total_duration_minutes is not None:
        return history.total_duration_minutes / 60.0
    seconds = (as_utc(d.actual_end_time) - as_utc(d.start_time)).total_seconds()
    return max(seconds, 0.0) / 3600.0


def _pct(part: float, whole: float) -> float:
    return round(part / whole * 100.0, 2) if whole else 0.0


def summarize_deployments(
    deployments: Iterable,
    window_start: datetime,
    window_end: datetime,
    top_n: int = 5,
    pilot_names: Optional[dict] = None,
    vehicle_codes: Optional[dict] = None,
) -> dict:
    pilot_names = pilot_names or {}
    vehicle_codes = vehicle_codes or {}
    window_start, window_end = as_utc(window_start), as_utc(window_end)
    window_hours = max((window_end - window_start).total_seconds(), 0.0) / 3600.0

    rows = [d for d in deployments if window_start <= as_utc(d.start_time) <= window_end]

    counts = {k: 0 for k in STATUS_KEYS}
    total_distance = total_revenue = total_cost = 0.0
    completed_durations = []
    by_pilot = defaultdict(lambda: {"deployment_count": 0, "completed": 0})
    by_vehicle = defaultdict(lambda: {"deployment_count": 0, "utilization_hours": 0.0})

    for d in rows:
        counts[d.status] = counts.get(d.status, 0) + 1
        total_distance += d.distance_km or 0.0
        total_revenue += d.revenue or 0.0
        total_cost += d.operational_cost or 0.0

        hours = completed_hours(d)
        if d.status == "completed" and d.actual_end_time is not None:
            completed_durations.append(hours)

        p = by_pilot[d.pilot_id]
        p["deployment_count"] += 1
        if d.status == "completed":
            p["completed"] += 1

        v = by_vehicle[d.vehicle_id]
        v["deployment_count"] += 1
        v["utilization_hours"] += hours

    total = len(rows)
    top_pilots = sorted(
        (
            {
                "pilot_id": pid,
                "name": pilot_names.get(pid),
                "deployment_count": s["deployment_count"],
                "completed": s["completed"],
                "completion_rate": _pct(s["completed"], s["deployment_count"]),
            }
            for pid, s in by_pilot.items()
        ),
        key=lambda r: (-r["deployment_count"], r["pilot_id"]),
    )[:top_n]

    top_vehicles = sorted(
        (
            {
                "vehicle_id": vid,
                "vehicle_code": vehicle_codes.get(vid),
                "deployment_count": s["deployment_count"],
                "utilization_hours": round(s["utilization_hours"], 2),
                "utilization_rate": round(s["utilization_hours"] / window_hours, 4) if window_hours else 0.0,
            }
            for vid, s in by_vehicle.items()
        ),
        key=lambda r: (-r["utilization_hours"], r["vehicle_id"]),
    )[:top_n]

    return {
        "window": {"start": window_start.isoformat(), "end": window_end.isoformat(), "hours": round(window_hours, 2)},
        "summary": {
            "total_deployments": total,
            "completed_deployments": counts["completed"],
            "cancelled_deployments": counts["cancelled"],
            "by_status": counts,
            "completion_rate": _pct(counts["completed"], total),
            "average_duration_hours": (
                round(sum(completed_durations) / len(completed_durations), 2) if completed_durations else 0.0
            ),
            "total_distance_km": round(total_distance, 3),
            "total_revenue": round(total_revenue, 2),
            "total_operational_cost": round(total_cost, 2),
        },
        "top_pilots": top_pilots,
        "vehicle_utilization": top_vehicles,
    }


def _load_deployments(window_start, window_end, vehicle_ids=None, pilot_ids=None) -> list[Deployment]:
    q = db.session.query(Deployment).filter(
        Deployment.start_time >= window_start, Deployment.start_time <= window_end
    )
    if vehicle_ids:
        q = q.filter(Deployment.vehicle_id.in_(list(vehicle_ids)))
    if pilot_ids:
        q = q.filter(Deployment.pilot_id.in_(list(pilot_ids)))
    return q.order_by(Deployment.start_time.asc(), Deployment.id.asc()).all()


def _lookup_maps(deployments):
    pilot_ids = {d.pilot_id for d in deployments}
    vehicle_ids = {d.vehicle_id for d in deployments}
    pilots = {}
    vehicles = {}
    if pilot_ids:
        pilots = {u.id: u for u in db.session.query(User).filter(User.id.in_(pilot_ids)).all()}
    if vehicle_ids:
        vehicles = {v.id: v for v in db.session.query(Vehicle).filter(Vehicle.id.in_(vehicle_ids)).all()}
    return pilots, vehicles


def get_deployment_analytics(window_start, window_end, vehicle_id=None, pilot_id=None, top_n: int = 5) -> dict:
    rows = _load_deployments(
        window_start, window_end,
        vehicle_ids=[vehicle_id] if vehicle_id is not None else None,
        pilot_ids=[pilot_id] if pilot_id is not None else None,
    )
    pilots, vehicles = _lookup_maps(rows)
    return summarize_deployments(
        rows, window_start, window_end, top_n=top_n,
        pilot_names={pid: u.full_name for pid, u in pilots.items()},
        vehicle_codes={vid: v.vehicle_id for vid, v in vehicles.items()},
    )


# -----------------------------------------------------------------------------
# Deployment report
# -----------------------------------------------------------------------------
def build_deployment_report(
    deployments: list,
    window_start: datetime,
    window_end: datetime,
    vehicles_by_id: Optional[dict] = None,
    pilots_by_id: Optional[dict] = None,
    include_details: bool = True,
    generated_at: Optional[datetime] = None,
) -> dict:
    vehicles_by_id = vehicles_by_id or {}
    pilots_by_id = pilots_by_id or {}

    total = len(deployments)
    counts = {k: 0 for k in STATUS_KEYS}
    for d in deployments:
        counts[d.status] = counts.get(d.status, 0) + 1
    total_distance = sum(d.distance_km or 0.0 for d in deployments)

    daily = defaultdict(lambda: {"count": 0, "completed": 0, "revenue": 0.0})
    per_vehicle = defaultdict(lambda: {"deployment_count": 0, "completed": 0, "total_distance_km": 0.0, "total_revenue": 0.0})
    for d in deployments:
        day = as_utc(d.start_time).date().isoformat()
        daily[day]["count"] += 1
        daily[day]["revenue"] += d.revenue or 0.0
        pv = per_vehicle[d.vehicle_id]
        pv["deployment_count"] += 1
        pv["total_distance_km"] += d.distance_km or 0.0
        pv["total_revenue"] += d.revenue or 0.0
        if d.status == "completed":
            daily[day]["completed"] += 1
            pv["completed"] += 1

    vehicle_performance = []
    for vid, s in per_vehicle.items():
        v = vehicles_by_id.get(vid)
        vehicle_performance.append({
            "vehicle_id": vid,
            "vehicle_code": v.vehicle_id if v else None,
            "make": v.make if v else None,
            "model": v.model if v else None,
            "deployment_count": s["deployment_count"],
            "completion_rate": _pct(s["completed"], s["deployment_count"]),
            "total_distance_km": round(s["total_distance_km"], 3),
            "total_revenue": round(s["total_revenue"], 2),
            "avg_revenue_per_deployment": round(s["total_revenue"] / s["deployment_count"], 2),
        })
    vehicle_performance.sort(key=lambda r: (-r["deployment_count"], r["vehicle_id"]))

    report = {
        "report_generated": (generated_at or utcnow()).isoformat(),
        "period": {"start": as_utc(window_start).isoformat(), "end": as_utc(window_end).isoformat()},
        "summary": {
            "total_deployments": total,
            "completed": counts["completed"],
            "cancelled": counts["cancelled"],
            "in_progress": counts["in_progress"],
            "scheduled": counts["scheduled"],
            "emergency_stop": counts["emergency_stop"],
            "total_distance_km": round(total_distance, 3),
            "average_distance_km": round(total_distance / total, 3) if total else 0.0,
            "total_revenue": round(sum(d.revenue or 0.0 for d in deployments), 2),
            "total_operational_cost": round(sum(d.operational_cost or 0.0 for d in deployments), 2),
        },
        "daily_breakdown": [
            {"date": day, "count": s["count"], "completed": s["completed"], "revenue": round(s["revenue"], 2)}
            for day, s in sorted(daily.items())
        ],
        "vehicle_performance": vehicle_performance,
    }

    if include_details:
        details = []
        for d in sorted(deployments, key=lambda x: (as_utc(x.start_time), x.id), reverse=True):
            row = serialize_deployment(d)
            pilot = pilots_by_id.get(d.pilot_id)
            row["pilot_name"] = pilot.full_name if pilot else None
            vehicle = vehicles_by_id.get(d.vehicle_id)
            row["registration_number"] = vehicle.registration_number if vehicle else None
            details.append(row)
        report["detailed_deployments"] = details

    return report


def generate_deployment_report(
    window_start: Optional[datetime] = None,
    window_end: Optional[datetime] = None,
    vehicle_ids=None,
    pilot_ids=None,
    include_details: bool = True,
) -> dict:
    window_end = window_end or utcnow()
    window_start = window_start or (window_end - timedelta(days=30))
    rows = _load_deployments(window_start, window_end, vehicle_ids=vehicle_ids, pilot_ids=pilot_ids)
    pilots, vehicles = _lookup_maps(rows)
    return build_deployment_report(
        rows, window_start, window_end,
        vehicles_by_id=vehicles, pilots_by_id=pilots, include_details=include_details,
    )


# -----------------------------------------------------------------------------
# Fleet utilization
# -----------------------------------------------------------------------------
def build_fleet_utilization(vehicles: list, deployments: list, days: int = 30) -> dict:
    window_hours = days * 24
    by_vehicle = defaultdict(list)
    for d in deployments:
        by_vehicle[d.vehicle_id].append(d)

    stats = []
    recommendations = []
    for v in vehicles:
        rows = by_vehicle.get(v.id, [])
        hours = sum(completed_hours(d) for d in rows)
        rate = round(hours / window_hours * 100) if window_hours else 0
        stats.append({
            "vehicle_id": v.vehicle_id,
            "make": v.make,
            "model": v.model,
            "status": v.status,
            "battery_health": v.battery_health,
            "mileage_total": v.mileage_total,
            "deployments": len(rows),
            "utilization_hours": round(hours, 2),
            "utilization_rate": rate,
        })

        if rate < LOW_UTILIZATION_PCT:
            recommendations.append({
                "type": "LOW_UTILIZATION",
                "vehicle_id": v.vehicle_id,
                "message": f"Vehicle {v.vehicle_id} has low utilization ({rate}%). Consider reassigning or maintenance.",
                "priority": "medium",
            })
        if (v.battery_health or 0) < POOR_BATTERY_HEALTH_PCT:
            recommendations.append({
                "type": "BATTERY_HEALTH",
                "vehicle_id": v.vehicle_id,
                "message": f"Vehicle {v.vehicle_id} battery health is at {v.battery_health:g}%. Schedule battery maintenance.",
                "priority": "high",
            })
        if (v.mileage_total or 0) > HIGH_MILEAGE_KM:
            recommendations.append({
                "type": "HIGH_MILEAGE",
                "vehicle_id": v.vehicle_id,
                "message": f"Vehicle {v.vehicle_id} has high mileage ({v.mileage_total:g}km). Schedule comprehensive maintenance.",
                "priority": "high",
            })

    # stable sort keeps per-vehicle order inside a priority band
    recommendations.sort(key=lambda r: -PRIORITY_WEIGHT[r["priority"]])

    return {
        "period_days": days,
        "total_vehicles": len(vehicles),
        "average_utilization": round(sum(s["utilization_rate"] for s in stats) / len(stats)) if stats else 0,
        "vehicle_stats": stats,
        "recommendations": recommendations,
    }


def analyze_fleet_utilization(days: int = 30, now: Optional[datetime] = None) -> dict:
    now = now or utcnow()
    since = now - timedelta(days=days)
    vehicles = (
        db.session.query(Vehicle)
        .filter(Vehicle.is_active.is_(True))
        .order_by(Vehicle.vehicle_id.asc())
        .all()
    )
    deployments = db.session.query(Deployment).filter(Deployment.start_time >= since).all()
    report = build_fleet_utilization(vehicles, deployments, days=days)
    report["generated_at"] = isoformat_or_none(now)
    return report
