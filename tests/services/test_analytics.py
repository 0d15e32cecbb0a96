# tests/services/test_analytics.py
from datetime import datetime, timedelta, timezone
from types import SimpleNamespace

import pytest

from evfleet.db_models import db, Deployment
from evfleet.services.analytics import (
    build_deployment_report,
    build_fleet_utilization,
    completed_hours,
    get_deployment_analytics,
    summarize_deployments,
)
from evfleet.services.deployment_state import cancel_deployment, update_deployment_status


def dt(y, m, d, hh=0, mm=0):
    return datetime(y, m, d, hh, mm, tzinfo=timezone.utc)


def dep(pk, status, start, hours=None, vehicle_id=1, pilot_id=1, distance=0.0, revenue=0.0, cost=0.0):
    return SimpleNamespace(
        id=pk,
        deployment_id=f"DEP_{pk:03d}_260301",
        status=status,
        start_time=start,
        actual_end_time=start + timedelta(hours=hours) if hours is not None else None,
        vehicle_id=vehicle_id,
        pilot_id=pilot_id,
        distance_km=distance,
        revenue=revenue,
        operational_cost=cost,
    )


def test_completed_hours_ignores_unfinished_rows():
    assert completed_hours(dep(1, "completed", dt(2026, 3, 1, 9), hours=2.5)) == 2.5
    assert completed_hours(dep(2, "in_progress", dt(2026, 3, 1, 9))) == 0.0
    assert completed_hours(dep(3, "completed", dt(2026, 3, 1, 9))) == 0.0


def test_summary_counts_rates_and_window_filter():
    rows = [
        dep(1, "completed", dt(2026, 3, 1, 8), hours=2, vehicle_id=1, pilot_id=10, distance=20, revenue=400, cost=100),
        dep(2, "completed", dt(2026, 3, 2, 8), hours=4, vehicle_id=1, pilot_id=11, distance=35, revenue=600, cost=150),
        dep(3, "cancelled", dt(2026, 3, 3, 8), vehicle_id=2, pilot_id=10),
        dep(4, "in_progress", dt(2026, 3, 4, 8), vehicle_id=2, pilot_id=10, distance=5),
        dep(5, "completed", dt(2026, 2, 1, 8), hours=9, vehicle_id=3, pilot_id=12),   # outside window
    ]

    result = summarize_deployments(
        rows, dt(2026, 3, 1), dt(2026, 3, 11), pilot_names={10: "Ravi"}, vehicle_codes={1: "EVZ_VEH_001"}
    )

    s = result["summary"]
    assert s["total_deployments"] == 4
    assert s["completed_deployments"] == 2
    assert s["cancelled_deployments"] == 1
    assert s["by_status"]["in_progress"] == 1
    assert s["completion_rate"] == 50.0
    assert s["average_duration_hours"] == 3.0
    assert s["total_distance_km"] == 60.0
    assert s["total_revenue"] == 1000.0
    assert s["total_operational_cost"] == 250.0

    assert result["top_pilots"][0] == {
        "pilot_id": 10, "name": "Ravi", "deployment_count": 3, "completed": 1, "completion_rate": 33.33,
    }
    top_vehicle = result["vehicle_utilization"][0]
    assert top_vehicle["vehicle_code"] == "EVZ_VEH_001"
    assert top_vehicle["utilization_hours"] == 6.0
    # 6 of 240 window hours
    assert top_vehicle["utilization_rate"] == 0.025
    assert result["window"]["hours"] == 240.0


def test_empty_window():
    result = summarize_deployments([], dt(2026, 3, 1), dt(2026, 3, 2))

    assert result["summary"]["total_deployments"] == 0
    assert result["summary"]["completion_rate"] == 0.0
    assert result["summary"]["average_duration_hours"] == 0.0
    assert result["top_pilots"] == []


def test_report_breakdowns():
    vehicles = {1: SimpleNamespace(vehicle_id="EVZ_VEH_001", make="Tata", model="Nexon EV", registration_number="KA01")}
    rows = [
        dep(1, "completed", dt(2026, 3, 1, 8), hours=2, distance=10, revenue=100),
        dep(2, "cancelled", dt(2026, 3, 1, 12), revenue=0),
        dep(3, "completed", dt(2026, 3, 2, 8), hours=1, distance=20, revenue=200),
    ]

    report = build_deployment_report(
        rows, dt(2026, 3, 1), dt(2026, 3, 3), vehicles_by_id=vehicles, include_details=False,
        generated_at=dt(2026, 3, 3),
    )

    assert report["summary"]["total_deployments"] == 3
    assert report["summary"]["average_distance_km"] == 10.0
    assert report["daily_breakdown"] == [
        {"date": "2026-03-01", "count": 2, "completed": 1, "revenue": 100.0},
        {"date": "2026-03-02", "count": 1, "completed": 1, "revenue": 200.0},
    ]
    perf = report["vehicle_performance"][0]
    assert perf["vehicle_code"] == "EVZ_VEH_001"
    assert perf["completion_rate"] == 66.67
    assert perf["avg_revenue_per_deployment"] == 100.0
    assert "detailed_deployments" not in report


def test_fleet_utilization_recommendations():
    vehicles = [
        SimpleNamespace(id=1, vehicle_id="EVZ_VEH_001", make="Tata", model="Nexon EV", status="available",
                        battery_health=95.0, mileage_total=3000.0),
        SimpleNamespace(id=2, vehicle_id="EVZ_VEH_002", make="MG", model="ZS EV", status="available",
                        battery_health=75.0, mileage_total=18000.0),
    ]
    # 1 day window = 24h; vehicle 1 busy 12h
    rows = [dep(1, "completed", dt(2026, 3, 1, 6), hours=12, vehicle_id=1)]

    result = build_fleet_utilization(vehicles, rows, days=1)

    stats = {s["vehicle_id"]: s for s in result["vehicle_stats"]}
    assert stats["EVZ_VEH_001"]["utilization_rate"] == 50
    assert stats["EVZ_VEH_002"]["utilization_rate"] == 0
    assert result["average_utilization"] == 25
    kinds = [(r["type"], r["vehicle_id"]) for r in result["recommendations"]]
    assert kinds == [
        ("BATTERY_HEALTH", "EVZ_VEH_002"),
        ("HIGH_MILEAGE", "EVZ_VEH_002"),
        ("LOW_UTILIZATION", "EVZ_VEH_002"),
    ]


def test_analytics_over_stored_deployments(admin, make_user, make_vehicle, book):
    pilot_a, pilot_b = make_user(name="Ravi"), make_user(name="Meena")
    done = book(admin, pilot_a, make_vehicle(), revenue=500.0, operational_cost=120.0)
    dropped = book(admin, pilot_b, make_vehicle())

    update_deployment_status(done.deployment_id, "in_progress", admin)
    update_deployment_status(done.deployment_id, "completed", admin)
    cancel_deployment(dropped.deployment_id, admin, reason="no show")

    now = datetime.now(timezone.utc)
    result = get_deployment_analytics(now - timedelta(days=1), now + timedelta(days=1))

    s = result["summary"]
    assert s["total_deployments"] == 2
    assert s["completed_deployments"] == 1
    assert s["cancelled_deployments"] == 1
    assert s["completion_rate"] == 50.0
    assert s["total_revenue"] == 500.0
    assert {p["name"] for p in result["top_pilots"]} == {"Ravi", "Meena"}

    only_a = get_deployment_analytics(now - timedelta(days=1), now + timedelta(days=1), pilot_id=pilot_a.id)
    assert only_a["summary"]["total_deployments"] == 1
    assert db.session.query(Deployment).count() == 2


def test_window_excludes_deployments_starting_later(admin, make_user, make_vehicle, book):
    book(admin, make_user(), make_vehicle(), start_in=timedelta(days=3))
    now = datetime.now(timezone.utc)

    result = get_deployment_analytics(now - timedelta(days=1), now + timedelta(days=1))

    assert result["summary"]["total_deployments"] == 0


@pytest.mark.parametrize("days", [7, 30])
def test_fleet_utilization_period_is_reported(days):
    assert build_fleet_utilization([], [], days=days)["period_days"] == days
