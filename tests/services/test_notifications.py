# tests/services/test_notifications.py
from datetime import datetime, timedelta, timezone

from evfleet.db_models import db, Deployment, MaintenanceLog
from evfleet.services.deployment_state import update_deployment_status
from evfleet.services.notifications import get_notifications


def test_empty_fleet_has_nothing_to_say(test_app):
    feed = get_notifications()

    assert feed["total"] == 0
    assert feed["urgent_maintenance"] == []
    assert "generated_at" in feed


def test_feed_sections(admin, make_user, make_vehicle, book):
    now = datetime.now(timezone.utc)

    low = make_vehicle(battery_level=8.0)
    make_vehicle(battery_level=18.0)
    make_vehicle(battery_level=18.0, status="maintenance")   # off the road, not reported

    shop = make_vehicle()
    db.session.add_all([
        MaintenanceLog(maintenance_id="MAINT_001_260301", vehicle_id=shop.id, maintenance_type="brake_service",
                       status="scheduled", scheduled_date=now - timedelta(hours=3)),
        MaintenanceLog(maintenance_id="MAINT_002_260301", vehicle_id=shop.id, maintenance_type="battery_check",
                       status="scheduled", scheduled_date=now + timedelta(hours=5)),
        MaintenanceLog(maintenance_id="MAINT_003_260301", vehicle_id=shop.id, maintenance_type="software_update",
                       status="scheduled", scheduled_date=now + timedelta(days=4)),
    ])
    db.session.commit()

    upcoming = book(admin, make_user(), make_vehicle())
    running = book(admin, make_user(), make_vehicle())
    update_deployment_status(running.deployment_id, "in_progress", admin)
    d = db.session.query(Deployment).filter_by(deployment_id=running.deployment_id).one()
    d.estimated_end_time = now - timedelta(minutes=45)
    db.session.commit()

    feed = get_notifications(now=now)

    maint = feed["urgent_maintenance"]
    assert [m["data"]["maintenance_id"] for m in maint] == ["MAINT_001_260301", "MAINT_002_260301"]
    assert maint[0]["priority"] == "high"
    assert "overdue" in maint[0]["message"]
    assert maint[1]["priority"] == "medium"

    battery = feed["low_battery"]
    assert [b["data"]["battery_level"] for b in battery] == [8.0, 18.0]
    assert battery[0]["data"]["vehicle_id"] == low.vehicle_id
    assert battery[0]["priority"] == "high"

    overdue = feed["overdue_deployments"]
    assert [o["data"]["deployment_id"] for o in overdue] == [running.deployment_id]
    assert overdue[0]["data"]["minutes_overdue"] == 45

    assert [u["data"]["deployment_id"] for u in feed["upcoming_deployments"]] == [upcoming.deployment_id]
    assert feed["total"] == 2 + 2 + 1 + 1
