# tests/services/test_maintenance.py
from datetime import datetime, timedelta, timezone

import pytest

from evfleet.db_models import db, MaintenanceLog, Vehicle
from evfleet.services.deployment_state import update_deployment_status
from evfleet.services.errors import InvalidStatusTransition, ValidationFailed, VehicleNotFound
from evfleet.services.maintenance import (
    MaintenanceSkipped,
    auto_schedule_maintenance,
    due_offset_days,
    estimated_duration_hours,
    get_due_maintenance,
    update_maintenance_status,
)


@pytest.mark.parametrize(
    "mileage,health,days",
    [
        (16000, 99, 7),
        (15000, 99, 14),   # threshold is strictly greater than
        (12000, 99, 14),
        (5000, 80, 14),
        (5000, 85, 30),
        (0, None, 30),
        (None, None, 30),
    ],
)
def test_due_offset_days(mileage, health, days):
    assert due_offset_days(mileage, health) == days


def test_estimated_duration_by_type():
    assert estimated_duration_hours("battery_check") == 2.0
    assert estimated_duration_hours("routine_service") == 4.0


def test_high_mileage_schedules_a_week_out_and_skips_repeat(admin, make_vehicle):
    vehicle = make_vehicle(mileage_total=16000.0)
    before = datetime.now(timezone.utc)

    log = auto_schedule_maintenance(vehicle.vehicle_id, principal=admin)

    assert isinstance(log, MaintenanceLog)
    assert log.maintenance_id.startswith("TEST_MAINT_001_")
    assert log.priority == "high"
    assert log.auto_scheduled is True
    assert log.estimated_duration_hours == 4.0
    assert log.service_provider_name == "EVZIP Service Center"
    assert log.created_by == admin.actor
    delta = log.scheduled_date - before
    assert timedelta(days=7) <= delta < timedelta(days=7, minutes=1)

    again = auto_schedule_maintenance(vehicle.vehicle_id, principal=admin)

    assert isinstance(again, MaintenanceSkipped)
    assert again.reason == "already scheduled"
    assert again.existing_maintenance_id == log.maintenance_id
    assert db.session.query(MaintenanceLog).count() == 1


def test_low_usage_vehicle_gets_thirty_days_medium_priority(make_vehicle):
    vehicle = make_vehicle(mileage_total=2000.0, battery_health=97.0)

    log = auto_schedule_maintenance(vehicle.id)

    assert log.priority == "medium"
    assert log.created_by == "system"
    assert (log.scheduled_date - datetime.now(timezone.utc)).days in (29, 30)


def test_different_type_is_not_a_duplicate(make_vehicle):
    vehicle = make_vehicle(mileage_total=16000.0)
    auto_schedule_maintenance(vehicle.id, "routine_service")

    battery = auto_schedule_maintenance(vehicle.id, "battery_check")

    assert isinstance(battery, MaintenanceLog)
    assert battery.estimated_duration_hours == 2.0


def test_completed_record_allows_rescheduling(admin, make_vehicle):
    vehicle = make_vehicle(mileage_total=16000.0)
    first = auto_schedule_maintenance(vehicle.id)
    update_maintenance_status(first.maintenance_id, "in_progress", admin)
    update_maintenance_status(first.maintenance_id, "completed", admin, cost=120.0, parts_used=["brake pads"])

    second = auto_schedule_maintenance(vehicle.id)

    assert isinstance(second, MaintenanceLog)
    assert second.maintenance_id != first.maintenance_id


def test_unknown_vehicle_and_bad_type(test_app):
    assert isinstance(auto_schedule_maintenance("EVZ_VEH_404"), VehicleNotFound)
    assert isinstance(auto_schedule_maintenance("EVZ_VEH_404", "car_wash"), ValidationFailed)


def test_work_lifecycle_moves_vehicle_in_and_out_of_shop(admin, make_vehicle):
    vehicle = make_vehicle()
    log = auto_schedule_maintenance(vehicle.id)

    started = update_maintenance_status(log.maintenance_id, "in_progress", admin)
    assert started.started_at is not None
    assert db.session.get(Vehicle, vehicle.id).status == "maintenance"

    done = update_maintenance_status(log.maintenance_id, "completed", admin, cost=250.0, parts_used=["coolant"], notes="ok")
    assert done.cost == 250.0
    assert done.parts_used == ["coolant"]
    assert done.service_notes == "ok"
    v = db.session.get(Vehicle, vehicle.id)
    assert v.status == "available"
    assert v.last_maintenance_date is not None


@pytest.mark.parametrize("status_before", ["charging", "out_of_service"])
def test_finished_work_restores_status_vehicle_came_in_with(admin, make_vehicle, status_before):
    vehicle = make_vehicle(status=status_before)
    log = auto_schedule_maintenance(vehicle.id)

    started = update_maintenance_status(log.maintenance_id, "in_progress", admin)
    assert started.vehicle_status_before == status_before
    assert db.session.get(Vehicle, vehicle.id).status == "maintenance"

    update_maintenance_status(log.maintenance_id, "completed", admin)
    assert db.session.get(Vehicle, vehicle.id).status == status_before


def test_overlapping_jobs_restore_status_when_last_one_closes(admin, make_vehicle):
    vehicle = make_vehicle(status="charging")
    service = auto_schedule_maintenance(vehicle.id, "routine_service")
    battery = auto_schedule_maintenance(vehicle.id, "battery_check")
    update_maintenance_status(service.maintenance_id, "in_progress", admin)
    update_maintenance_status(battery.maintenance_id, "in_progress", admin)

    update_maintenance_status(service.maintenance_id, "completed", admin)
    assert db.session.get(Vehicle, vehicle.id).status == "maintenance"

    update_maintenance_status(battery.maintenance_id, "cancelled", admin)
    assert db.session.get(Vehicle, vehicle.id).status == "charging"


def test_invalid_maintenance_transition(admin, make_vehicle):
    log = auto_schedule_maintenance(make_vehicle().id)

    result = update_maintenance_status(log.maintenance_id, "completed", admin)

    assert isinstance(result, InvalidStatusTransition)
    assert db.session.query(MaintenanceLog).one().status == "scheduled"


def test_starting_work_on_deployed_vehicle_flags_it(admin, make_user, make_vehicle, book):
    vehicle = make_vehicle()
    dep = book(admin, make_user(), vehicle)
    log = auto_schedule_maintenance(vehicle.id)

    update_maintenance_status(log.maintenance_id, "in_progress", admin)

    v = db.session.get(Vehicle, vehicle.id)
    assert v.status == "deployed"
    assert v.maintenance_flagged is True

    update_deployment_status(dep.deployment_id, "cancelled", admin, reason="vehicle needed in shop")
    assert db.session.get(Vehicle, vehicle.id).status == "maintenance"


def test_due_report(make_vehicle):
    now = datetime.now(timezone.utc)
    soon = make_vehicle(mileage_total=16000.0)
    auto_schedule_maintenance(soon.id)            # due in 7 days
    later = make_vehicle(mileage_total=100.0)
    auto_schedule_maintenance(later.id)           # due in 30 days
    worn = make_vehicle(battery_health=70.0)      # nothing booked yet
    make_vehicle()                                # healthy

    report = get_due_maintenance(days_ahead=8, now=now)

    assert [m.vehicle_id for m in report.scheduled] == [soon.id]
    assert report.total_due == 1
    assert [v.id for v in report.early_warning] == [worn.id]
