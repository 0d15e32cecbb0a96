# tests/services/test_deployment_state.py
from datetime import datetime, timedelta, timezone
from types import SimpleNamespace

import pytest

from evfleet.db_models import db, Deployment, DeploymentLocationSample, DeploymentTelemetrySample, Vehicle
from evfleet.services.access_control import Principal
from evfleet.services.deployment_state import (
    TERMINAL_STATUSES,
    cancel_deployment,
    compute_completion_metrics,
    is_valid_transition,
    is_valid_walk,
    update_deployment_status,
)
from evfleet.services.errors import AuthorizationDenied, InvalidStatusTransition, ValidationFailed


def dt(y, m, d, hh=0, mm=0):
    return datetime(y, m, d, hh, mm, tzinfo=timezone.utc)


@pytest.mark.parametrize(
    "from_status,to_status",
    [
        ("scheduled", "in_progress"),
        ("scheduled", "cancelled"),
        ("in_progress", "completed"),
        ("in_progress", "emergency_stop"),
        ("emergency_stop", "completed"),
        ("emergency_stop", "cancelled"),
    ],
)
def test_allowed_transitions(from_status, to_status):
    assert is_valid_transition(from_status, to_status)


@pytest.mark.parametrize(
    "from_status,to_status",
    [
        ("scheduled", "completed"),
        ("scheduled", "emergency_stop"),
        ("in_progress", "scheduled"),
        ("in_progress", "cancelled"),
        ("completed", "in_progress"),
        ("cancelled", "scheduled"),
        (None, "in_progress"),
    ],
)
def test_rejected_transitions(from_status, to_status):
    assert not is_valid_transition(from_status, to_status)


def test_terminal_statuses_have_no_exits():
    assert TERMINAL_STATUSES == {"completed", "cancelled"}


def test_walks():
    assert is_valid_walk(["scheduled", "in_progress", "emergency_stop", "completed"])
    assert is_valid_walk(["scheduled", "cancelled"])
    assert not is_valid_walk(["in_progress", "completed"])
    assert not is_valid_walk(["scheduled", "in_progress", "completed", "cancelled"])
    assert not is_valid_walk([])


def test_completion_metrics_fall_back_to_haversine_path():
    d = Deployment(start_time=dt(2026, 3, 1, 9), start_latitude=12.9716, start_longitude=77.5946)
    history = SimpleNamespace(status_changes=[], telemetry_samples=[])
    # ~1.11 km north of start each hop
    history.location_samples = [
        DeploymentLocationSample(recorded_at=dt(2026, 3, 1, 9, 10), latitude=12.9816, longitude=77.5946),
        DeploymentLocationSample(recorded_at=dt(2026, 3, 1, 9, 20), latitude=12.9916, longitude=77.5946),
    ]

    metrics = compute_completion_metrics(d, history, dt(2026, 3, 1, 10))

    assert metrics["total_distance_km"] == pytest.approx(2.224, abs=0.01)
    assert metrics["total_duration_minutes"] == 60
    assert metrics["average_speed"] == pytest.approx(2.22, abs=0.01)
    assert metrics["odometer_reported"] is False
    assert metrics["battery_used"] is None


def test_completion_metrics_prefer_odometer_delta():
    d = Deployment(start_time=dt(2026, 3, 1, 9), start_latitude=12.9716, start_longitude=77.5946)
    history = SimpleNamespace(status_changes=[])
    history.location_samples = [
        DeploymentLocationSample(recorded_at=dt(2026, 3, 1, 9, 10), latitude=13.5, longitude=77.5946),
    ]
    history.telemetry_samples = [
        DeploymentTelemetrySample(recorded_at=dt(2026, 3, 1, 9, 5), battery_level=88, speed=20, odometer=1000),
        DeploymentTelemetrySample(recorded_at=dt(2026, 3, 1, 9, 50), battery_level=80, speed=40, odometer=1025.5),
    ]

    metrics = compute_completion_metrics(d, history, dt(2026, 3, 1, 10))

    assert metrics["total_distance_km"] == 25.5
    assert metrics["odometer_reported"] is True
    assert metrics["average_speed"] == 30
    assert metrics["max_speed"] == 40
    assert metrics["battery_used"] == 8


def test_single_odometer_reading_still_counts_as_reported():
    d = Deployment(start_time=dt(2026, 3, 1, 9), start_latitude=12.9716, start_longitude=77.5946)
    history = SimpleNamespace(status_changes=[])
    history.location_samples = [
        DeploymentLocationSample(recorded_at=dt(2026, 3, 1, 9, 10), latitude=12.9816, longitude=77.5946),
    ]
    history.telemetry_samples = [DeploymentTelemetrySample(recorded_at=dt(2026, 3, 1, 9, 5), odometer=1004)]

    metrics = compute_completion_metrics(d, history, dt(2026, 3, 1, 10))

    assert metrics["total_distance_km"] == pytest.approx(1.112, abs=0.01)
    assert metrics["odometer_reported"] is True


def test_full_lifecycle_appends_one_change_per_transition(admin, make_user, make_vehicle, book):
    pilot = make_user()
    vehicle = make_vehicle(mileage_total=500.0)
    dep = book(admin, pilot, vehicle)
    dep_id = dep.deployment_id

    assert update_deployment_status(dep_id, "in_progress", admin).status == "in_progress"
    done = update_deployment_status(dep_id, "completed", admin, revenue=450.0)

    assert done.status == "completed"
    assert done.actual_end_time is not None
    assert done.revenue == 450.0
    changes = [(c.from_status, c.to_status) for c in done.history.status_changes]
    assert changes == [(None, "scheduled"), ("scheduled", "in_progress"), ("in_progress", "completed")]

    v = db.session.get(Vehicle, vehicle.id)
    assert v.status == "available"
    assert v.assigned_pilot_id is None


def test_rejected_transition_leaves_deployment_untouched(admin, make_user, make_vehicle, book):
    dep = book(admin, make_user(), make_vehicle())
    dep_id = dep.deployment_id

    result = update_deployment_status(dep_id, "completed", admin)

    assert isinstance(result, InvalidStatusTransition)
    assert result.from_status == "scheduled"
    again = db.session.query(Deployment).filter_by(deployment_id=dep_id).one()
    assert again.status == "scheduled"
    assert len(again.history.status_changes) == 1


def test_terminal_deployment_cannot_move(admin, make_user, make_vehicle, book):
    dep = book(admin, make_user(), make_vehicle())
    cancel_deployment(dep.deployment_id, admin, reason="customer no-show")

    result = update_deployment_status(dep.deployment_id, "in_progress", admin)

    assert isinstance(result, InvalidStatusTransition)
    assert result.from_status == "cancelled"


def test_cancel_and_emergency_stop_require_reason(admin, make_user, make_vehicle, book):
    dep = book(admin, make_user(), make_vehicle())

    result = cancel_deployment(dep.deployment_id, admin, reason="  ")

    assert isinstance(result, ValidationFailed)
    assert "reason" in result.fields


def test_cancel_releases_vehicle_and_records_note(admin, make_user, make_vehicle, book):
    vehicle = make_vehicle()
    dep = book(admin, make_user(), vehicle)

    result = cancel_deployment(dep.deployment_id, admin, reason="rain")

    assert result.status == "cancelled"
    assert result.end_reason == "cancelled"
    assert "cancelled: rain" in result.notes
    assert db.session.get(Vehicle, vehicle.id).status == "available"


def test_emergency_stop_then_complete(admin, make_user, make_vehicle, book):
    dep = book(admin, make_user(), make_vehicle())
    update_deployment_status(dep.deployment_id, "in_progress", admin)

    stopped = update_deployment_status(dep.deployment_id, "emergency_stop", admin, reason="flat tyre")
    assert stopped.status == "emergency_stop"

    done = update_deployment_status(dep.deployment_id, "completed", admin)
    assert done.status == "completed"
    assert [c.to_status for c in done.history.status_changes][-2:] == ["emergency_stop", "completed"]


def test_completion_adds_path_distance_to_mileage(admin, make_user, make_vehicle, book):
    vehicle = make_vehicle(mileage_total=500.0)
    dep = book(admin, make_user(), vehicle)
    update_deployment_status(dep.deployment_id, "in_progress", admin)

    d = db.session.query(Deployment).filter_by(deployment_id=dep.deployment_id).one()
    d.history.location_samples.append(
        DeploymentLocationSample(
            recorded_at=datetime.now(timezone.utc), latitude=d.start_latitude + 0.01, longitude=d.start_longitude
        )
    )
    db.session.commit()

    done = update_deployment_status(dep.deployment_id, "completed", admin)

    assert done.distance_km == pytest.approx(1.112, abs=0.01)
    assert db.session.get(Vehicle, vehicle.id).mileage_total == pytest.approx(501.112, abs=0.01)


def test_completion_with_flagged_vehicle_sends_it_to_maintenance(admin, make_user, make_vehicle, book):
    vehicle = make_vehicle()
    dep = book(admin, make_user(), vehicle)
    update_deployment_status(dep.deployment_id, "in_progress", admin)
    v = db.session.get(Vehicle, vehicle.id)
    v.maintenance_flagged = True
    db.session.commit()

    update_deployment_status(dep.deployment_id, "completed", admin)

    assert db.session.get(Vehicle, vehicle.id).status == "maintenance"


def test_pilot_can_update_own_deployment_but_not_others(admin, make_user, make_vehicle, book):
    owner = make_user()
    other = make_user()
    dep = book(admin, owner, make_vehicle())

    denied = update_deployment_status(dep.deployment_id, "in_progress", Principal(other.id, "pilot"))
    assert isinstance(denied, AuthorizationDenied)

    ok = update_deployment_status(dep.deployment_id, "in_progress", Principal(owner.id, "pilot"))
    assert ok.status == "in_progress"
    assert ok.history.status_changes[-1].changed_by == f"user:{owner.id}"


def test_completed_before_start_is_rejected(admin, make_user, make_vehicle, book):
    dep = book(admin, make_user(), make_vehicle())
    update_deployment_status(dep.deployment_id, "in_progress", admin)

    result = update_deployment_status(
        dep.deployment_id, "completed", admin, actual_end_time=datetime.now(timezone.utc) - timedelta(days=1)
    )

    assert isinstance(result, ValidationFailed)
    assert "actual_end_time" in result.fields
