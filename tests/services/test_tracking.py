# tests/services/test_tracking.py
import threading
import time
from datetime import datetime, timedelta, timezone

import pytest

from evfleet.db_models import db, Deployment, User, Vehicle
from evfleet.services.access_control import Principal
from evfleet.services.deployment_state import cancel_deployment, update_deployment_status
from evfleet.services.errors import (
    AuthorizationDenied,
    DeploymentNotActive,
    DeploymentNotFound,
    InvalidStatusTransition,
    OperationTimeout,
    ValidationFailed,
)
from evfleet.services.locks import run_locked
from evfleet.services.tracking import (
    TrackingDispatcher,
    TrackingSample,
    get_tracking_dispatcher,
    ingest_tracking,
    validate_sample,
)
from evfleet.utils.geo import GeoPoint


def now_plus(minutes=0):
    return datetime.now(timezone.utc) + timedelta(minutes=minutes)


@pytest.fixture
def live(admin, make_user, make_vehicle, book):
    """(deployment_id, pilot principal, vehicle pk) for a freshly booked deployment."""
    pilot = make_user()
    vehicle = make_vehicle(battery_level=90.0, mileage_total=1000.0)
    dep = book(admin, pilot, vehicle)
    return dep.deployment_id, Principal(pilot.id, "pilot"), vehicle.id


def test_sample_validation():
    assert validate_sample(TrackingSample(recorded_at=now_plus())).fields == {
        "sample": "location, telemetry or status is required"
    }
    bad = validate_sample(TrackingSample(recorded_at=now_plus(), battery_level=120, speed=-1, status="flying"))
    assert set(bad.fields) == {"battery_level", "speed", "status"}
    assert validate_sample(TrackingSample(recorded_at=now_plus(), speed=30)) is None


def test_first_sample_auto_starts_scheduled_deployment(live):
    dep_id, pilot, vehicle_pk = live
    ts = now_plus()

    result = ingest_tracking(dep_id, TrackingSample(recorded_at=ts, location=GeoPoint(12.98, 77.60), battery_level=88), pilot)

    assert result.auto_started is True
    assert result.location_recorded and result.telemetry_recorded
    d = result.deployment
    assert d.status == "in_progress"
    start_change = d.history.status_changes[-1]
    assert (start_change.from_status, start_change.to_status) == ("scheduled", "in_progress")
    assert start_change.system_generated is True
    assert start_change.changed_by == "system"
    assert d.current_latitude == 12.98

    v = db.session.get(Vehicle, vehicle_pk)
    assert v.battery_level == 88
    assert (v.latitude, v.longitude) == (12.98, 77.60)


def test_duplicate_timestamp_is_ignored(live):
    dep_id, pilot, _ = live
    ts = now_plus()
    ingest_tracking(dep_id, TrackingSample(recorded_at=ts, location=GeoPoint(12.98, 77.60)), pilot)

    again = ingest_tracking(dep_id, TrackingSample(recorded_at=ts, location=GeoPoint(13.5, 77.9)), pilot)

    assert again.duplicate is True
    d = db.session.query(Deployment).filter_by(deployment_id=dep_id).one()
    assert len(d.history.location_samples) == 1
    assert d.current_latitude == 12.98


def test_out_of_order_sample_is_appended_but_does_not_roll_back_cache(live):
    dep_id, pilot, vehicle_pk = live
    t1 = now_plus(2)
    ingest_tracking(dep_id, TrackingSample(recorded_at=t1, location=GeoPoint(12.99, 77.61), battery_level=80), pilot)

    late = ingest_tracking(
        dep_id, TrackingSample(recorded_at=t1 - timedelta(minutes=1), location=GeoPoint(12.98, 77.60), battery_level=85),
        pilot,
    )

    assert late.location_recorded
    d = late.deployment
    assert len(d.history.location_samples) == 2
    assert [s.latitude for s in d.history.location_samples] == [12.98, 12.99]
    assert d.current_latitude == 12.99
    assert db.session.get(Vehicle, vehicle_pk).battery_level == 80


def test_odometer_sets_vehicle_mileage(live):
    dep_id, pilot, vehicle_pk = live

    ingest_tracking(dep_id, TrackingSample(recorded_at=now_plus(), odometer=1042.5), pilot)

    assert db.session.get(Vehicle, vehicle_pk).mileage_total == 1042.5


def test_status_only_cancel_on_scheduled_deployment(live):
    dep_id, pilot, vehicle_pk = live

    result = ingest_tracking(
        dep_id, TrackingSample(recorded_at=now_plus(), status="cancelled", reason="changed plans"), pilot
    )

    assert result.auto_started is False
    assert result.status_error is None
    assert result.status_applied == "cancelled"
    d = db.session.query(Deployment).filter_by(deployment_id=dep_id).one()
    assert d.status == "cancelled"
    assert [c.to_status for c in d.history.status_changes] == ["scheduled", "cancelled"]
    assert db.session.get(Vehicle, vehicle_pk).status == "available"


def test_status_only_sample_does_not_start_deployment(live):
    dep_id, pilot, _ = live

    result = ingest_tracking(dep_id, TrackingSample(recorded_at=now_plus(), status="completed"), pilot)

    assert result.auto_started is False
    assert isinstance(result.status_error, InvalidStatusTransition)
    assert result.status_error.from_status == "scheduled"
    assert db.session.query(Deployment).filter_by(deployment_id=dep_id).one().status == "scheduled"


def test_rejected_status_change_keeps_telemetry(live):
    dep_id, pilot, _ = live
    t0 = now_plus()
    ingest_tracking(dep_id, TrackingSample(recorded_at=t0, location=GeoPoint(12.98, 77.60)), pilot)

    result = ingest_tracking(
        dep_id,
        TrackingSample(recorded_at=t0 + timedelta(minutes=1), speed=40, status="cancelled", reason="changed plans"),
        pilot,
    )

    # in_progress -> cancelled is not a legal move
    assert isinstance(result.status_error, InvalidStatusTransition)
    assert result.telemetry_recorded is True
    payload = result.to_dict()
    assert payload["status_change"]["applied"] is False
    assert payload["status_change"]["error"]["error"] == "invalid_status_transition"
    d = db.session.query(Deployment).filter_by(deployment_id=dep_id).one()
    assert d.status == "in_progress"
    assert len(d.history.telemetry_samples) == 1


def test_completing_via_tracking_uses_odometer_distance(live):
    dep_id, pilot, vehicle_pk = live
    t0 = now_plus()
    ingest_tracking(dep_id, TrackingSample(recorded_at=t0, odometer=1000.0, battery_level=90), pilot)

    result = ingest_tracking(
        dep_id,
        TrackingSample(
            recorded_at=t0 + timedelta(minutes=30), location=GeoPoint(13.0, 77.6),
            odometer=1012.0, battery_level=84, status="completed",
        ),
        pilot,
    )

    assert result.status_applied == "completed"
    d = result.deployment
    assert d.status == "completed"
    assert d.distance_km == 12.0
    assert d.end_latitude == 13.0
    assert d.history.battery_used == 6
    assert d.history.total_duration_minutes == pytest.approx(30.0, abs=0.01)
    v = db.session.get(Vehicle, vehicle_pk)
    # odometer already carried the distance; nothing added on top
    assert v.mileage_total == 1012.0
    assert v.status == "available"


def test_single_odometer_reading_is_not_counted_twice(live, admin):
    dep_id, pilot, vehicle_pk = live
    t0 = now_plus()
    ingest_tracking(dep_id, TrackingSample(recorded_at=t0, location=GeoPoint(12.9816, 77.5946)), pilot)
    ingest_tracking(dep_id, TrackingSample(recorded_at=t0 + timedelta(minutes=5), odometer=1004.0), pilot)

    done = update_deployment_status(dep_id, "completed", admin, actual_end_time=t0 + timedelta(minutes=20))

    assert done.status == "completed"
    # distance falls back to the location path, mileage stays on the odometer
    assert done.distance_km > 1.0
    assert db.session.get(Vehicle, vehicle_pk).mileage_total == 1004.0


def test_finished_deployment_rejects_tracking(live, admin):
    dep_id, pilot, _ = live
    cancel_deployment(dep_id, admin, reason="vehicle swap")

    result = ingest_tracking(dep_id, TrackingSample(recorded_at=now_plus(), speed=10), pilot)

    assert isinstance(result, DeploymentNotActive)
    assert result.status == "cancelled"


def test_emergency_stopped_deployment_rejects_tracking(live, admin):
    dep_id, pilot, _ = live
    update_deployment_status(dep_id, "in_progress", admin)
    update_deployment_status(dep_id, "emergency_stop", admin, reason="collision")

    assert isinstance(ingest_tracking(dep_id, TrackingSample(recorded_at=now_plus(), speed=0), pilot), DeploymentNotActive)


def test_other_pilot_cannot_post_tracking(live, make_user):
    dep_id, _, _ = live
    stranger = Principal(make_user().id, "pilot")

    assert isinstance(ingest_tracking(dep_id, TrackingSample(recorded_at=now_plus(), speed=10), stranger), AuthorizationDenied)


def test_unknown_deployment(test_app):
    result = ingest_tracking("DEP_999_000101", TrackingSample(recorded_at=now_plus(), speed=10), Principal(1, "admin"))

    assert isinstance(result, DeploymentNotFound)


def test_invalid_sample_is_rejected_before_lookup(test_app):
    result = ingest_tracking("whatever", TrackingSample(recorded_at=now_plus(), battery_level=-5), Principal(1, "admin"))

    assert isinstance(result, ValidationFailed)


def test_dispatcher_runs_inline_in_tests(test_app):
    dispatcher = get_tracking_dispatcher()

    assert dispatcher.max_workers == 0
    assert dispatcher.run(lambda a, b: a + b, 2, 3) == 5


def test_dispatcher_drops_job_still_queued(test_app):
    release = threading.Event()
    ran = threading.Event()
    dispatcher = TrackingDispatcher(test_app, max_workers=1)
    try:
        dispatcher.submit(release.wait, 5)
        result = dispatcher.run(ran.set, timeout=0.05)
        assert isinstance(result, OperationTimeout)
        assert result.seconds == 0.05
    finally:
        release.set()
        dispatcher.shutdown()
    assert not ran.is_set()


def test_overrunning_job_commits_nothing(file_app):
    dispatcher = TrackingDispatcher(file_app, max_workers=1)

    def slow_job():
        def create():
            time.sleep(0.3)
            db.session.add(User(full_name="Late Pilot", email="late@evfleet.test", role="pilot"))
            return "created"

        return run_locked([("pilot", "late")], "ingest_tracking", create)

    try:
        result = dispatcher.run(slow_job, timeout=0.1)
    finally:
        dispatcher.shutdown()

    assert isinstance(result, OperationTimeout)
    assert result.seconds == 0.1
    db.session.remove()
    assert db.session.query(User).count() == 0


def test_job_within_deadline_commits(file_app):
    dispatcher = TrackingDispatcher(file_app, max_workers=1)

    def quick_job():
        def create():
            db.session.add(User(full_name="Prompt Pilot", email="prompt@evfleet.test", role="pilot"))
            return "created"

        return run_locked([("pilot", "prompt")], "ingest_tracking", create)

    try:
        assert dispatcher.run(quick_job, timeout=5) == "created"
    finally:
        dispatcher.shutdown()

    db.session.remove()
    assert db.session.query(User).count() == 1
