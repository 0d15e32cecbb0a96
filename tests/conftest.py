from datetime import datetime, timedelta, timezone

import pytest

from evfleet import create_app, db
from evfleet.config import TestConfig
from evfleet.db_models import User, Vehicle
from evfleet.services.access_control import Principal
from evfleet.services.availability import DeploymentRequest, create_deployment
from evfleet.utils.geo import GeoPoint

# Bengaluru hub
HUB = GeoPoint(12.9716, 77.5946, "MG Road hub")


@pytest.fixture
def test_app():
    app = create_app(TestConfig)

    with app.app_context():
        db.create_all()
        yield app
        db.session.remove()

        # 🛡️ Protect against real DB being wiped
        db_url = app.config["SQLALCHEMY_DATABASE_URI"]
        if "sqlite:///:memory:" not in db_url:
            raise RuntimeError(f"Refusing to drop_all() on non-test DB: {db_url}")

        db.drop_all()


@pytest.fixture
def file_app(tmp_path):
    """File-backed SQLite so several threads can each hold their own connection."""
    app = create_app(TestConfig, {"SQLALCHEMY_DATABASE_URI": f"sqlite:///{tmp_path / 'fleet.db'}"})
    with app.app_context():
        db.create_all()
        yield app
        db.session.remove()
        db.engine.dispose()


@pytest.fixture
def client(test_app):
    return test_app.test_client()


@pytest.fixture
def make_user(test_app):
    counter = {"n": 0}

    def _make(role="pilot", name=None, is_active=True):
        counter["n"] += 1
        n = counter["n"]
        user = User(
            full_name=name or f"{role.title()} {n}",
            email=f"{role}{n}@evfleet.test",
            role=role,
            is_active=is_active,
        )
        db.session.add(user)
        db.session.commit()
        return user

    return _make


@pytest.fixture
def make_vehicle(test_app):
    counter = {"n": 0}

    def _make(**overrides):
        counter["n"] += 1
        n = counter["n"]
        values = dict(
            vehicle_id=f"EVZ_VEH_{n:03d}",
            registration_number=f"KA01AB{1000 + n}",
            make="Tata",
            model="Nexon EV",
            status="available",
            is_active=True,
            battery_level=90.0,
            battery_health=95.0,
            mileage_total=1200.0,
            special_equipment=[],
            latitude=HUB.latitude,
            longitude=HUB.longitude,
        )
        values.update(overrides)
        vehicle = Vehicle(**values)
        db.session.add(vehicle)
        db.session.commit()
        return vehicle

    return _make


@pytest.fixture
def admin(make_user):
    user = make_user("admin", name="Asha Admin")
    return Principal(user_id=user.id, role="admin")


@pytest.fixture
def book(test_app):
    """Create a deployment starting in an hour; extra kwargs go to DeploymentRequest."""

    def _book(principal, pilot, vehicle=None, location=HUB, start_in=timedelta(hours=1),
              length=timedelta(hours=2), **kwargs):
        start = datetime.now(timezone.utc) + start_in
        req = DeploymentRequest(
            pilot_id=pilot.id,
            start_time=start,
            estimated_end_time=start + length,
            vehicle_ref=vehicle.vehicle_id if vehicle is not None else None,
            start_location=location,
            **kwargs,
        )
        return create_deployment(req, principal)

    return _book


@pytest.fixture
def login(client):
    def _login(user=None, role=None):
        with client.session_transaction() as sess:
            sess["role"] = role or user.role
            sess["user_id"] = user.id if user is not None else None

    return _login
