from datetime import datetime, timezone
from flask_sqlalchemy import SQLAlchemy
from sqlalchemy import UniqueConstraint
from sqlalchemy.ext.hybrid import hybrid_property
from sqlalchemy.types import TypeDecorator


db = SQLAlchemy()


def utcnow():
    return datetime.now(timezone.utc)


class UTCDateTime(TypeDecorator):
    """
    tz-aware UTC in, tz-aware UTC out.

    Postgres hands back aware datetimes from timestamptz, SQLite hands back
    naive ones; both are normalised to UTC here so the services can compare
    timestamps without caring which backend is underneath.
    """
    impl = db.DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)

    def process_result_value(self, value, dialect):
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)


# Deployment statuses that hold a vehicle / pilot
ACTIVE_DEPLOYMENT_STATUSES = ("scheduled", "in_progress")
ACTIVE_MAINTENANCE_STATUSES = ("scheduled", "in_progress")

_ACTIVE_DEPLOYMENT_SQL = db.text("status IN ('scheduled', 'in_progress')")
_ACTIVE_MAINTENANCE_SQL = db.text("status IN ('scheduled', 'in_progress')")


class User(db.Model):
    """Principals and operators. Pilots are users with role='pilot'."""
    __tablename__ = 'user'

    id = db.Column(db.Integer, primary_key=True)
    full_name = db.Column(db.String(255), nullable=False)
    email = db.Column(db.String(255), unique=True, nullable=False)
    role = db.Column(db.String(32), nullable=False, default="pilot")  # pilot | employee | admin | super_admin
    is_active = db.Column(db.Boolean, nullable=False, default=True)
    created_at = db.Column(UTCDateTime(), default=utcnow)

    def __repr__(self):
        return f"<User {self.id} {self.full_name} ({self.role})>"


class Vehicle(db.Model):
    __tablename__ = 'vehicle'

    id = db.Column(db.Integer, primary_key=True)
    vehicle_id = db.Column(db.String(32), unique=True, nullable=False)            # EVZ_VEH_001
    registration_number = db.Column(db.String(20), unique=True, nullable=False)   # stored upper-case
    make = db.Column(db.String(50), nullable=False)
    model = db.Column(db.String(50), nullable=False)
    year = db.Column(db.Integer)
    color = db.Column(db.String(30))
    current_hub = db.Column(db.String(100))

    # available | deployed | maintenance | charging | out_of_service
    status = db.Column(db.String(32), nullable=False, default="available", index=True)
    is_active = db.Column(db.Boolean, nullable=False, default=True, index=True)

    battery_level = db.Column(db.Float, nullable=False, default=100.0)    # %
    battery_health = db.Column(db.Float, nullable=False, default=100.0)   # %
    mileage_total = db.Column(db.Float, nullable=False, default=0.0)      # km
    special_equipment = db.Column(db.JSON, default=list)

    # cached "latest known" position / telemetry (last-writer-wins by sample timestamp)
    latitude = db.Column(db.Float)
    longitude = db.Column(db.Float)
    location_updated_at = db.Column(UTCDateTime())
    telemetry_updated_at = db.Column(UTCDateTime())

    assigned_pilot_id = db.Column(db.Integer, db.ForeignKey('user.id'), nullable=True)

    # set when maintenance starts while the vehicle is out on a deployment
    maintenance_flagged = db.Column(db.Boolean, nullable=False, default=False)
    last_maintenance_date = db.Column(UTCDateTime())

    created_at = db.Column(UTCDateTime(), default=utcnow)
    updated_at = db.Column(UTCDateTime(), default=utcnow, onupdate=utcnow)

    assigned_pilot = db.relationship("User", foreign_keys=[assigned_pilot_id])

    @hybrid_property
    def has_location(self):
        return self.latitude is not None and self.longitude is not None

    def __repr__(self):
        return f"<Vehicle {self.vehicle_id} | {self.registration_number} | {self.status}>"


class Deployment(db.Model):
    __tablename__ = 'deployment'
    __table_args__ = (
        # at most one scheduled/in_progress deployment per vehicle and per pilot
        db.Index(
            'uq_deployment_active_vehicle', 'vehicle_id', unique=True,
            postgresql_where=_ACTIVE_DEPLOYMENT_SQL, sqlite_where=_ACTIVE_DEPLOYMENT_SQL,
        ),
        db.Index(
            'uq_deployment_active_pilot', 'pilot_id', unique=True,
            postgresql_where=_ACTIVE_DEPLOYMENT_SQL, sqlite_where=_ACTIVE_DEPLOYMENT_SQL,
        ),
        db.Index('ix_deployment_start_time', 'start_time'),
    )

    id = db.Column(db.Integer, primary_key=True)
    deployment_id = db.Column(db.String(40), unique=True, nullable=False)   # DEP_001_261018

    vehicle_id = db.Column(db.Integer, db.ForeignKey('vehicle.id'), nullable=False, index=True)
    pilot_id = db.Column(db.Integer, db.ForeignKey('user.id'), nullable=False, index=True)

    start_time = db.Column(UTCDateTime(), nullable=False)
    estimated_end_time = db.Column(UTCDateTime(), nullable=False)
    actual_end_time = db.Column(UTCDateTime())

    start_latitude = db.Column(db.Float)
    start_longitude = db.Column(db.Float)
    start_address = db.Column(db.String(200))
    current_latitude = db.Column(db.Float)
    current_longitude = db.Column(db.Float)
    current_location_updated_at = db.Column(UTCDateTime())
    end_latitude = db.Column(db.Float)
    end_longitude = db.Column(db.Float)
    end_address = db.Column(db.String(200))

    # scheduled | in_progress | completed | cancelled | emergency_stop
    status = db.Column(db.String(32), nullable=False, default="scheduled", index=True)
    purpose = db.Column(db.String(200))
    distance_km = db.Column(db.Float, nullable=False, default=0.0)
    end_reason = db.Column(db.String(64))
    notes = db.Column(db.Text)

    revenue = db.Column(db.Float, nullable=False, default=0.0)
    operational_cost = db.Column(db.Float, nullable=False, default=0.0)

    created_by = db.Column(db.String(64))
    approved_by = db.Column(db.String(64))
    created_at = db.Column(UTCDateTime(), default=utcnow)
    updated_at = db.Column(UTCDateTime(), default=utcnow, onupdate=utcnow)

    vehicle = db.relationship("Vehicle")
    pilot = db.relationship("User", foreign_keys=[pilot_id])
    history = db.relationship(
        "DeploymentHistory", back_populates="deployment", uselist=False, cascade="all, delete-orphan"
    )

    def __repr__(self):
        return f"<Deployment {self.deployment_id} | vehicle {self.vehicle_id} | {self.status}>"


class DeploymentHistory(db.Model):
    """One row per deployment; owns the three append-only logs and the completion metrics."""
    __tablename__ = 'deployment_history'

    id = db.Column(db.Integer, primary_key=True)
    deployment_pk = db.Column(db.Integer, db.ForeignKey('deployment.id'), unique=True, nullable=False)

    # Performance metrics (calculated at completion)
    total_distance_km = db.Column(db.Float)
    average_speed = db.Column(db.Float)
    max_speed = db.Column(db.Float)
    battery_used = db.Column(db.Float)
    total_duration_minutes = db.Column(db.Float)

    created_at = db.Column(UTCDateTime(), default=utcnow)

    deployment = db.relationship("Deployment", back_populates="history")
    status_changes = db.relationship(
        "DeploymentStatusChange", back_populates="history",
        order_by="DeploymentStatusChange.id", cascade="all, delete-orphan",
    )
    location_samples = db.relationship(
        "DeploymentLocationSample", back_populates="history",
        order_by="DeploymentLocationSample.recorded_at", cascade="all, delete-orphan",
    )
    telemetry_samples = db.relationship(
        "DeploymentTelemetrySample", back_populates="history",
        order_by="DeploymentTelemetrySample.recorded_at", cascade="all, delete-orphan",
    )

    def __repr__(self):
        return f"<DeploymentHistory deployment={self.deployment_pk}>"


class DeploymentStatusChange(db.Model):
    __tablename__ = 'deployment_status_change'

    id = db.Column(db.Integer, primary_key=True)
    history_id = db.Column(db.Integer, db.ForeignKey('deployment_history.id'), nullable=False, index=True)
    from_status = db.Column(db.String(32))          # NULL for the initial 'scheduled' entry
    to_status = db.Column(db.String(32), nullable=False)
    changed_by = db.Column(db.String(64), nullable=False)
    changed_at = db.Column(UTCDateTime(), nullable=False, default=utcnow)
    reason = db.Column(db.String(500))
    system_generated = db.Column(db.Boolean, nullable=False, default=False)

    history = db.relationship("DeploymentHistory", back_populates="status_changes")

    def __repr__(self):
        return f"<DeploymentStatusChange {self.from_status} -> {self.to_status} by {self.changed_by}>"


class DeploymentLocationSample(db.Model):
    __tablename__ = 'deployment_location_sample'
    __table_args__ = (
        UniqueConstraint('history_id', 'recorded_at', name='uq_location_sample_ts'),
    )

    id = db.Column(db.Integer, primary_key=True)
    history_id = db.Column(db.Integer, db.ForeignKey('deployment_history.id'), nullable=False, index=True)
    recorded_at = db.Column(UTCDateTime(), nullable=False)
    latitude = db.Column(db.Float, nullable=False)
    longitude = db.Column(db.Float, nullable=False)
    address = db.Column(db.String(200))
    speed = db.Column(db.Float)

    history = db.relationship("DeploymentHistory", back_populates="location_samples")


class DeploymentTelemetrySample(db.Model):
    __tablename__ = 'deployment_telemetry_sample'
    __table_args__ = (
        UniqueConstraint('history_id', 'recorded_at', name='uq_telemetry_sample_ts'),
    )

    id = db.Column(db.Integer, primary_key=True)
    history_id = db.Column(db.Integer, db.ForeignKey('deployment_history.id'), nullable=False, index=True)
    recorded_at = db.Column(UTCDateTime(), nullable=False)
    battery_level = db.Column(db.Float)
    speed = db.Column(db.Float)
    odometer = db.Column(db.Float)

    history = db.relationship("DeploymentHistory", back_populates="telemetry_samples")


class MaintenanceLog(db.Model):
    __tablename__ = 'maintenance_log'
    __table_args__ = (
        # a vehicle can't have two active records of the same type
        db.Index(
            'uq_maintenance_active_type', 'vehicle_id', 'maintenance_type', unique=True,
            postgresql_where=_ACTIVE_MAINTENANCE_SQL, sqlite_where=_ACTIVE_MAINTENANCE_SQL,
        ),
    )

    id = db.Column(db.Integer, primary_key=True)
    maintenance_id = db.Column(db.String(40), unique=True, nullable=False)   # MAINT_001_261018
    vehicle_id = db.Column(db.Integer, db.ForeignKey('vehicle.id'), nullable=False, index=True)

    maintenance_type = db.Column(db.String(40), nullable=False)
    priority = db.Column(db.String(16), nullable=False, default="medium")
    description = db.Column(db.Text)

    # scheduled | in_progress | completed | cancelled
    status = db.Column(db.String(32), nullable=False, default="scheduled", index=True)
    scheduled_date = db.Column(UTCDateTime(), nullable=False)
    estimated_duration_hours = db.Column(db.Float)
    started_at = db.Column(UTCDateTime())
    # vehicle status when work started; restored when the last open job closes
    vehicle_status_before = db.Column(db.String(32))
    completed_at = db.Column(UTCDateTime())

    cost = db.Column(db.Float)
    parts_used = db.Column(db.JSON, default=list)
    service_provider_name = db.Column(db.String(100))
    service_provider_contact = db.Column(db.String(40))
    service_notes = db.Column(db.Text)
    auto_scheduled = db.Column(db.Boolean, nullable=False, default=False)

    created_by = db.Column(db.String(64))
    updated_by = db.Column(db.String(64))
    created_at = db.Column(UTCDateTime(), default=utcnow)
    updated_at = db.Column(UTCDateTime(), default=utcnow, onupdate=utcnow)

    vehicle = db.relationship("Vehicle")

    def __repr__(self):
        return f"<MaintenanceLog {self.maintenance_id} | {self.maintenance_type} | {self.status}>"


class RolePermission(db.Model):
    __tablename__ = 'role_permission'

    id = db.Column(db.Integer, primary_key=True)
    role = db.Column(db.String(32), unique=True, nullable=False)
    # [{"name": "vehicle_deployment", "enabled": true, "permissions": ["read", ...]}, ...]
    modules = db.Column(db.JSON, nullable=False, default=list)
    updated_by = db.Column(db.String(64))
    updated_at = db.Column(UTCDateTime(), default=utcnow, onupdate=utcnow)

    def module_entry(self, module_name):
        for entry in self.modules or []:
            if entry.get("name") == module_name:
                return entry
        return None

    def __repr__(self):
        return f"<RolePermission {self.role}>"
