"""initial fleet schema: users, vehicles, deployments + history, maintenance, role permissions

Revision ID: 5c2e81d0a4f7
Revises: 
Create Date: 2026-10-18 09:12:44.318204

"""
from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = '5c2e81d0a4f7'
down_revision = None
branch_labels = None
depends_on = None

ACTIVE = sa.text("status IN ('scheduled', 'in_progress')")


def upgrade():
    op.create_table(
        "user",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("full_name", sa.String(length=255), nullable=False),
        sa.Column("email", sa.String(length=255), nullable=False),
        sa.Column("role", sa.String(length=32), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=True),
        sa.UniqueConstraint("email"),
    )

    op.create_table(
        "vehicle",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("vehicle_id", sa.String(length=32), nullable=False),
        sa.Column("registration_number", sa.String(length=20), nullable=False),
        sa.Column("make", sa.String(length=50), nullable=False),
        sa.Column("model", sa.String(length=50), nullable=False),
        sa.Column("year", sa.Integer(), nullable=True),
        sa.Column("color", sa.String(length=30), nullable=True),
        sa.Column("current_hub", sa.String(length=100), nullable=True),
        sa.Column("status", sa.String(length=32), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False),
        sa.Column("battery_level", sa.Float(), nullable=False),
        sa.Column("battery_health", sa.Float(), nullable=False),
        sa.Column("mileage_total", sa.Float(), nullable=False),
        sa.Column("special_equipment", sa.JSON(), nullable=True),
        sa.Column("latitude", sa.Float(), nullable=True),
        sa.Column("longitude", sa.Float(), nullable=True),
        sa.Column("location_updated_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("telemetry_updated_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("assigned_pilot_id", sa.Integer(), sa.ForeignKey("user.id"), nullable=True),
        sa.Column("maintenance_flagged", sa.Boolean(), nullable=False),
        sa.Column("last_maintenance_date", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
        sa.UniqueConstraint("vehicle_id"),
        sa.UniqueConstraint("registration_number"),
    )
    op.create_index("ix_vehicle_status", "vehicle", ["status"])
    op.create_index("ix_vehicle_is_active", "vehicle", ["is_active"])

    op.create_table(
        "deployment",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("deployment_id", sa.String(length=40), nullable=False),
        sa.Column("vehicle_id", sa.Integer(), sa.ForeignKey("vehicle.id"), nullable=False),
        sa.Column("pilot_id", sa.Integer(), sa.ForeignKey("user.id"), nullable=False),
        sa.Column("start_time", sa.DateTime(timezone=True), nullable=False),
        sa.Column("estimated_end_time", sa.DateTime(timezone=True), nullable=False),
        sa.Column("actual_end_time", sa.DateTime(timezone=True), nullable=True),
        sa.Column("start_latitude", sa.Float(), nullable=True),
        sa.Column("start_longitude", sa.Float(), nullable=True),
        sa.Column("start_address", sa.String(length=200), nullable=True),
        sa.Column("current_latitude", sa.Float(), nullable=True),
        sa.Column("current_longitude", sa.Float(), nullable=True),
        sa.Column("current_location_updated_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("end_latitude", sa.Float(), nullable=True),
        sa.Column("end_longitude", sa.Float(), nullable=True),
        sa.Column("end_address", sa.String(length=200), nullable=True),
        sa.Column("status", sa.String(length=32), nullable=False),
        sa.Column("purpose", sa.String(length=200), nullable=True),
        sa.Column("distance_km", sa.Float(), nullable=False),
        sa.Column("end_reason", sa.String(length=64), nullable=True),
        sa.Column("notes", sa.Text(), nullable=True),
        sa.Column("revenue", sa.Float(), nullable=False),
        sa.Column("operational_cost", sa.Float(), nullable=False),
        sa.Column("created_by", sa.String(length=64), nullable=True),
        sa.Column("approved_by", sa.String(length=64), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
        sa.UniqueConstraint("deployment_id"),
    )
    op.create_index("ix_deployment_vehicle_id", "deployment", ["vehicle_id"])
    op.create_index("ix_deployment_pilot_id", "deployment", ["pilot_id"])
    op.create_index("ix_deployment_status", "deployment", ["status"])
    op.create_index("ix_deployment_start_time", "deployment", ["start_time"])
    op.create_index(
        "uq_deployment_active_vehicle", "deployment", ["vehicle_id"], unique=True,
        postgresql_where=ACTIVE, sqlite_where=ACTIVE,
    )
    op.create_index(
        "uq_deployment_active_pilot", "deployment", ["pilot_id"], unique=True,
        postgresql_where=ACTIVE, sqlite_where=ACTIVE,
    )

    op.create_table(
        "deployment_history",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("deployment_pk", sa.Integer(), sa.ForeignKey("deployment.id"), nullable=False),
        sa.Column("total_distance_km", sa.Float(), nullable=True),
        sa.Column("average_speed", sa.Float(), nullable=True),
        sa.Column("max_speed", sa.Float(), nullable=True),
        sa.Column("battery_used", sa.Float(), nullable=True),
        sa.Column("total_duration_minutes", sa.Float(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=True),
        sa.UniqueConstraint("deployment_pk"),
    )

    op.create_table(
        "deployment_status_change",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("history_id", sa.Integer(), sa.ForeignKey("deployment_history.id"), nullable=False),
        sa.Column("from_status", sa.String(length=32), nullable=True),
        sa.Column("to_status", sa.String(length=32), nullable=False),
        sa.Column("changed_by", sa.String(length=64), nullable=False),
        sa.Column("changed_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("reason", sa.String(length=500), nullable=True),
        sa.Column("system_generated", sa.Boolean(), nullable=False),
    )
    op.create_index("ix_deployment_status_change_history_id", "deployment_status_change", ["history_id"])

    op.create_table(
        "deployment_location_sample",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("history_id", sa.Integer(), sa.ForeignKey("deployment_history.id"), nullable=False),
        sa.Column("recorded_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("latitude", sa.Float(), nullable=False),
        sa.Column("longitude", sa.Float(), nullable=False),
        sa.Column("address", sa.String(length=200), nullable=True),
        sa.Column("speed", sa.Float(), nullable=True),
        sa.UniqueConstraint("history_id", "recorded_at", name="uq_location_sample_ts"),
    )
    op.create_index("ix_deployment_location_sample_history_id", "deployment_location_sample", ["history_id"])

    op.create_table(
        "deployment_telemetry_sample",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("history_id", sa.Integer(), sa.ForeignKey("deployment_history.id"), nullable=False),
        sa.Column("recorded_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("battery_level", sa.Float(), nullable=True),
        sa.Column("speed", sa.Float(), nullable=True),
        sa.Column("odometer", sa.Float(), nullable=True),
        sa.UniqueConstraint("history_id", "recorded_at", name="uq_telemetry_sample_ts"),
    )
    op.create_index("ix_deployment_telemetry_sample_history_id", "deployment_telemetry_sample", ["history_id"])

    op.create_table(
        "maintenance_log",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("maintenance_id", sa.String(length=40), nullable=False),
        sa.Column("vehicle_id", sa.Integer(), sa.ForeignKey("vehicle.id"), nullable=False),
        sa.Column("maintenance_type", sa.String(length=40), nullable=False),
        sa.Column("priority", sa.String(length=16), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("status", sa.String(length=32), nullable=False),
        sa.Column("scheduled_date", sa.DateTime(timezone=True), nullable=False),
        sa.Column("estimated_duration_hours", sa.Float(), nullable=True),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("cost", sa.Float(), nullable=True),
        sa.Column("parts_used", sa.JSON(), nullable=True),
        sa.Column("service_provider_name", sa.String(length=100), nullable=True),
        sa.Column("service_provider_contact", sa.String(length=40), nullable=True),
        sa.Column("service_notes", sa.Text(), nullable=True),
        sa.Column("auto_scheduled", sa.Boolean(), nullable=False),
        sa.Column("created_by", sa.String(length=64), nullable=True),
        sa.Column("updated_by", sa.String(length=64), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
        sa.UniqueConstraint("maintenance_id"),
    )
    op.create_index("ix_maintenance_log_vehicle_id", "maintenance_log", ["vehicle_id"])
    op.create_index("ix_maintenance_log_status", "maintenance_log", ["status"])
    op.create_index(
        "uq_maintenance_active_type", "maintenance_log", ["vehicle_id", "maintenance_type"], unique=True,
        postgresql_where=ACTIVE, sqlite_where=ACTIVE,
    )

    op.create_table(
        "role_permission",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("role", sa.String(length=32), nullable=False),
        sa.Column("modules", sa.JSON(), nullable=False),
        sa.Column("updated_by", sa.String(length=64), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
        sa.UniqueConstraint("role"),
    )


def downgrade():
    op.drop_table("role_permission")

    op.drop_index("uq_maintenance_active_type", table_name="maintenance_log")
    op.drop_index("ix_maintenance_log_status", table_name="maintenance_log")
    op.drop_index("ix_maintenance_log_vehicle_id", table_name="maintenance_log")
    op.drop_table("maintenance_log")

    op.drop_index("ix_deployment_telemetry_sample_history_id", table_name="deployment_telemetry_sample")
    op.drop_table("deployment_telemetry_sample")
    op.drop_index("ix_deployment_location_sample_history_id", table_name="deployment_location_sample")
    op.drop_table("deployment_location_sample")
    op.drop_index("ix_deployment_status_change_history_id", table_name="deployment_status_change")
    op.drop_table("deployment_status_change")
    op.drop_table("deployment_history")

    op.drop_index("uq_deployment_active_pilot", table_name="deployment")
    op.drop_index("uq_deployment_active_vehicle", table_name="deployment")
    op.drop_index("ix_deployment_start_time", table_name="deployment")
    op.drop_index("ix_deployment_status", table_name="deployment")
    op.drop_index("ix_deployment_pilot_id", table_name="deployment")
    op.drop_index("ix_deployment_vehicle_id", table_name="deployment")
    op.drop_table("deployment")

    op.drop_index("ix_vehicle_is_active", table_name="vehicle")
    op.drop_index("ix_vehicle_status", table_name="vehicle")
    op.drop_table("vehicle")

    op.drop_table("user")

    # ### end Alembic commands ###
