"""add maintenance_log.vehicle_status_before so finished work restores the vehicle's status

Revision ID: 8d41c6b2e9a3
Revises: 5c2e81d0a4f7
Create Date: 2026-10-19 10:41:07.552810
"""
from alembic import op
import sqlalchemy as sa

revision = "8d41c6b2e9a3"
down_revision = "5c2e81d0a4f7"
branch_labels = None
depends_on = None


def upgrade():
    with op.batch_alter_table("maintenance_log", schema=None) as batch_op:
        batch_op.add_column(sa.Column("vehicle_status_before", sa.String(length=32), nullable=True))


def downgrade():
    with op.batch_alter_table("maintenance_log", schema=None) as batch_op:
        batch_op.drop_column("vehicle_status_before")
