from __future__ import annotations

from datetime import datetime

from flask import current_app

from evfleet.db_models import db

DEPLOYMENT_PREFIX = "DEP"
MAINTENANCE_PREFIX = "MAINT"
VEHICLE_PREFIX = "EVZ_VEH"


def effective_prefix(prefix: str) -> str:
    if current_app.config.get("ID_PREFIX_TEST"):
        return f"TEST_{prefix}"
    return prefix


def next_sequential_id(column, prefix: str, now: datetime) -> str:
    """
    Human readable id: {PREFIX}_{seq:03d}_{yymmdd}, seq restarting daily.

    Two writers can land on the same number; the column's unique index
    rejects the later commit. Deployment booking retries on that, maintenance
    scheduling holds the ("sequence", prefix) lock through commit instead.
    """
    prefix = effective_prefix(prefix)
    day = now.strftime("%y%m%d")
    pattern = f"{_like_escape(prefix)}\\_%\\_{day}"

    taken = {
        value
        for (value,) in db.session.query(column).filter(column.like(pattern, escape="\\")).all()
    }
    seq = len(taken) + 1
    candidate = f"{prefix}_{seq:03d}_{day}"
    while candidate in taken:
        seq += 1
        candidate = f"{prefix}_{seq:03d}_{day}"
    return candidate


def next_vehicle_id(column) -> str:
    prefix = effective_prefix(VEHICLE_PREFIX)
    count = db.session.query(column).filter(column.like(f"{_like_escape(prefix)}\\_%", escape="\\")).count()
    return f"{prefix}_{count + 1:03d}"


def _like_escape(s: str) -> str:
    return s.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
