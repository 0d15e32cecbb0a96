# evfleet/services/tracking.py
"""
Tracking ingest for active deployments.

Samples are appended to the deployment's history (never overwritten) and the
Vehicle / Deployment "latest known" caches are updated last-writer-wins by
sample timestamp, so an out-of-order sample can't roll the cache back.

Clients are expected to post at most one sample per deployment every 30s;
that cadence is enforced by the rate limiter in front of the service, not
here.
"""
from __future__ import annotations

import time
from concurrent.futures import ThreadPoolExecutor, TimeoutError as FutureTimeout
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from flask import current_app, g

from evfleet.db_models import (
    db,
    DeploymentLocationSample,
    DeploymentTelemetrySample,
    Vehicle,
)
from evfleet.services.access_control import Principal, can_act_on_deployment
from evfleet.services.deployment_state import (
    DEPLOYMENT_STATUSES,
    SYSTEM_ACTOR,
    apply_transition,
    ensure_history,
    is_valid_transition,
    get_deployment,
)
from evfleet.services.errors import (
    DeploymentError,
    DeploymentNotActive,
    DeploymentNotFound,
    OperationTimeout,
    ValidationFailed,
)
from evfleet.services.locks import JobDeadline, lock_timeout, run_locked
from evfleet.utils.dates import as_utc, isoformat_or_none
from evfleet.utils.geo import GeoPoint


@dataclass(frozen=True)
class TrackingSample:
    recorded_at: datetime
    location: Optional[GeoPoint] = None
    battery_level: Optional[float] = None
    speed: Optional[float] = None
    odometer: Optional[float] = None
    status: Optional[str] = None
    reason: Optional[str] = None

    @property
    def has_telemetry(self) -> bool:
        return self.battery_level is not None or self.speed is not None or self.odometer is not None


@dataclass
class IngestResult:
    deployment: object
    duplicate: bool = False
    location_recorded: bool = False
    telemetry_recorded: bool = False
    auto_started: bool = False
    status_applied: Optional[str] = None
    status_error: Optional[DeploymentError] = None

    def to_dict(self) -> dict:
        d = self.deployment
        return {
            "deployment_id": d.deployment_id,
            "status": d.status,
            "duplicate": self.duplicate,
            "telemetry": {
                "location_recorded": self.location_recorded,
                "telemetry_recorded": self.telemetry_recorded,
            },
            "auto_started": self.auto_started,
            "status_change": (
                {"applied": False, "error": self.status_error.to_dict()}
                if self.status_error
                else {"applied": self.status_applied is not None, "status": self.status_applied}
            ),
            "current_location": (
                {
                    "latitude": d.current_latitude,
                    "longitude": d.current_longitude,
                    "updated_at": isoformat_or_none(d.current_location_updated_at),
                }
                if d.current_latitude is not None
                else None
            ),
        }


def validate_sample(sample: TrackingSample) -> Optional[ValidationFailed]:
    fields = {}
    if sample.recorded_at is None:
        fields["timestamp"] = "required"
    if sample.battery_level is not None and not 0.0 <= sample.battery_level <= 100.0:
        fields["battery_level"] = "must be between 0 and 100"
    if sample.speed is not None and sample.speed < 0:
        fields["speed"] = "must be >= 0"
    if sample.odometer is not None and sample.odometer < 0:
        fields["odometer"] = "must be >= 0"
    if sample.status is not None and sample.status not in DEPLOYMENT_STATUSES:
        fields["status"] = f"must be one of {', '.join(DEPLOYMENT_STATUSES)}"
    if sample.location is None and not sample.has_telemetry and sample.status is None:
        fields["sample"] = "location, telemetry or status is required"
    return ValidationFailed(fields=fields) if fields else None


def _already_ingested(history_id, recorded_at) -> bool:
    if history_id is None:
        return False
    for model in (DeploymentLocationSample, DeploymentTelemetrySample):
        hit = (
            db.session.query(model.id)
            .filter(model.history_id == history_id, model.recorded_at == recorded_at)
            .first()
        )
        if hit is not None:
            return True
    return False


def _newer(ts: datetime, cached: Optional[datetime]) -> bool:
    return cached is None or ts >= as_utc(cached)


def _merge(deployment, vehicle: Vehicle, sample: TrackingSample, result: IngestResult):
    history = ensure_history(deployment)
    ts = sample.recorded_at

    if sample.location is not None:
        history.location_samples.append(
            DeploymentLocationSample(
                recorded_at=ts,
                latitude=sample.location.latitude,
                longitude=sample.location.longitude,
                address=sample.location.address,
                speed=sample.speed,
            )
        )
        result.location_recorded = True

        if _newer(ts, deployment.current_location_updated_at):
            deployment.current_latitude = sample.location.latitude
            deployment.current_longitude = sample.location.longitude
            deployment.current_location_updated_at = ts
        if _newer(ts, vehicle.location_updated_at):
            vehicle.latitude = sample.location.latitude
            vehicle.longitude = sample.location.longitude
            vehicle.location_updated_at = ts

    if sample.has_telemetry:
        history.telemetry_samples.append(
            DeploymentTelemetrySample(
                recorded_at=ts,
                battery_level=sample.battery_level,
                speed=sample.speed,
                odometer=sample.odometer,
            )
        )
        result.telemetry_recorded = True

        if _newer(ts, vehicle.telemetry_updated_at):
            if sample.battery_level is not None:
                vehicle.battery_level = sample.battery_level
            if sample.odometer is not None:
                vehicle.mileage_total = sample.odometer
            vehicle.telemetry_updated_at = ts


def ingest_tracking(ref, sample: TrackingSample, principal: Principal):
    """
    Returns IngestResult (possibly carrying a rejected status change next to
    committed telemetry) or an error result.
    """
    err = validate_sample(sample)
    if err:
        return err
    sample = TrackingSample(
        recorded_at=as_utc(sample.recorded_at),
        location=sample.location,
        battery_level=sample.battery_level,
        speed=sample.speed,
        odometer=sample.odometer,
        status=sample.status,
        reason=sample.reason,
    )

    found = get_deployment(ref)
    if found is None:
        return DeploymentNotFound(ref=ref)
    dep_pk, vehicle_pk = found.id, found.vehicle_id

    def _apply():
        deployment = get_deployment(dep_pk, for_update=True)
        if deployment is None:
            return DeploymentNotFound(ref=ref)
        vehicle = (
            db.session.query(Vehicle)
            .filter(Vehicle.id == vehicle_pk)
            .populate_existing()
            .with_for_update()
            .one()
        )

        denied = can_act_on_deployment(principal, deployment, "update")
        if denied:
            return denied

        result = IngestResult(deployment=deployment)
        history = ensure_history(deployment)
        if _already_ingested(history.id, sample.recorded_at):
            current_app.logger.info(
                "Duplicate tracking sample for %s at %s ignored",
                deployment.deployment_id, sample.recorded_at.isoformat(),
            )
            result.duplicate = True
            return result

        if deployment.status == "scheduled":
            # an explicit start or cancel is applied as sent; otherwise the first
            # location or telemetry sample starts the deployment
            explicit = sample.status is not None and is_valid_transition("scheduled", sample.status)
            if not explicit and (sample.location is not None or sample.has_telemetry):
                start_err = apply_transition(
                    deployment, "in_progress", actor=SYSTEM_ACTOR, at=sample.recorded_at,
                    reason="first tracking update received", system_generated=True,
                )
                if start_err:
                    return start_err
                result.auto_started = True
        elif deployment.status != "in_progress":
            return DeploymentNotActive(ref=deployment.deployment_id, status=deployment.status)

        _merge(deployment, vehicle, sample, result)

        if sample.status and sample.status != deployment.status:
            # telemetry above is kept even if this transition is rejected
            status_err = apply_transition(
                deployment,
                sample.status,
                actor=principal.actor,
                reason=sample.reason,
                actual_end_time=sample.recorded_at if sample.status == "completed" else None,
                end_location=sample.location if sample.status == "completed" else None,
            )
            if status_err:
                current_app.logger.warning(
                    "Tracking for %s: status change rejected (%s)", deployment.deployment_id, status_err.message
                )
                result.status_error = status_err
            else:
                result.status_applied = sample.status

        return result

    return run_locked(
        [("vehicle", vehicle_pk), ("deployment", dep_pk)],
        "ingest_tracking",
        _apply,
    )


class TrackingDispatcher:
    """
    Runs tracking ingests as independent units of work on a thread pool so a
    burst of updates never queues behind a slow request. max_workers <= 0
    runs jobs inline.
    """

    def __init__(self, app, max_workers: int = 4):
        self.app = app
        self.max_workers = max_workers
        self._executor = (
            ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="evfleet-tracking")
            if max_workers > 0
            else None
        )

    def _run_in_context(self, fn, args, kwargs, deadline: Optional[JobDeadline] = None):
        with self.app.app_context():
            if deadline is not None:
                g.job_deadline = deadline
            return fn(*args, **kwargs)

    def submit(self, fn, *args, **kwargs):
        if self._executor is None:
            raise RuntimeError("TrackingDispatcher is running inline; use run()")
        return self._executor.submit(self._run_in_context, fn, args, kwargs)

    def run(self, fn, *args, timeout: Optional[float] = None, **kwargs):
        """
        Run fn and wait for it. A job still queued when the timeout passes is
        dropped with OperationTimeout; a job already running reports its own
        outcome, since run_locked refuses to commit once the deadline is gone.
        """
        if self._executor is None:
            return fn(*args, **kwargs)

        # lock waits inside the job are capped by the same deadline
        timeout = timeout if timeout is not None else lock_timeout() * 2
        deadline = JobDeadline(at=time.monotonic() + timeout, seconds=timeout)
        future = self._executor.submit(self._run_in_context, fn, args, kwargs, deadline)
        try:
            return future.result(timeout=timeout)
        except FutureTimeout:
            name = getattr(fn, "__name__", fn)
            if future.cancel():
                current_app.logger.warning("Tracking job %s dropped after waiting %ss in the queue", name, timeout)
                return OperationTimeout(operation="ingest_tracking", seconds=timeout)
            current_app.logger.warning("Tracking job %s overran %ss, waiting for its outcome", name, timeout)
            return future.result()

    def shutdown(self, wait: bool = True):
        if self._executor is not None:
            self._executor.shutdown(wait=wait)


def get_tracking_dispatcher() -> TrackingDispatcher:
    return current_app.extensions["evfleet_tracking"]
