# evfleet/services/errors.py
"""
Typed business-rule failures.

Services return these instead of raising them; callers branch with
isinstance() and routes turn them into JSON via to_dict()/http_status.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, ClassVar, Optional


@dataclass(frozen=True)
class DeploymentError:
    code: ClassVar[str] = "error"
    http_status: ClassVar[int] = 400

    @property
    def message(self) -> str:
        return self.code.replace("_", " ")

    def details(self) -> dict[str, Any]:
        return {}

    def to_dict(self) -> dict[str, Any]:
        return {"error": self.code, "message": self.message, "details": self.details()}


@dataclass(frozen=True)
class VehicleNotFound(DeploymentError):
    code: ClassVar[str] = "vehicle_not_found"
    http_status: ClassVar[int] = 404
    ref: Any = None

    @property
    def message(self) -> str:
        return f"vehicle {self.ref} not found"

    def details(self):
        return {"vehicle": self.ref}


@dataclass(frozen=True)
class VehicleUnavailable(DeploymentError):
    code: ClassVar[str] = "vehicle_unavailable"
    http_status: ClassVar[int] = 409
    ref: Any = None
    reason: str = "vehicle is not available"

    @property
    def message(self) -> str:
        return self.reason

    def details(self):
        return {"vehicle": self.ref, "reason": self.reason}


@dataclass(frozen=True)
class PilotUnavailable(DeploymentError):
    code: ClassVar[str] = "pilot_unavailable"
    http_status: ClassVar[int] = 409
    ref: Any = None
    reason: str = "pilot is not available"

    @property
    def message(self) -> str:
        return self.reason

    def details(self):
        return {"pilot": self.ref, "reason": self.reason}


@dataclass(frozen=True)
class InsufficientBattery(DeploymentError):
    code: ClassVar[str] = "insufficient_battery"
    http_status: ClassVar[int] = 422
    current: float = 0.0
    required: float = 0.0

    @property
    def message(self) -> str:
        return f"battery level {self.current:g}% is below the required {self.required:g}%"

    def details(self):
        return {"current": self.current, "required": self.required}


@dataclass(frozen=True)
class DistanceTooFar(DeploymentError):
    code: ClassVar[str] = "distance_too_far"
    http_status: ClassVar[int] = 422
    distance_km: float = 0.0
    max_km: float = 0.0

    @property
    def message(self) -> str:
        return f"vehicle is {self.distance_km:.2f} km from the start location (max {self.max_km:g} km)"

    def details(self):
        return {"distance_km": round(self.distance_km, 3), "max_km": self.max_km}


@dataclass(frozen=True)
class InvalidStatusTransition(DeploymentError):
    code: ClassVar[str] = "invalid_status_transition"
    http_status: ClassVar[int] = 409
    from_status: Optional[str] = None
    to_status: Optional[str] = None

    @property
    def message(self) -> str:
        return f"cannot transition from {self.from_status} to {self.to_status}"

    def details(self):
        return {"from": self.from_status, "to": self.to_status}


@dataclass(frozen=True)
class MaintenanceRequired(DeploymentError):
    code: ClassVar[str] = "maintenance_required"
    http_status: ClassVar[int] = 422
    ref: Any = None
    reason: str = "vehicle requires maintenance"

    @property
    def message(self) -> str:
        return self.reason

    def details(self):
        return {"vehicle": self.ref, "reason": self.reason}


@dataclass(frozen=True)
class AuthorizationDenied(DeploymentError):
    code: ClassVar[str] = "authorization_denied"
    http_status: ClassVar[int] = 403
    module: Optional[str] = None
    permission: Optional[str] = None
    reason: str = "insufficient permission"

    @property
    def message(self) -> str:
        return self.reason

    def details(self):
        return {"module": self.module, "permission": self.permission}


@dataclass(frozen=True)
class DeploymentNotActive(DeploymentError):
    code: ClassVar[str] = "deployment_not_active"
    http_status: ClassVar[int] = 409
    ref: Any = None
    status: Optional[str] = None

    @property
    def message(self) -> str:
        return f"deployment {self.ref} is {self.status}, not active"

    def details(self):
        return {"deployment": self.ref, "status": self.status}


@dataclass(frozen=True)
class ValidationFailed(DeploymentError):
    code: ClassVar[str] = "validation_failed"
    http_status: ClassVar[int] = 400
    fields: dict = field(default_factory=dict)

    @property
    def message(self) -> str:
        return "; ".join(f"{k}: {v}" for k, v in self.fields.items()) or "invalid request"

    def details(self):
        return {"fields": dict(self.fields)}


@dataclass(frozen=True)
class DuplicateKey(DeploymentError):
    code: ClassVar[str] = "duplicate_key"
    http_status: ClassVar[int] = 409
    field_name: Optional[str] = None
    value: Any = None

    @property
    def message(self) -> str:
        return f"{self.field_name} {self.value!r} already exists"

    def details(self):
        return {"field": self.field_name, "value": self.value}


@dataclass(frozen=True)
class DeploymentNotFound(DeploymentError):
    code: ClassVar[str] = "deployment_not_found"
    http_status: ClassVar[int] = 404
    ref: Any = None

    @property
    def message(self) -> str:
        return f"deployment {self.ref} not found"

    def details(self):
        return {"deployment": self.ref}


@dataclass(frozen=True)
class MaintenanceNotFound(DeploymentError):
    code: ClassVar[str] = "maintenance_not_found"
    http_status: ClassVar[int] = 404
    ref: Any = None

    @property
    def message(self) -> str:
        return f"maintenance record {self.ref} not found"

    def details(self):
        return {"maintenance": self.ref}


@dataclass(frozen=True)
class OperationTimeout(DeploymentError):
    code: ClassVar[str] = "operation_timeout"
    http_status: ClassVar[int] = 503
    operation: Optional[str] = None
    seconds: float = 0.0

    @property
    def message(self) -> str:
        return f"{self.operation} did not complete within {self.seconds:g}s"

    def details(self):
        return {"operation": self.operation, "timeout_seconds": self.seconds}


@dataclass(frozen=True)
class InternalError(DeploymentError):
    code: ClassVar[str] = "internal_error"
    http_status: ClassVar[int] = 500

    @property
    def message(self) -> str:
        return "an internal error occurred"


def is_error(result) -> bool:
    return isinstance(result, DeploymentError)
