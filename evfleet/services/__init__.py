from .access_control import Principal, authorize, require_role_level
from .availability import DeploymentRequest, create_deployment
from .deployment_state import cancel_deployment, update_deployment_status
from .tracking import TrackingSample, ingest_tracking
from .vehicle_selector import SelectionCriteria, find_optimal_vehicles
from .maintenance import auto_schedule_maintenance, get_due_maintenance
from .analytics import get_deployment_analytics
from .notifications import get_notifications

__all__ = [
    "Principal",
    "authorize",
    "require_role_level",
    "DeploymentRequest",
    "create_deployment",
    "cancel_deployment",
    "update_deployment_status",
    "TrackingSample",
    "ingest_tracking",
    "SelectionCriteria",
    "find_optimal_vehicles",
    "auto_schedule_maintenance",
    "get_due_maintenance",
    "get_deployment_analytics",
    "get_notifications",
]
