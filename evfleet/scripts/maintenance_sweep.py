# evfleet/scripts/maintenance_sweep.py
"""
Hourly sweep: book a routine service for every vehicle whose mileage or
battery health has crossed a threshold and has nothing scheduled yet.

    python -m evfleet.scripts.maintenance_sweep --dry-run
"""
import argparse
import logging

from evfleet import create_app
from evfleet.services.errors import DeploymentError
from evfleet.services.maintenance import MaintenanceSkipped, auto_schedule_maintenance, get_due_maintenance

log = logging.getLogger("maintenance_sweep")


def sweep(days_ahead: int = 7, dry_run: bool = False) -> dict:
    due = get_due_maintenance(days_ahead=days_ahead)
    counts = {"already_due": due.total_due, "scheduled": 0, "skipped": 0, "failed": 0}

    for vehicle in due.early_warning:
        if dry_run:
            log.info("[dry-run] would schedule routine_service for %s (mileage %.0f km, health %s%%)",
                     vehicle.vehicle_id, vehicle.mileage_total or 0, vehicle.battery_health)
            counts["scheduled"] += 1
            continue

        code = vehicle.vehicle_id
        result = auto_schedule_maintenance(vehicle.id, "routine_service")
        if isinstance(result, MaintenanceSkipped):
            counts["skipped"] += 1
        elif isinstance(result, DeploymentError):
            log.warning("%s: %s", code, result.message)
            counts["failed"] += 1
        else:
            log.info("%s: %s on %s", code, result.maintenance_id, result.scheduled_date.date())
            counts["scheduled"] += 1

    return counts


def main():
    parser = argparse.ArgumentParser(description="Auto-schedule maintenance for high-usage vehicles.")
    parser.add_argument("--days-ahead", type=int, default=7, help="Window for counting already-due work.")
    parser.add_argument("--dry-run", action="store_true", help="Log what would be scheduled, write nothing.")
    args = parser.parse_args()

    logging.basicConfig(level=logging.INFO, format="%(levelname)s: %(message)s")

    app = create_app()
    with app.app_context():
        counts = sweep(days_ahead=args.days_ahead, dry_run=args.dry_run)
    log.info("Done: %s", counts)


if __name__ == "__main__":
    main()
