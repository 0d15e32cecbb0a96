# evfleet/services/vehicle_selector.py
from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Iterable, Optional

from flask import current_app

from evfleet.db_models import db, Vehicle
from evfleet.utils.geo import GeoPoint, haversine_km


@dataclass(frozen=True)
class SelectionCriteria:
    location: Optional[GeoPoint] = None
    min_battery_level: float = 30.0
    max_distance_km: float = 50.0
    preferred_make: Optional[str] = None
    requires_special_equipment: bool = False
    required_equipment: tuple[str, ...] = ()


@dataclass(frozen=True)
class ScoreWeights:
    battery: float = 0.4
    distance: float = 0.3
    equipment: float = 0.3


@dataclass(frozen=True)
class RankedVehicle:
    vehicle: Any
    score: float
    distance_km: Optional[float] = None
    equipment_count: int = 0

    def to_dict(self, serializer) -> dict:
        data = serializer(self.vehicle)
        data["score"] = round(self.score, 3)
        data["distance_km"] = round(self.distance_km, 3) if self.distance_km is not None else None
        return data


def _equipment(vehicle) -> list[str]:
    return [str(e).strip().lower() for e in (getattr(vehicle, "special_equipment", None) or []) if str(e).strip()]


def _passes_filters(vehicle, criteria: SelectionCriteria) -> bool:
    if getattr(vehicle, "status", None) != "available" or not getattr(vehicle, "is_active", False):
        return False
    if (vehicle.battery_level or 0.0) < criteria.min_battery_level:
        return False
    if criteria.preferred_make and (vehicle.make or "").strip().lower() != criteria.preferred_make.strip().lower():
        return False
    equipment = _equipment(vehicle)
    if criteria.requires_special_equipment and not equipment:
        return False
    if criteria.required_equipment:
        wanted = {e.strip().lower() for e in criteria.required_equipment}
        if not wanted.issubset(equipment):
            return False
    return True


def rank_vehicles(
    vehicles: Iterable[Any],
    criteria: SelectionCriteria,
    weights: ScoreWeights = ScoreWeights(),
    limit: int = 5,
) -> list[RankedVehicle]:
    """
    Pure ranking over vehicle snapshots; nothing is reserved here.

    With a requester location:
        score = w_b*battery + w_d*(max_distance - distance) + w_e*(equipment_count*10)
    where a candidate with no known location counts as distance 0 and
    candidates beyond max_distance are dropped. Without one, candidates are
    ordered by battery level alone. Ties go to the lower vehicle_id.
    """
    ranked: list[RankedVehicle] = []

    for vehicle in vehicles:
        if not _passes_filters(vehicle, criteria):
            continue

        battery = float(vehicle.battery_level or 0.0)
        equipment_count = len(_equipment(vehicle))

        if criteria.location is None:
            ranked.append(RankedVehicle(vehicle, score=battery, distance_km=None, equipment_count=equipment_count))
            continue

        if vehicle.latitude is not None and vehicle.longitude is not None:
            distance = haversine_km(
                criteria.location.latitude, criteria.location.longitude, vehicle.latitude, vehicle.longitude
            )
            if distance > criteria.max_distance_km:
                continue
        else:
            distance = 0.0

        score = (
            weights.battery * battery
            + weights.distance * (criteria.max_distance_km - distance)
            + weights.equipment * (equipment_count * 10)
        )
        ranked.append(RankedVehicle(vehicle, score=score, distance_km=distance, equipment_count=equipment_count))

    ranked.sort(key=lambda r: (-r.score, str(r.vehicle.vehicle_id)))
    return ranked[:limit]


def criteria_from_config(**overrides) -> SelectionCriteria:
    cfg = current_app.config
    values = {
        "min_battery_level": float(cfg.get("SELECTOR_MIN_BATTERY", 30.0)),
        "max_distance_km": float(cfg.get("SELECTOR_MAX_DISTANCE_KM", 50.0)),
    }
    values.update({k: v for k, v in overrides.items() if v is not None})
    return SelectionCriteria(**values)


def weights_from_config() -> ScoreWeights:
    cfg = current_app.config
    return ScoreWeights(
        battery=float(cfg.get("SCORE_WEIGHT_BATTERY", 0.4)),
        distance=float(cfg.get("SCORE_WEIGHT_DISTANCE", 0.3)),
        equipment=float(cfg.get("SCORE_WEIGHT_EQUIPMENT", 0.3)),
    )


def find_optimal_vehicles(criteria: SelectionCriteria, limit: Optional[int] = None) -> list[RankedVehicle]:
    """Reads committed state without locking; a stale ranking is acceptable."""
    q = db.session.query(Vehicle).filter(
        Vehicle.status == "available",
        Vehicle.is_active.is_(True),
        Vehicle.battery_level >= criteria.min_battery_level,
    )
    if criteria.preferred_make:
        q = q.filter(db.func.lower(Vehicle.make) == criteria.preferred_make.strip().lower())

    limit = limit if limit is not None else int(current_app.config.get("SELECTOR_LIMIT", 5))
    ranked = rank_vehicles(q.all(), criteria, weights_from_config(), limit)
    current_app.logger.info(
        "Optimal vehicle search (min_battery=%s, max_km=%s, located=%s) -> %d candidates",
        criteria.min_battery_level, criteria.max_distance_km, criteria.location is not None, len(ranked),
    )
    return ranked
