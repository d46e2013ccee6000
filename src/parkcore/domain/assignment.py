# File: src/parkcore/domain/assignment.py
"""
Spot Assignment Engine

Chooses the best available spot for an incoming vehicle. Scoring is a
single weighted sum driven by AssignmentPreferences, so the whole
algorithm can be checked by reading calculate_spot_score.

The engine only reads from the spot inventory. Occupying the chosen spot
is the caller's job.
"""

from dataclasses import dataclass, asdict
from datetime import datetime
from typing import Optional, List, Dict, Any, FrozenSet, Iterable
import logging

from .models import (
    Spot, SpotType, SpotFeature, SpotStatus, VehicleType,
)
from .policies import AssignmentPreferences, PolicySource, resolve_policy


# ============================================================================
# COMPATIBILITY
# ============================================================================

# Smaller vehicles may take larger spots, never the reverse
COMPATIBILITY_MAP: Dict[VehicleType, FrozenSet[SpotType]] = {
    VehicleType.COMPACT: frozenset({SpotType.COMPACT, SpotType.STANDARD, SpotType.OVERSIZED}),
    VehicleType.STANDARD: frozenset({SpotType.STANDARD, SpotType.OVERSIZED}),
    VehicleType.OVERSIZED: frozenset({SpotType.OVERSIZED}),
}


def get_compatible_spot_types(vehicle_type) -> FrozenSet[SpotType]:
    return COMPATIBILITY_MAP[VehicleType.parse(vehicle_type)]


def is_compatible(vehicle_type, spot_type) -> bool:
    return SpotType.parse(spot_type) in get_compatible_spot_types(vehicle_type)


# ============================================================================
# SCORING
# ============================================================================

@dataclass(frozen=True)
class SpotScore:
    """Per-term breakdown of a spot's score"""
    floor: float
    bay: float
    spot_number: float
    exact_match: float
    ev_charging: float
    handicap: float

    @property
    def total(self) -> float:
        return (self.floor + self.bay + self.spot_number
                + self.exact_match + self.ev_charging + self.handicap)

    def to_dict(self) -> Dict[str, float]:
        data = asdict(self)
        data["total"] = self.total
        return data


def score_breakdown(
    spot: Spot,
    vehicle_type: VehicleType,
    preferences: AssignmentPreferences,
    *,
    is_electric: bool = False,
    requires_accessible: bool = False,
) -> SpotScore:
    vehicle_type = VehicleType.parse(vehicle_type)

    if preferences.prefer_lower_floors:
        penalty = min((spot.floor - 1) * preferences.floor_penalty_per_level,
                      preferences.max_floor_penalty)
        floor_score = preferences.floor_base_score - penalty
    else:
        floor_score = preferences.floor_base_score

    exact = spot.spot_type == vehicle_type.natural_spot_type
    ev_match = is_electric and spot.has_feature(SpotFeature.EV_CHARGING)
    # Accessible spots stay assignable, just less attractive to others
    wasted_accessible = spot.has_feature(SpotFeature.HANDICAP) and not requires_accessible

    return SpotScore(
        floor=float(floor_score),
        bay=float(preferences.bay_preference_bonus * preferences.bay_weight(spot.bay)),
        spot_number=float(max(0, preferences.spot_number_base - spot.spot_number)),
        exact_match=float(preferences.exact_type_match_bonus if exact else 0),
        ev_charging=float(preferences.ev_charging_bonus if ev_match else 0),
        handicap=float(-preferences.handicap_penalty if wasted_accessible else 0),
    )


def calculate_spot_score(
    spot: Spot,
    vehicle_type: VehicleType,
    preferences: AssignmentPreferences,
    *,
    is_electric: bool = False,
    requires_accessible: bool = False,
) -> float:
    """Score a spot for a vehicle; higher is better"""
    return score_breakdown(
        spot, vehicle_type, preferences,
        is_electric=is_electric, requires_accessible=requires_accessible,
    ).total


def rank_spots(
    spots: Iterable[Spot],
    vehicle_type: VehicleType,
    preferences: AssignmentPreferences,
    *,
    is_electric: bool = False,
    requires_accessible: bool = False,
) -> List[Spot]:
    """
    Order available compatible spots from best to worst

    Equal scores fall back to ascending (floor, bay, spot_number) so the
    ranking never depends on inventory iteration order.
    """
    vehicle_type = VehicleType.parse(vehicle_type)
    candidates = [
        spot for spot in spots
        if spot.is_available and is_compatible(vehicle_type, spot.spot_type)
    ]
    return sorted(
        candidates,
        key=lambda spot: (
            -calculate_spot_score(spot, vehicle_type, preferences,
                                  is_electric=is_electric,
                                  requires_accessible=requires_accessible),
            spot.location_key,
        ),
    )


# ============================================================================
# ENGINE
# ============================================================================

class SpotAssignmentEngine:
    """
    Read-only decision engine over a spot inventory

    The preferences source may be a fixed AssignmentPreferences or a
    callable returning the current one; it is resolved on every call.
    """

    def __init__(self, inventory, preferences: PolicySource = None):
        self.inventory = inventory
        self._preferences = preferences if preferences is not None else AssignmentPreferences()
        self.logger = logging.getLogger(self.__class__.__name__)

    @property
    def preferences(self) -> AssignmentPreferences:
        return resolve_policy(self._preferences)

    def _snapshot(self, spots: Optional[List[Spot]] = None) -> List[Spot]:
        return list(spots) if spots is not None else self.inventory.get_all()

    def find_best_available_spot(
        self,
        vehicle_type,
        *,
        is_electric: bool = False,
        requires_accessible: bool = False,
        spots: Optional[List[Spot]] = None,
    ) -> Optional[Spot]:
        """Return the highest scoring available compatible spot, or None"""
        vehicle_type = VehicleType.parse(vehicle_type)
        ranked = rank_spots(
            self._snapshot(spots), vehicle_type, self.preferences,
            is_electric=is_electric, requires_accessible=requires_accessible,
        )
        if not ranked:
            self.logger.info(f"No available spot for {vehicle_type.value} vehicle")
            return None

        best = ranked[0]
        self.logger.debug(
            f"Best spot for {vehicle_type.value}: {best.id} out of {len(ranked)} candidates"
        )
        return best

    def get_availability_by_vehicle_type(
        self, vehicle_type, spots: Optional[List[Spot]] = None
    ) -> Dict[str, Any]:
        vehicle_type = VehicleType.parse(vehicle_type)
        compatible = get_compatible_spot_types(vehicle_type)
        by_spot_type = {spot_type.value: 0 for spot_type in SpotType if spot_type in compatible}

        for spot in self._snapshot(spots):
            if spot.is_available and spot.spot_type in compatible:
                by_spot_type[spot.spot_type.value] += 1

        total = sum(by_spot_type.values())
        return {
            "total": total,
            "by_spot_type": by_spot_type,
            "has_available": total > 0,
        }

    def simulate_assignment(
        self,
        vehicle_type,
        *,
        is_electric: bool = False,
        requires_accessible: bool = False,
    ) -> Dict[str, Any]:
        """Pick a spot exactly as check-in would, without occupying it"""
        vehicle_type = VehicleType.parse(vehicle_type)
        spots = self._snapshot()
        availability = self.get_availability_by_vehicle_type(vehicle_type, spots)
        spot = self.find_best_available_spot(
            vehicle_type, is_electric=is_electric,
            requires_accessible=requires_accessible, spots=spots,
        )

        if spot is None:
            return {
                "success": False,
                "spot": None,
                "location": None,
                "compatibility": None,
                "availability": availability,
                "score": None,
                "message": f"No available spots for {vehicle_type.value} vehicles",
            }

        score = score_breakdown(
            spot, vehicle_type, self.preferences,
            is_electric=is_electric, requires_accessible=requires_accessible,
        )
        return {
            "success": True,
            "spot": spot.to_dict(),
            "location": spot.location(),
            "compatibility": {
                "vehicle_type": vehicle_type.value,
                "spot_type": spot.spot_type.value,
                "is_exact_match": spot.spot_type == vehicle_type.natural_spot_type,
            },
            "availability": availability,
            "score": score.to_dict(),
            "message": f"Would assign spot {spot.id}",
        }

    def get_assignment_stats(self) -> Dict[str, Any]:
        spots = self._snapshot()
        total = len(spots)
        available = sum(1 for spot in spots if spot.is_available)
        out_of_service = sum(1 for spot in spots if spot.status == SpotStatus.OUT_OF_SERVICE)
        occupied = sum(1 for spot in spots if spot.status == SpotStatus.OCCUPIED)

        by_vehicle_type = {}
        for vehicle_type in VehicleType:
            availability = self.get_availability_by_vehicle_type(vehicle_type, spots)
            best = self.find_best_available_spot(vehicle_type, spots=spots)
            by_vehicle_type[vehicle_type.value] = {
                "available_spots": availability["total"],
                "has_available_spot": availability["has_available"],
                "would_assign_to": {
                    "spot_id": best.id,
                    "spot_type": best.spot_type.value,
                    "floor": best.floor,
                } if best else None,
            }

        return {
            "total_spots": total,
            "available_spots": available,
            "occupied_spots": occupied,
            "out_of_service_spots": out_of_service,
            "occupancy_rate": round((total - available) / total * 100, 2) if total else 0.0,
            "by_vehicle_type": by_vehicle_type,
            "timestamp": datetime.now().isoformat(),
        }
