# File: src/parkcore/domain/policies.py
"""
Policy value objects read by the assignment and billing engines

Policies are immutable. Changing configuration means building new policy
objects and handing them out through a provider; engines never mutate them.
"""

from dataclasses import dataclass, field
from decimal import Decimal
from types import MappingProxyType
from typing import Dict, Mapping, Optional, Callable, Union, TypeVar

from .models import VehicleType, RateType, to_cents


T = TypeVar('T')

# Either a fixed policy or a zero-argument callable returning the current one
PolicySource = Union[T, Callable[[], T]]


def resolve_policy(source):
    """Return the current policy from a fixed value or a provider callable"""
    return source() if callable(source) else source


def _default_preferred_bays() -> Dict[int, float]:
    return {1: 3, 5: 3, 6: 3, 2: 2, 3: 2, 4: 2}


def _default_hourly_rates() -> Dict[VehicleType, Decimal]:
    return {
        VehicleType.COMPACT: Decimal('4.00'),
        VehicleType.STANDARD: Decimal('5.00'),
        VehicleType.OVERSIZED: Decimal('7.00'),
    }


def _default_multipliers() -> Dict[RateType, Decimal]:
    return {
        RateType.HOURLY: Decimal('1.0'),
        RateType.DAILY: Decimal('0.8'),
        RateType.MONTHLY: Decimal('0.6'),
    }


def _default_hour_caps() -> Dict[RateType, int]:
    return {RateType.DAILY: 8, RateType.MONTHLY: 24}


# ============================================================================
# ASSIGNMENT PREFERENCES
# ============================================================================

@dataclass(frozen=True)
class AssignmentPreferences:
    """Value Object: Weights of the spot scoring function"""
    prefer_lower_floors: bool = True
    floor_base_score: float = 100
    floor_penalty_per_level: float = 10
    max_floor_penalty: float = 100
    bay_preference_bonus: float = 10
    preferred_bays: Mapping[int, float] = field(default_factory=_default_preferred_bays)
    default_bay_weight: float = 1
    spot_number_base: float = 50
    exact_type_match_bonus: float = 25
    ev_charging_bonus: float = 10
    handicap_penalty: float = 5

    def __post_init__(self):
        for name in ("floor_base_score", "floor_penalty_per_level", "max_floor_penalty",
                     "bay_preference_bonus", "default_bay_weight", "spot_number_base",
                     "exact_type_match_bonus", "ev_charging_bonus", "handicap_penalty"):
            if getattr(self, name) < 0:
                raise ValueError(f"{name} cannot be negative")

        bays = {int(bay): float(weight) for bay, weight in dict(self.preferred_bays).items()}
        if any(weight < 0 for weight in bays.values()):
            raise ValueError("Bay weights cannot be negative")
        object.__setattr__(self, 'preferred_bays', MappingProxyType(bays))

    def bay_weight(self, bay: int) -> float:
        return self.preferred_bays.get(bay, self.default_bay_weight)


# ============================================================================
# RATES AND BILLING POLICY
# ============================================================================

@dataclass(frozen=True)
class RateTable:
    """
    Value Object: Hourly prices per vehicle type and rate plan adjustments

    The effective hourly price is the vehicle type's base rate times the
    rate plan multiplier. Rate plans with a cap never bill more hours than
    the cap for a single stay.
    """
    hourly_rates: Mapping[VehicleType, Decimal] = field(default_factory=_default_hourly_rates)
    rate_type_multipliers: Mapping[RateType, Decimal] = field(default_factory=_default_multipliers)
    billable_hour_caps: Mapping[RateType, int] = field(default_factory=_default_hour_caps)
    currency: str = "USD"

    def __post_init__(self):
        rates = {VehicleType.parse(k): Decimal(str(v)) for k, v in dict(self.hourly_rates).items()}
        multipliers = {
            RateType.parse(k): Decimal(str(v)) for k, v in dict(self.rate_type_multipliers).items()
        }
        caps = {RateType.parse(k): int(v) for k, v in dict(self.billable_hour_caps).items()}

        missing = [vt.value for vt in VehicleType if vt not in rates]
        if missing:
            raise ValueError(f"Missing hourly rate for vehicle types: {missing}")
        if any(rate < 0 for rate in rates.values()):
            raise ValueError("Hourly rates cannot be negative")
        if any(m < 0 for m in multipliers.values()):
            raise ValueError("Rate multipliers cannot be negative")
        if any(cap < 1 for cap in caps.values()):
            raise ValueError("Billable hour caps must be at least 1")
        if len(self.currency) != 3:
            raise ValueError(f"Currency must be 3-letter code: {self.currency}")

        object.__setattr__(self, 'hourly_rates', MappingProxyType(rates))
        object.__setattr__(self, 'rate_type_multipliers', MappingProxyType(multipliers))
        object.__setattr__(self, 'billable_hour_caps', MappingProxyType(caps))

    def rate_per_hour(self, rate_type: RateType, vehicle_type: VehicleType) -> Decimal:
        base = self.hourly_rates[vehicle_type]
        multiplier = self.rate_type_multipliers.get(rate_type, Decimal('1'))
        return to_cents(base * multiplier)

    def hour_cap(self, rate_type: RateType) -> Optional[int]:
        return self.billable_hour_caps.get(rate_type)


@dataclass(frozen=True)
class BillingPolicy:
    """Value Object: Grace period and hour rounding rules"""
    grace_period_minutes: int = 15
    apply_grace_period_by_default: bool = True
    minimum_billable_hours: int = 1
    round_up_partial_hours: bool = True

    def __post_init__(self):
        if self.grace_period_minutes < 0:
            raise ValueError("Grace period cannot be negative")
        if self.minimum_billable_hours < 0:
            raise ValueError("Minimum billable hours cannot be negative")
