# File: src/parkcore/application/dtos.py
"""
Data Transfer Objects (DTOs) for the Parking Facility Core

This module defines DTOs for data crossing the application boundary:
1. Input DTOs - Check-in requests and checkout options
2. Output DTOs - Results of check-in, checkout and their dry runs
3. Query DTOs - Availability, readiness and statistics views

DTOs carry data only. Converting domain objects into DTOs happens in the
small from_* helpers so the service code stays readable.
"""

from datetime import datetime
from decimal import Decimal
from typing import Dict, List, Optional, Any
import json

from pydantic import BaseModel, Field, ConfigDict, field_validator

from ..domain.models import (
    VehicleType, RateType, LicensePlate, Spot, DurationBreakdown, InvalidInputError,
    to_local_naive,
)
from ..domain.billing import BillingResult


# ============================================================================
# BASE DTO CLASSES
# ============================================================================

class BaseDTO(BaseModel):
    """Base DTO with common functionality"""

    model_config = ConfigDict(
        from_attributes=True,
        populate_by_name=True,
        use_enum_values=True,
    )

    def to_dict(self, exclude_none: bool = False, **kwargs) -> Dict[str, Any]:
        """Convert DTO to dictionary"""
        data = self.model_dump(**kwargs)
        if exclude_none:
            data = {k: v for k, v in data.items() if v is not None}
        return data

    def to_json(self, **kwargs) -> str:
        return self.model_dump_json(**kwargs)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'BaseDTO':
        return cls(**data)

    @classmethod
    def from_json(cls, json_str: str) -> 'BaseDTO':
        return cls(**json.loads(json_str))


# ============================================================================
# INPUT DTOs
# ============================================================================

class CheckInRequestDTO(BaseDTO):
    """Vehicle arriving at the garage"""
    license_plate: str = Field(..., description="Vehicle license plate")
    vehicle_type: VehicleType
    rate_type: RateType = RateType.HOURLY
    is_electric: bool = False
    requires_accessible: bool = False
    check_in_time: Optional[datetime] = None

    @field_validator("license_plate")
    @classmethod
    def normalize_plate(cls, value: str) -> str:
        try:
            return str(LicensePlate(value))
        except InvalidInputError as e:
            raise ValueError(e.message) from None

    @field_validator("check_in_time")
    @classmethod
    def local_check_in_time(cls, value: Optional[datetime]) -> Optional[datetime]:
        return to_local_naive(value)


class CheckoutOptions(BaseDTO):
    """Optional knobs for checkout and its dry run"""
    check_out_time: Optional[datetime] = None
    apply_grace_period: Optional[bool] = None
    discount: Decimal = Field(default=Decimal("0"), ge=0)

    @field_validator("check_out_time")
    @classmethod
    def local_check_out_time(cls, value: Optional[datetime]) -> Optional[datetime]:
        return to_local_naive(value)


# ============================================================================
# SHARED OUTPUT PARTS
# ============================================================================

class SpotDTO(BaseDTO):
    id: str
    floor: int
    bay: int
    spot_number: int
    spot_type: str
    status: str
    features: List[str] = Field(default_factory=list)
    current_vehicle: Optional[str] = None

    @classmethod
    def from_spot(cls, spot: Spot) -> 'SpotDTO':
        return cls(**spot.to_dict())


class LocationDTO(BaseDTO):
    floor: int
    bay: int
    spot_number: int


class DurationDTO(BaseDTO):
    total_minutes: int
    hours: int
    minutes: int
    total_hours: float

    @classmethod
    def from_duration(cls, duration: DurationBreakdown) -> 'DurationDTO':
        return cls(**duration.to_dict())


class BillingDTO(BaseDTO):
    """How the amount due was reached"""
    billable_hours: int
    rate_per_hour: Decimal
    subtotal: Decimal
    discount: Decimal
    total: Decimal
    currency: str
    rate_type: RateType
    vehicle_type: VehicleType
    grace_period_applied: bool
    within_grace_period: bool
    hour_cap_applied: bool

    @classmethod
    def from_result(cls, result: BillingResult) -> 'BillingDTO':
        return cls(
            billable_hours=result.billable_hours,
            rate_per_hour=result.rate_per_hour.amount,
            subtotal=result.subtotal.amount,
            discount=result.discount.amount,
            total=result.total.amount,
            currency=result.total.currency,
            rate_type=result.rate_type,
            vehicle_type=result.vehicle_type,
            grace_period_applied=result.grace_period_applied,
            within_grace_period=result.within_grace_period,
            hour_cap_applied=result.hour_cap_applied,
        )


class CompatibilityDTO(BaseDTO):
    vehicle_type: VehicleType
    spot_type: str
    is_exact_match: bool


class AvailabilityDTO(BaseDTO):
    total: int
    by_spot_type: Dict[str, int]
    has_available: bool


# ============================================================================
# CHECK-IN RESULTS
# ============================================================================

class CheckInResultDTO(BaseDTO):
    success: bool = True
    session_id: str
    license_plate: str
    vehicle_type: VehicleType
    rate_type: RateType
    spot: SpotDTO
    location: LocationDTO
    compatibility: CompatibilityDTO
    check_in_time: datetime
    message: str = ""


class CheckInSimulationDTO(BaseDTO):
    """Dry run of check-in; failures are reported, not raised"""
    success: bool
    license_plate: str
    vehicle_type: VehicleType
    error: Optional[str] = None
    message: str = ""
    spot: Optional[SpotDTO] = None
    location: Optional[LocationDTO] = None
    availability: Optional[AvailabilityDTO] = None


class AssignmentSimulationDTO(BaseDTO):
    success: bool
    spot: Optional[SpotDTO] = None
    location: Optional[LocationDTO] = None
    compatibility: Optional[CompatibilityDTO] = None
    availability: AvailabilityDTO
    score: Optional[Dict[str, float]] = None
    message: str = ""


# ============================================================================
# CHECKOUT RESULTS
# ============================================================================

class CheckoutResultDTO(BaseDTO):
    success: bool = True
    session_id: str
    license_plate: str
    vehicle_type: VehicleType
    rate_type: RateType
    spot_id: str
    location: Optional[LocationDTO] = None
    check_in_time: datetime
    check_out_time: datetime
    duration: DurationDTO
    amount_due: Decimal
    currency: str = "USD"
    billing: Optional[BillingDTO] = None
    warnings: List[str] = Field(default_factory=list)


class CheckoutSimulationDTO(CheckoutResultDTO):
    simulated: bool = True


class ForcedCheckoutResultDTO(CheckoutResultDTO):
    forced: bool = True
    reason: str


class VehicleReadyDTO(BaseDTO):
    """Active session with a live fee estimate"""
    session_id: str
    license_plate: str
    vehicle_type: VehicleType
    rate_type: RateType
    spot_id: str
    check_in_time: datetime
    duration: DurationDTO
    estimated_amount: Decimal
    currency: str = "USD"


# ============================================================================
# STATISTICS
# ============================================================================

class VehicleTypeStatsDTO(BaseDTO):
    available_spots: int
    has_available_spot: bool
    would_assign_to: Optional[Dict[str, Any]] = None


class AssignmentStatsDTO(BaseDTO):
    total_spots: int
    available_spots: int
    occupied_spots: int
    out_of_service_spots: int
    occupancy_rate: float
    by_vehicle_type: Dict[str, VehicleTypeStatsDTO]
    timestamp: datetime


class CheckoutStatsDTO(BaseDTO):
    completed_sessions: int
    still_parked: int
    forced_checkouts: int
    total_revenue: Decimal
    average_revenue: Decimal
    currency: str = "USD"
    total_spots: int
    available_spots: int
    occupancy_rate: float
    timestamp: datetime
