# File: src/parkcore/domain/models.py
"""
Domain Models for the Parking Facility Core

This module contains:
1. Enums: Vehicle, spot, rate and session classifications
2. Value Objects: Immutable objects with no identity, only values
3. Entities: Spots and vehicles with identity and lifecycle
4. Domain Events: Events representing business occurrences
5. Domain Errors: The categorized failures every operation reports

All models validate themselves on construction.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Optional, Dict, Any, FrozenSet, Iterable
from datetime import datetime
from decimal import Decimal, ROUND_HALF_UP
from enum import Enum
import re
import uuid


CENTS = Decimal("0.01")


def to_cents(amount: Decimal) -> Decimal:
    """Round a decimal amount half-up to whole cents"""
    return Decimal(amount).quantize(CENTS, rounding=ROUND_HALF_UP)


def to_local_naive(value: Optional[datetime]) -> Optional[datetime]:
    """
    Bring a timestamp onto the core's convention: naive local wall time

    Aware values are converted to the local zone and stripped of their
    offset; naive values are taken as already local.
    """
    if value is None or value.tzinfo is None:
        return value
    return value.astimezone().replace(tzinfo=None)


# ============================================================================
# ENUMS
# ============================================================================

class VehicleType(Enum):
    """Size class of a vehicle"""
    COMPACT = "compact"
    STANDARD = "standard"
    OVERSIZED = "oversized"

    @property
    def natural_spot_type(self) -> 'SpotType':
        """The spot type sized exactly for this vehicle"""
        return SpotType(self.value)

    @classmethod
    def parse(cls, value: Any) -> 'VehicleType':
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            raise InvalidInputError(f"Unknown vehicle type: {value}") from None


class SpotType(Enum):
    """Size class of a parking spot"""
    COMPACT = "compact"
    STANDARD = "standard"
    OVERSIZED = "oversized"

    @classmethod
    def parse(cls, value: Any) -> 'SpotType':
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            raise InvalidInputError(f"Unknown spot type: {value}") from None


class SpotStatus(Enum):
    AVAILABLE = "available"
    OCCUPIED = "occupied"
    OUT_OF_SERVICE = "out_of_service"


class SpotFeature(Enum):
    """Optional equipment attached to a spot"""
    EV_CHARGING = "ev_charging"
    HANDICAP = "handicap"


class RateType(Enum):
    """Billing plan chosen at check-in"""
    HOURLY = "hourly"
    DAILY = "daily"
    MONTHLY = "monthly"

    @classmethod
    def parse(cls, value: Any) -> 'RateType':
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            raise InvalidInputError(f"Unknown rate type: {value}") from None


class SessionStatus(Enum):
    ACTIVE = "active"
    COMPLETED = "completed"


class ErrorKind(Enum):
    """Categories reported to callers of the core"""
    NO_AVAILABLE_SPOT = "NO_AVAILABLE_SPOT"
    ALREADY_PARKED = "ALREADY_PARKED"
    VEHICLE_NOT_FOUND = "VEHICLE_NOT_FOUND"
    INVALID_TIME_RANGE = "INVALID_TIME_RANGE"
    INVALID_INPUT = "INVALID_INPUT"
    SPOT_STATE_CONFLICT = "SPOT_STATE_CONFLICT"
    SESSION_ALREADY_CLOSED = "SESSION_ALREADY_CLOSED"
    SIMULATION_ERROR = "SIMULATION_ERROR"


# ============================================================================
# DOMAIN ERRORS
# ============================================================================

class ParkingError(Exception):
    """Base exception for parking core errors"""
    kind: ErrorKind = ErrorKind.INVALID_INPUT

    def __init__(self, message: str, **details: Any):
        super().__init__(message)
        self.message = message
        self.details = details

    def to_dict(self) -> Dict[str, Any]:
        data = {"error": self.kind.value, "message": self.message}
        if self.details:
            data["details"] = self.details
        return data


class InvalidInputError(ParkingError):
    """Malformed plate, unknown vehicle type or similar input problem"""
    kind = ErrorKind.INVALID_INPUT


class InvalidTimeRangeError(ParkingError):
    """Check-out time is not strictly after check-in time"""
    kind = ErrorKind.INVALID_TIME_RANGE


class VehicleNotFoundError(ParkingError):
    """No active session exists for the plate"""
    kind = ErrorKind.VEHICLE_NOT_FOUND


class NoAvailableSpotError(ParkingError):
    """No compatible spot is currently available"""
    kind = ErrorKind.NO_AVAILABLE_SPOT


class AlreadyParkedError(ParkingError):
    """The plate already has an active session"""
    kind = ErrorKind.ALREADY_PARKED


class SpotStateConflictError(ParkingError):
    """Spot state disagrees with the session that references it"""
    kind = ErrorKind.SPOT_STATE_CONFLICT


class SessionAlreadyClosedError(ParkingError):
    kind = ErrorKind.SESSION_ALREADY_CLOSED


class SimulationError(ParkingError):
    """Wraps any failure raised while computing a dry run"""
    kind = ErrorKind.SIMULATION_ERROR

    def __init__(self, message: str, cause: Optional[ParkingError] = None, **details: Any):
        super().__init__(message, **details)
        self.cause_kind = cause.kind if cause is not None else None

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        if self.cause_kind is not None:
            data["cause"] = self.cause_kind.value
        return data


# ============================================================================
# VALUE OBJECTS
# ============================================================================

@dataclass(frozen=True)
class LicensePlate:
    """
    Value Object: License plate number with validation
    Identifies a vehicle across check-in and checkout
    """
    value: str

    def __post_init__(self):
        if not self.value or not str(self.value).strip():
            raise InvalidInputError("License plate cannot be empty")

        object.__setattr__(self, 'value', str(self.value).strip().upper())

        if len(self.value) < 2 or len(self.value) > 10:
            raise InvalidInputError(f"License plate must be 2-10 characters, got: {self.value}")

        if not re.match(r'^[A-Z0-9\s\-]+$', self.value):
            raise InvalidInputError(
                f"License plate can only contain letters, numbers, spaces, and hyphens: {self.value}"
            )

    @classmethod
    def of(cls, value: Any) -> 'LicensePlate':
        return value if isinstance(value, cls) else cls(value)

    def __str__(self) -> str:
        return self.value


@dataclass(frozen=True)
class Money:
    """
    Value Object: Non-negative monetary amount with currency
    Amounts are kept as Decimal and rounded to cents on creation
    """
    amount: Decimal
    currency: str = "USD"

    def __post_init__(self):
        object.__setattr__(self, 'amount', to_cents(Decimal(str(self.amount))))
        if self.amount < Decimal('0'):
            raise ValueError("Money amount cannot be negative")
        if len(self.currency) != 3:
            raise ValueError(f"Currency must be 3-letter code: {self.currency}")

    @classmethod
    def zero(cls, currency: str = "USD") -> 'Money':
        return cls(Decimal('0'), currency)

    def __mul__(self, multiplier) -> 'Money':
        multiplier = Decimal(str(multiplier))
        if multiplier < Decimal('0'):
            raise ValueError("Multiplier cannot be negative")
        return Money(self.amount * multiplier, self.currency)

    def minus_floor_zero(self, other: 'Money') -> 'Money':
        """Subtract, clamping the result at zero"""
        if self.currency != other.currency:
            raise ValueError(f"Cannot subtract {other.currency} from {self.currency}")
        return Money(max(Decimal('0'), self.amount - other.amount), self.currency)

    def format(self) -> str:
        return f"${self.amount:.2f} {self.currency}"

    def to_dict(self) -> Dict[str, Any]:
        return {"amount": float(self.amount), "currency": self.currency}


@dataclass(frozen=True)
class TimeRange:
    """
    Value Object: A strictly positive span between check-in and check-out
    """
    start: datetime
    end: datetime

    def __post_init__(self):
        if self.end <= self.start:
            raise InvalidTimeRangeError(
                f"Check-out time {self.end.isoformat()} must be after "
                f"check-in time {self.start.isoformat()}"
            )

    @property
    def total_seconds(self) -> float:
        return (self.end - self.start).total_seconds()


@dataclass(frozen=True)
class DurationBreakdown:
    """Whole-minute duration of a stay, split into hours and minutes"""
    total_minutes: int
    hours: int
    minutes: int
    total_hours: float

    @classmethod
    def from_minutes(cls, total_minutes: int) -> 'DurationBreakdown':
        if total_minutes < 0:
            raise ValueError("Duration cannot be negative")
        return cls(
            total_minutes=total_minutes,
            hours=total_minutes // 60,
            minutes=total_minutes % 60,
            total_hours=round(total_minutes / 60, 2),
        )

    def format(self) -> str:
        return f"{self.hours}h {self.minutes}m"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "total_minutes": self.total_minutes,
            "hours": self.hours,
            "minutes": self.minutes,
            "total_hours": self.total_hours,
        }


# ============================================================================
# ENTITIES
# ============================================================================

class Entity:
    """
    Base class for all domain entities
    Entities are equal when they share an ID and a type
    """

    def __init__(self, id: Optional[str] = None):
        self._id = id or str(uuid.uuid4())

    @property
    def id(self) -> str:
        return self._id

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, Entity):
            return False
        return self.id == other.id and type(self) == type(other)

    def __hash__(self) -> int:
        return hash((self.id, type(self).__name__))

    def __repr__(self) -> str:
        return f"{type(self).__name__}(id={self.id})"


def make_spot_id(floor: int, bay: int, spot_number: int) -> str:
    return f"F{floor}-B{bay}-S{spot_number}"


class Spot(Entity):
    """
    A physical parking spot identified by floor, bay and spot number

    Invariant: current_vehicle is set if and only if the spot is occupied.
    """

    def __init__(
        self,
        floor: int,
        bay: int,
        spot_number: int,
        spot_type: SpotType,
        status: SpotStatus = SpotStatus.AVAILABLE,
        features: Optional[Iterable[SpotFeature]] = None,
        current_vehicle: Optional[str] = None,
    ):
        for name, value in (("floor", floor), ("bay", bay), ("spot_number", spot_number)):
            if int(value) < 1:
                raise InvalidInputError(f"Spot {name} must be >= 1, got {value}")
        super().__init__(make_spot_id(floor, bay, spot_number))
        self.floor = int(floor)
        self.bay = int(bay)
        self.spot_number = int(spot_number)
        self.spot_type = SpotType.parse(spot_type)
        self.status = status
        self.features: FrozenSet[SpotFeature] = frozenset(features or ())
        self.current_vehicle = str(LicensePlate.of(current_vehicle)) if current_vehicle else None
        self._validate_state()

    def _validate_state(self) -> None:
        occupied = self.status == SpotStatus.OCCUPIED
        if occupied != (self.current_vehicle is not None):
            raise SpotStateConflictError(
                f"Spot {self.id} is {self.status.value} with vehicle {self.current_vehicle}",
                spot_id=self.id,
            )

    @property
    def is_available(self) -> bool:
        return self.status == SpotStatus.AVAILABLE

    @property
    def location_key(self):
        """Sort key used to break score ties"""
        return (self.floor, self.bay, self.spot_number)

    def has_feature(self, feature: SpotFeature) -> bool:
        return feature in self.features

    def occupy(self, license_plate: str) -> None:
        if self.status != SpotStatus.AVAILABLE:
            raise SpotStateConflictError(
                f"Spot {self.id} is not available ({self.status.value})",
                spot_id=self.id,
            )
        self.status = SpotStatus.OCCUPIED
        self.current_vehicle = str(LicensePlate.of(license_plate))

    def release(self, license_plate: str) -> None:
        plate = str(LicensePlate.of(license_plate))
        if self.status != SpotStatus.OCCUPIED or self.current_vehicle != plate:
            raise SpotStateConflictError(
                f"Spot {self.id} is not occupied by {plate}",
                spot_id=self.id,
                current_vehicle=self.current_vehicle,
            )
        self.status = SpotStatus.AVAILABLE
        self.current_vehicle = None

    def copy(self) -> 'Spot':
        return Spot(
            self.floor, self.bay, self.spot_number, self.spot_type,
            status=self.status, features=self.features,
            current_vehicle=self.current_vehicle,
        )

    def location(self) -> Dict[str, int]:
        return {"floor": self.floor, "bay": self.bay, "spot_number": self.spot_number}

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "floor": self.floor,
            "bay": self.bay,
            "spot_number": self.spot_number,
            "spot_type": self.spot_type.value,
            "status": self.status.value,
            "features": sorted(f.value for f in self.features),
            "current_vehicle": self.current_vehicle,
        }


class Vehicle(Entity):
    """A vehicle asking for a spot, identified by its license plate"""

    def __init__(
        self,
        license_plate,
        vehicle_type,
        rate_type=RateType.HOURLY,
        is_electric: bool = False,
        requires_accessible: bool = False,
    ):
        self.license_plate = LicensePlate.of(license_plate)
        super().__init__(str(self.license_plate))
        self.vehicle_type = VehicleType.parse(vehicle_type)
        self.rate_type = RateType.parse(rate_type)
        self.is_electric = bool(is_electric)
        self.requires_accessible = bool(requires_accessible)

    def __repr__(self) -> str:
        return f"Vehicle({self.license_plate}, {self.vehicle_type.value})"


# ============================================================================
# DOMAIN EVENTS
# ============================================================================

class DomainEvent(ABC):
    """
    Base class for all domain events
    Events represent something that happened in the domain
    """

    def __init__(self, timestamp: Optional[datetime] = None):
        self.event_id = str(uuid.uuid4())
        self.timestamp = timestamp or datetime.now()

    @property
    def event_type(self) -> str:
        return self.__class__.__name__

    @abstractmethod
    def to_dict(self) -> Dict[str, Any]:
        pass

    def __str__(self) -> str:
        return f"{self.event_type} at {self.timestamp}"


class VehicleCheckedInEvent(DomainEvent):
    """Raised when a session starts and a spot is occupied"""

    def __init__(self, session_id: str, license_plate: str, spot_id: str,
                 vehicle_type: VehicleType, timestamp: Optional[datetime] = None):
        super().__init__(timestamp)
        self.session_id = session_id
        self.license_plate = license_plate
        self.spot_id = spot_id
        self.vehicle_type = vehicle_type

    def to_dict(self) -> Dict[str, Any]:
        return {
            "event_id": self.event_id,
            "event_type": self.event_type,
            "session_id": self.session_id,
            "license_plate": self.license_plate,
            "spot_id": self.spot_id,
            "vehicle_type": self.vehicle_type.value,
            "timestamp": self.timestamp.isoformat(),
        }


class VehicleCheckedOutEvent(DomainEvent):
    """Raised when a session closes and its spot is released"""

    def __init__(self, session_id: str, license_plate: str, spot_id: str,
                 amount_due: Money, duration: DurationBreakdown, forced: bool = False,
                 timestamp: Optional[datetime] = None):
        super().__init__(timestamp)
        self.session_id = session_id
        self.license_plate = license_plate
        self.spot_id = spot_id
        self.amount_due = amount_due
        self.duration = duration
        self.forced = forced

    def to_dict(self) -> Dict[str, Any]:
        return {
            "event_id": self.event_id,
            "event_type": self.event_type,
            "session_id": self.session_id,
            "license_plate": self.license_plate,
            "spot_id": self.spot_id,
            "amount_due": self.amount_due.to_dict(),
            "duration": self.duration.to_dict(),
            "forced": self.forced,
            "timestamp": self.timestamp.isoformat(),
        }
