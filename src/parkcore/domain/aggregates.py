# File: src/parkcore/domain/aggregates.py
"""
Aggregate Roots for the Parking Facility Core

Aggregates:
1. ParkingSession - One stay of one vehicle, from check-in to checkout

Key Concepts:
- Aggregate roots enforce their own invariants
- Domain events are recorded on state changes and drained by the caller
- A completed session is immutable
"""

from typing import List, Optional, Dict, Any
from datetime import datetime
import logging

from .models import (
    Entity, LicensePlate, Money, DurationBreakdown,
    VehicleType, RateType, SessionStatus,
    DomainEvent, VehicleCheckedInEvent, VehicleCheckedOutEvent,
    SessionAlreadyClosedError, InvalidTimeRangeError,
)


# ============================================================================
# BASE AGGREGATE ROOT
# ============================================================================

class AggregateRoot(Entity):
    """
    Base class for all aggregate roots
    Provides domain event collection and versioning
    """

    def __init__(self, id: Optional[str] = None):
        super().__init__(id)
        self._version: int = 1
        self._changes: List[DomainEvent] = []
        self._logger = logging.getLogger(self.__class__.__name__)

    @property
    def version(self) -> int:
        return self._version

    def _increment_version(self) -> None:
        self._version += 1

    def _add_domain_event(self, event: DomainEvent) -> None:
        self._changes.append(event)
        self._logger.debug(f"Added domain event: {event.event_type}")

    def clear_events(self) -> List[DomainEvent]:
        """Clear and return all domain events"""
        events = self._changes.copy()
        self._changes.clear()
        return events

    @property
    def has_changes(self) -> bool:
        return len(self._changes) > 0

    def _validate_invariants(self) -> None:
        """Validate aggregate invariants - to be overridden by subclasses"""
        pass


# ============================================================================
# PARKING SESSION AGGREGATE
# ============================================================================

class ParkingSession(AggregateRoot):
    """
    Aggregate Root: One vehicle's stay in one spot

    A session is created active at check-in and closed exactly once at
    checkout. Closing records the checkout time, duration, amount due and
    the billing snapshot; after that every mutation raises.
    """

    def __init__(
        self,
        license_plate,
        vehicle_type: VehicleType,
        spot_id: str,
        check_in_time: datetime,
        rate_type: RateType = RateType.HOURLY,
        id: Optional[str] = None,
        status: SessionStatus = SessionStatus.ACTIVE,
        check_out_time: Optional[datetime] = None,
        duration: Optional[DurationBreakdown] = None,
        amount_due: Optional[Money] = None,
        billing: Optional[Dict[str, Any]] = None,
        forced: bool = False,
        forced_reason: Optional[str] = None,
        is_electric: bool = False,
        requires_accessible: bool = False,
    ):
        super().__init__(id)
        self.license_plate = LicensePlate.of(license_plate)
        self.vehicle_type = VehicleType.parse(vehicle_type)
        self.rate_type = RateType.parse(rate_type)
        self.spot_id = spot_id
        self.check_in_time = check_in_time
        self.status = status
        self.check_out_time = check_out_time
        self.duration = duration
        self.amount_due = amount_due
        self.billing = billing
        self.forced = forced
        self.forced_reason = forced_reason
        self.is_electric = is_electric
        self.requires_accessible = requires_accessible
        self._validate_invariants()

    @classmethod
    def start(cls, vehicle, spot_id: str, check_in_time: datetime) -> 'ParkingSession':
        """Open a new session for a vehicle placed in a spot"""
        session = cls(
            license_plate=vehicle.license_plate,
            vehicle_type=vehicle.vehicle_type,
            spot_id=spot_id,
            check_in_time=check_in_time,
            rate_type=vehicle.rate_type,
            is_electric=vehicle.is_electric,
            requires_accessible=vehicle.requires_accessible,
        )
        session._add_domain_event(VehicleCheckedInEvent(
            session_id=session.id,
            license_plate=str(session.license_plate),
            spot_id=spot_id,
            vehicle_type=session.vehicle_type,
            timestamp=check_in_time,
        ))
        return session

    def _validate_invariants(self) -> None:
        if self.status == SessionStatus.ACTIVE:
            if self.check_out_time is not None:
                raise ValueError("Active session cannot have a check-out time")
        elif self.check_out_time is None:
            raise ValueError("Completed session must have a check-out time")
        elif self.check_out_time < self.check_in_time:
            raise InvalidTimeRangeError("Completed session ends before it starts")

    @property
    def is_active(self) -> bool:
        return self.status == SessionStatus.ACTIVE

    def close(
        self,
        check_out_time: datetime,
        duration: DurationBreakdown,
        amount_due: Money,
        billing: Optional[Dict[str, Any]] = None,
        forced: bool = False,
        forced_reason: Optional[str] = None,
    ) -> None:
        """Complete the session; allowed once"""
        if not self.is_active:
            raise SessionAlreadyClosedError(
                f"Session {self.id} for {self.license_plate} is already closed",
                session_id=self.id,
            )
        if check_out_time <= self.check_in_time and not forced:
            raise InvalidTimeRangeError(
                f"Check-out time {check_out_time.isoformat()} must be after "
                f"check-in time {self.check_in_time.isoformat()}"
            )

        self.check_out_time = max(check_out_time, self.check_in_time)
        self.duration = duration
        self.amount_due = amount_due
        self.billing = billing
        self.forced = forced
        self.forced_reason = forced_reason
        self.status = SessionStatus.COMPLETED
        self._increment_version()
        self._validate_invariants()

        self._add_domain_event(VehicleCheckedOutEvent(
            session_id=self.id,
            license_plate=str(self.license_plate),
            spot_id=self.spot_id,
            amount_due=amount_due,
            duration=duration,
            forced=forced,
            timestamp=self.check_out_time,
        ))
        self._logger.info(
            f"Session {self.id} closed for {self.license_plate}: "
            f"{duration.format()}, {amount_due.format()}"
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "license_plate": str(self.license_plate),
            "vehicle_type": self.vehicle_type.value,
            "rate_type": self.rate_type.value,
            "spot_id": self.spot_id,
            "status": self.status.value,
            "check_in_time": self.check_in_time.isoformat(),
            "check_out_time": self.check_out_time.isoformat() if self.check_out_time else None,
            "duration": self.duration.to_dict() if self.duration else None,
            "amount_due": self.amount_due.to_dict() if self.amount_due else None,
            "forced": self.forced,
            "forced_reason": self.forced_reason,
        }
