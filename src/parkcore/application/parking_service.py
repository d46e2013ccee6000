# File: src/parkcore/application/parking_service.py
"""
Parking Service - Session Lifecycle Coordinator

Joins the assignment and billing engines to the spot inventory and the
session store. Every state change runs inside one unit of work:

- check-in occupies a spot and opens a session together
- checkout closes the session and releases the spot together

Dry runs (simulate_*) read the same data through a discarded unit of work
and never change state. Domain events are published after commit.
"""

from datetime import datetime
from decimal import Decimal
from typing import Any, Callable, Dict, List, Optional, Union
import logging

from pydantic import ValidationError

from ..domain.models import (
    Vehicle, LicensePlate, Money, DurationBreakdown, SpotStatus, VehicleType,
    ParkingError, AlreadyParkedError, NoAvailableSpotError, VehicleNotFoundError,
    SimulationError, SpotStateConflictError, InvalidInputError, ErrorKind,
    RateType, to_cents, to_local_naive,
)
from ..domain.aggregates import ParkingSession
from ..domain.assignment import SpotAssignmentEngine, is_compatible
from ..domain.billing import CheckoutBillingEngine, BillingResult, calculate_duration
from ..domain.policies import AssignmentPreferences, RateTable, BillingPolicy
from ..infrastructure.config import ConfigProvider
from ..infrastructure.messaging import EventBus
from .dtos import (
    CheckInRequestDTO, CheckoutOptions, CheckInResultDTO, CheckInSimulationDTO,
    CheckoutResultDTO, CheckoutSimulationDTO, ForcedCheckoutResultDTO,
    AssignmentSimulationDTO, AssignmentStatsDTO, CheckoutStatsDTO, VehicleReadyDTO,
    SpotDTO, LocationDTO, DurationDTO, BillingDTO, CompatibilityDTO, AvailabilityDTO,
)


OptionsLike = Union[CheckoutOptions, Dict[str, Any], None]


class ParkingService:
    """
    Main application service for garage operations

    Collaborators are injected: a unit of work factory over the spot
    inventory and session store, a configuration provider for the current
    policies, an event bus and an optional clock for "now".
    """

    def __init__(
        self,
        unit_of_work_factory: Callable,
        config: Optional[ConfigProvider] = None,
        event_bus: Optional[EventBus] = None,
        clock: Optional[Callable[[], datetime]] = None,
        preferences: Optional[AssignmentPreferences] = None,
        rate_table: Optional[RateTable] = None,
        billing_policy: Optional[BillingPolicy] = None,
    ):
        self.unit_of_work_factory = unit_of_work_factory
        self.config = config or ConfigProvider()
        self.event_bus = event_bus or EventBus()
        self.clock = clock or datetime.now
        self.logger = logging.getLogger(self.__class__.__name__)

        # Explicit policies pin a value; otherwise the provider is asked on every call
        self._preferences = preferences or self.config.get_preferences
        self.billing_engine = CheckoutBillingEngine(
            rate_table or self.config.get_rate_table,
            billing_policy or self.config.get_billing_policy,
        )

    # ------------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------------

    def assignment_engine(self, inventory) -> SpotAssignmentEngine:
        return SpotAssignmentEngine(inventory, self._preferences)

    def _publish(self, events) -> None:
        self.event_bus.publish_all(events)

    def _now(self) -> datetime:
        return to_local_naive(self.clock())

    def _time_or_now(self, value: Optional[datetime]) -> datetime:
        return to_local_naive(value) if value is not None else self._now()

    @staticmethod
    def _options(options: OptionsLike) -> CheckoutOptions:
        if options is None:
            return CheckoutOptions()
        if isinstance(options, CheckoutOptions):
            return options
        try:
            return CheckoutOptions(**options)
        except ValidationError as e:
            raise InvalidInputError(f"Invalid checkout options: {e}") from e

    @staticmethod
    def _require_active(uow, plate: LicensePlate) -> ParkingSession:
        session = uow.sessions.find_active(str(plate))
        if session is None:
            raise VehicleNotFoundError(
                f"No active session for vehicle {plate}", license_plate=str(plate)
            )
        return session

    @staticmethod
    def _compatibility(vehicle_type: VehicleType, spot) -> CompatibilityDTO:
        return CompatibilityDTO(
            vehicle_type=vehicle_type,
            spot_type=spot.spot_type.value,
            is_exact_match=spot.spot_type == vehicle_type.natural_spot_type,
        )

    def _checkout_dto(self, dto_class, session: ParkingSession, duration: DurationBreakdown,
                      amount: Money, billing: Optional[BillingResult], spot,
                      check_out_time: datetime, warnings=None, **extra):
        return dto_class(
            session_id=session.id,
            license_plate=str(session.license_plate),
            vehicle_type=session.vehicle_type,
            rate_type=session.rate_type,
            spot_id=session.spot_id,
            location=LocationDTO(**spot.location()) if spot is not None else None,
            check_in_time=session.check_in_time,
            check_out_time=check_out_time,
            duration=DurationDTO.from_duration(duration),
            amount_due=amount.amount,
            currency=amount.currency,
            billing=BillingDTO.from_result(billing) if billing is not None else None,
            warnings=list(warnings or []),
            **extra,
        )

    # ------------------------------------------------------------------------
    # Check-in
    # ------------------------------------------------------------------------

    def check_in(
        self,
        vehicle_type,
        license_plate,
        *,
        rate_type=RateType.HOURLY,
        is_electric: bool = False,
        requires_accessible: bool = False,
        check_in_time: Optional[datetime] = None,
    ) -> CheckInResultDTO:
        """Assign the best spot to an arriving vehicle and open its session"""
        vehicle = Vehicle(license_plate, vehicle_type, rate_type, is_electric, requires_accessible)
        check_in_time = self._time_or_now(check_in_time)

        try:
            with self.unit_of_work_factory() as uow:
                if uow.sessions.find_active(str(vehicle.license_plate)) is not None:
                    raise AlreadyParkedError(
                        f"Vehicle {vehicle.license_plate} is already parked",
                        license_plate=str(vehicle.license_plate),
                    )

                engine = self.assignment_engine(uow.spots)
                spots = uow.spots.get_all()
                spot = engine.find_best_available_spot(
                    vehicle.vehicle_type,
                    is_electric=vehicle.is_electric,
                    requires_accessible=vehicle.requires_accessible,
                    spots=spots,
                )
                if spot is None:
                    compatible = engine.get_availability_by_vehicle_type(vehicle.vehicle_type, spots)
                    total_available = sum(1 for s in spots if s.is_available)
                    raise NoAvailableSpotError(
                        f"No available spots for {vehicle.vehicle_type.value} vehicles "
                        f"(compatible available: {compatible['total']}, "
                        f"total available: {total_available})",
                        compatible_available=compatible["total"],
                        total_available=total_available,
                    )

                spot = uow.spots.occupy(spot.id, str(vehicle.license_plate))
                session = ParkingSession.start(vehicle, spot.id, check_in_time)
                uow.sessions.add(session)
                events = session.clear_events()
        except ParkingError as e:
            self.logger.warning(f"Check-in rejected for {vehicle.license_plate}: {e.kind.value} {e}")
            raise

        self._publish(events)
        self.logger.info(f"Checked in {vehicle.license_plate} ({vehicle.vehicle_type.value}) at {spot.id}")
        return CheckInResultDTO(
            session_id=session.id,
            license_plate=str(vehicle.license_plate),
            vehicle_type=vehicle.vehicle_type,
            rate_type=vehicle.rate_type,
            spot=SpotDTO.from_spot(spot),
            location=LocationDTO(**spot.location()),
            compatibility=self._compatibility(vehicle.vehicle_type, spot),
            check_in_time=check_in_time,
            message=f"Vehicle {vehicle.license_plate} assigned to spot {spot.id}",
        )

    def check_in_request(self, request: CheckInRequestDTO) -> CheckInResultDTO:
        return self.check_in(
            request.vehicle_type,
            request.license_plate,
            rate_type=request.rate_type,
            is_electric=request.is_electric,
            requires_accessible=request.requires_accessible,
            check_in_time=request.check_in_time,
        )

    def simulate_check_in(
        self,
        license_plate,
        vehicle_type,
        *,
        is_electric: bool = False,
        requires_accessible: bool = False,
    ) -> CheckInSimulationDTO:
        """Report what check-in would do; rejections come back as results"""
        plate = LicensePlate.of(license_plate)
        vehicle_type = VehicleType.parse(vehicle_type)

        with self.unit_of_work_factory() as uow:
            uow.discard()
            if uow.sessions.find_active(str(plate)) is not None:
                return CheckInSimulationDTO(
                    success=False,
                    license_plate=str(plate),
                    vehicle_type=vehicle_type,
                    error=ErrorKind.ALREADY_PARKED.value,
                    message=f"Vehicle {plate} is already parked",
                )
            simulation = self.assignment_engine(uow.spots).simulate_assignment(
                vehicle_type, is_electric=is_electric, requires_accessible=requires_accessible,
            )

        if not simulation["success"]:
            return CheckInSimulationDTO(
                success=False,
                license_plate=str(plate),
                vehicle_type=vehicle_type,
                error=ErrorKind.NO_AVAILABLE_SPOT.value,
                message=simulation["message"],
                availability=AvailabilityDTO(**simulation["availability"]),
            )
        return CheckInSimulationDTO(
            success=True,
            license_plate=str(plate),
            vehicle_type=vehicle_type,
            message=simulation["message"],
            spot=SpotDTO(**simulation["spot"]),
            location=LocationDTO(**simulation["location"]),
            availability=AvailabilityDTO(**simulation["availability"]),
        )

    def simulate_assignment(self, vehicle_type, *, is_electric: bool = False,
                            requires_accessible: bool = False) -> AssignmentSimulationDTO:
        with self.unit_of_work_factory() as uow:
            uow.discard()
            result = self.assignment_engine(uow.spots).simulate_assignment(
                vehicle_type, is_electric=is_electric, requires_accessible=requires_accessible,
            )
        return AssignmentSimulationDTO.model_validate(result)

    def get_availability(self, vehicle_type) -> AvailabilityDTO:
        with self.unit_of_work_factory() as uow:
            uow.discard()
            result = self.assignment_engine(uow.spots).get_availability_by_vehicle_type(vehicle_type)
        return AvailabilityDTO(**result)

    # ------------------------------------------------------------------------
    # Checkout
    # ------------------------------------------------------------------------

    def check_out(self, license_plate, options: OptionsLike = None) -> CheckoutResultDTO:
        """Bill the stay, close the session and free the spot"""
        options = self._options(options)
        plate = LicensePlate.of(license_plate)

        try:
            with self.unit_of_work_factory() as uow:
                session = self._require_active(uow, plate)
                check_out_time = self._time_or_now(options.check_out_time)
                billing = self.billing_engine.charge_for_session(
                    session, check_out_time,
                    apply_grace_period=options.apply_grace_period,
                    discount=options.discount,
                )
                spot = uow.spots.release(session.spot_id, str(plate))
                session.close(check_out_time, billing.duration, billing.total,
                              billing=billing.to_dict())
                uow.sessions.update(session)
                events = session.clear_events()
        except ParkingError as e:
            self.logger.warning(f"Checkout rejected for {plate}: {e.kind.value} {e}")
            raise

        self._publish(events)
        self.logger.info(
            f"Checked out {plate} from {session.spot_id}: "
            f"{billing.duration.format()}, {billing.total.format()}"
        )
        return self._checkout_dto(
            CheckoutResultDTO, session, billing.duration, billing.total, billing, spot,
            session.check_out_time,
        )

    def simulate_checkout(self, license_plate, options: OptionsLike = None) -> CheckoutSimulationDTO:
        """Compute what checkout would charge without changing anything"""
        try:
            options = self._options(options)
            plate = LicensePlate.of(license_plate)
            with self.unit_of_work_factory() as uow:
                uow.discard()
                session = self._require_active(uow, plate)
                check_out_time = self._time_or_now(options.check_out_time)
                billing = self.billing_engine.charge_for_session(
                    session, check_out_time,
                    apply_grace_period=options.apply_grace_period,
                    discount=options.discount,
                )
                spot = uow.spots.get(session.spot_id)
                if spot is None or spot.current_vehicle != str(plate):
                    raise SpotStateConflictError(
                        f"Spot {session.spot_id} is not occupied by {plate}",
                        spot_id=session.spot_id,
                    )
        except ParkingError as e:
            self.logger.warning(f"Checkout simulation failed for {license_plate}: {e.kind.value} {e}")
            raise SimulationError(f"Checkout simulation failed: {e.message}", cause=e) from e
        except Exception as e:
            self.logger.error(f"Checkout simulation failed for {license_plate}: {e}", exc_info=True)
            raise SimulationError(f"Checkout simulation failed: {e}") from e

        return self._checkout_dto(
            CheckoutSimulationDTO, session, billing.duration, billing.total, billing, spot,
            check_out_time,
        )

    def force_checkout(self, license_plate, reason: str = "administrative",
                       check_out_time: Optional[datetime] = None) -> ForcedCheckoutResultDTO:
        """
        Administrative checkout that tolerates inconsistent data

        A check-out time at or before check-in is clamped to check-in and
        charged nothing. A spot that is not held by the vehicle is left as
        it is. Each tolerated problem is listed in the result's warnings.
        An unknown vehicle is still an error.
        """
        plate = LicensePlate.of(license_plate)
        warnings: List[str] = []

        try:
            with self.unit_of_work_factory() as uow:
                session = self._require_active(uow, plate)
                requested = self._time_or_now(check_out_time)
                rates = self.billing_engine.rate_table

                if requested <= session.check_in_time:
                    warnings.append(
                        f"Check-out time {requested.isoformat()} is not after check-in "
                        f"{session.check_in_time.isoformat()}; no charge applied"
                    )
                    billing = None
                    duration = DurationBreakdown.from_minutes(0)
                    amount = Money.zero(rates.currency)
                else:
                    billing = self.billing_engine.charge_for_session(session, requested)
                    duration, amount = billing.duration, billing.total

                spot = uow.spots.get(session.spot_id)
                if spot is not None and spot.current_vehicle == str(plate):
                    spot = uow.spots.release(session.spot_id, str(plate))
                else:
                    warnings.append(
                        f"Spot {session.spot_id} was not occupied by {plate}; spot left unchanged"
                    )

                session.close(requested, duration, amount,
                              billing=billing.to_dict() if billing else None,
                              forced=True, forced_reason=reason)
                uow.sessions.update(session)
                events = session.clear_events()
        except ParkingError as e:
            self.logger.warning(f"Forced checkout failed for {plate}: {e.kind.value} {e}")
            raise

        self._publish(events)
        self.logger.warning(f"Forced checkout of {plate} ({reason}); warnings: {len(warnings)}")
        return self._checkout_dto(
            ForcedCheckoutResultDTO, session, duration, amount, billing, spot,
            session.check_out_time, warnings=warnings, reason=reason,
        )

    def get_vehicles_ready_for_checkout(self, min_minutes: int = 0,
                                        now: Optional[datetime] = None) -> List[VehicleReadyDTO]:
        """Active sessions parked at least min_minutes, with a live estimate"""
        now = self._time_or_now(now)
        with self.unit_of_work_factory() as uow:
            uow.discard()
            sessions = uow.sessions.find_all_active()

        ready = []
        for session in sorted(sessions, key=lambda s: s.check_in_time):
            if now > session.check_in_time:
                duration = calculate_duration(session.check_in_time, now)
            else:
                duration = DurationBreakdown.from_minutes(0)
            if duration.total_minutes < min_minutes:
                continue
            estimate = self.billing_engine.estimate(session, now)
            amount = estimate.total if estimate else Money.zero(self.billing_engine.rate_table.currency)
            ready.append(VehicleReadyDTO(
                session_id=session.id,
                license_plate=str(session.license_plate),
                vehicle_type=session.vehicle_type,
                rate_type=session.rate_type,
                spot_id=session.spot_id,
                check_in_time=session.check_in_time,
                duration=DurationDTO.from_duration(duration),
                estimated_amount=amount.amount,
                currency=amount.currency,
            ))
        return ready

    # ------------------------------------------------------------------------
    # Queries and maintenance
    # ------------------------------------------------------------------------

    def get_active_session(self, license_plate) -> Optional[ParkingSession]:
        with self.unit_of_work_factory() as uow:
            uow.discard()
            return uow.sessions.find_active(str(LicensePlate.of(license_plate)))

    def get_assignment_stats(self) -> AssignmentStatsDTO:
        with self.unit_of_work_factory() as uow:
            uow.discard()
            stats = self.assignment_engine(uow.spots).get_assignment_stats()
        return AssignmentStatsDTO.model_validate(stats)

    def get_checkout_stats(self) -> CheckoutStatsDTO:
        with self.unit_of_work_factory() as uow:
            uow.discard()
            completed = uow.sessions.find_completed()
            active = uow.sessions.find_all_active()
            spots = uow.spots.get_all()

        currency = self.billing_engine.rate_table.currency
        revenue = sum((s.amount_due.amount for s in completed if s.amount_due), Decimal("0"))
        average = to_cents(revenue / len(completed)) if completed else Decimal("0.00")
        available = sum(1 for s in spots if s.is_available)
        return CheckoutStatsDTO(
            completed_sessions=len(completed),
            still_parked=len(active),
            forced_checkouts=sum(1 for s in completed if s.forced),
            total_revenue=to_cents(revenue),
            average_revenue=average,
            currency=currency,
            total_spots=len(spots),
            available_spots=available,
            occupancy_rate=round((len(spots) - available) / len(spots) * 100, 2) if spots else 0.0,
            timestamp=self._now(),
        )

    def set_spot_status(self, spot_id: str, status) -> SpotDTO:
        """Take a free spot out of service or back into service"""
        status = SpotStatus(status)
        with self.unit_of_work_factory() as uow:
            spot = uow.spots.set_status(spot_id, status)
        self.logger.info(f"Spot {spot_id} set to {status.value}")
        return SpotDTO.from_spot(spot)

    def check_consistency(self) -> List[str]:
        """List mismatches between occupied spots and active sessions"""
        with self.unit_of_work_factory() as uow:
            uow.discard()
            spots = {s.id: s for s in uow.spots.get_all()}
            sessions = uow.sessions.find_all_active()

        problems = []
        held = set()
        for session in sessions:
            spot = spots.get(session.spot_id)
            held.add(session.spot_id)
            if spot is None or spot.current_vehicle != str(session.license_plate):
                problems.append(f"Session {session.id} ({session.license_plate}) does not hold spot {session.spot_id}")
            elif not is_compatible(session.vehicle_type, spot.spot_type):
                problems.append(f"Spot {spot.id} is too small for {session.license_plate}")
        for spot in spots.values():
            if spot.status == SpotStatus.OCCUPIED and spot.id not in held:
                problems.append(f"Spot {spot.id} is occupied without an active session")
        return problems


# ============================================================================
# COMMAND HANDLER
# ============================================================================

class ParkingCommandHandler:
    """
    Handler for parking commands

    Accepts {"type": ..., "data": {...}} and answers with a plain dict, so
    callers at the edge (CLI, HTTP) never see exceptions.
    """

    def __init__(self, service: ParkingService):
        self.service = service
        self.logger = logging.getLogger(self.__class__.__name__)
        self._handlers = {
            "check_in": self._check_in,
            "simulate_check_in": self._simulate_check_in,
            "simulate_assignment": self._simulate_assignment,
            "check_out": self._check_out,
            "simulate_checkout": self._simulate_checkout,
            "force_checkout": self._force_checkout,
            "ready_for_checkout": self._ready_for_checkout,
            "assignment_stats": lambda data: self.service.get_assignment_stats(),
            "checkout_stats": lambda data: self.service.get_checkout_stats(),
        }

    def handle(self, command: Dict[str, Any]) -> Dict[str, Any]:
        """Handle a parking command"""
        command_type = command.get("type")
        handler = self._handlers.get(command_type)
        if handler is None:
            return {
                "success": False,
                "error": ErrorKind.INVALID_INPUT.value,
                "message": f"Unknown command type: {command_type}",
            }

        try:
            result = handler(command.get("data") or {})
        except ParkingError as e:
            return {"success": False, **e.to_dict()}
        except ValidationError as e:
            return {
                "success": False,
                "error": ErrorKind.INVALID_INPUT.value,
                "message": str(e),
            }
        except KeyError as e:
            return {
                "success": False,
                "error": ErrorKind.INVALID_INPUT.value,
                "message": f"Missing field: {e.args[0]}",
            }
        except Exception as e:
            self.logger.error(f"Error handling command {command_type}: {e}", exc_info=True)
            return {"success": False, "error": "INTERNAL_ERROR", "message": str(e)}

        if isinstance(result, list):
            data = [item.to_dict(mode="json") for item in result]
        else:
            data = result.to_dict(mode="json")
        success = data.get("success", True) if isinstance(data, dict) else True
        return {"success": success, "data": data}

    def _check_in(self, data):
        return self.service.check_in_request(CheckInRequestDTO(**data))

    def _simulate_check_in(self, data):
        return self.service.simulate_check_in(
            data["license_plate"], data["vehicle_type"],
            is_electric=data.get("is_electric", False),
            requires_accessible=data.get("requires_accessible", False),
        )

    def _simulate_assignment(self, data):
        return self.service.simulate_assignment(
            data["vehicle_type"],
            is_electric=data.get("is_electric", False),
            requires_accessible=data.get("requires_accessible", False),
        )

    def _check_out(self, data):
        return self.service.check_out(data["license_plate"], data.get("options"))

    def _simulate_checkout(self, data):
        return self.service.simulate_checkout(data["license_plate"], data.get("options"))

    def _force_checkout(self, data):
        return self.service.force_checkout(
            data["license_plate"], data.get("reason", "administrative"),
        )

    def _ready_for_checkout(self, data):
        return self.service.get_vehicles_ready_for_checkout(int(data.get("min_minutes", 0)))
