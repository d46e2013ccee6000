#!/usr/bin/env python3
"""
Integration tests for ParkingService over in-memory storage

These exercise the full check-in / checkout lifecycle with real engines,
the in-memory unit of work and the event bus.
"""

import random
import unittest
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from unittest.mock import patch

from parkcore.application.parking_service import ParkingService, ParkingCommandHandler
from parkcore.domain.models import (
    Spot, SpotType, SpotStatus, SpotFeature, VehicleType,
    AlreadyParkedError, NoAvailableSpotError, VehicleNotFoundError,
    InvalidTimeRangeError, SpotStateConflictError, SimulationError, ErrorKind,
    VehicleCheckedInEvent, VehicleCheckedOutEvent,
)
from parkcore.domain.policies import RateTable, BillingPolicy
from parkcore.infrastructure.config import ConfigProvider, GarageConfig, BillingConfig
from parkcore.infrastructure.messaging import EventBus, EventRecorder, ALL_EVENTS
from parkcore.infrastructure.repositories import InMemoryStorage


T0 = datetime(2024, 3, 1, 8, 0)


class FixedClock:
    def __init__(self, now):
        self.now = now

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now += timedelta(**kwargs)


class ServiceTestBase(unittest.TestCase):
    """Base class building a service over a small garage"""

    def make_spots(self):
        return [
            Spot(1, 1, 1, SpotType.COMPACT),
            Spot(1, 1, 2, SpotType.STANDARD),
            Spot(1, 1, 3, SpotType.STANDARD, features=[SpotFeature.EV_CHARGING]),
            Spot(1, 2, 1, SpotType.OVERSIZED),
            Spot(2, 1, 1, SpotType.STANDARD, features=[SpotFeature.HANDICAP]),
        ]

    def setUp(self):
        self.storage = InMemoryStorage(self.make_spots())
        self.clock = FixedClock(T0)
        self.recorder = EventRecorder()
        self.bus = EventBus()
        self.bus.subscribe(ALL_EVENTS, self.recorder)
        self.config = ConfigProvider(config=GarageConfig())
        self.service = self.build_service()

    def build_service(self, **kwargs):
        return ParkingService(
            self.storage.unit_of_work,
            config=self.config,
            event_bus=self.bus,
            clock=self.clock,
            **kwargs,
        )

    def occupied_count(self):
        return sum(1 for s in self.storage.spots.get_all() if s.status == SpotStatus.OCCUPIED)

    def active_count(self):
        return len(self.storage.sessions.find_all_active())

    def assert_consistent(self):
        self.assertEqual(self.occupied_count(), self.active_count())
        self.assertEqual(self.service.check_consistency(), [])


class TestCheckIn(ServiceTestBase):

    def test_check_in_assigns_best_spot(self):
        result = self.service.check_in("standard", "abc123")
        self.assertTrue(result.success)
        self.assertEqual(result.license_plate, "ABC123")
        self.assertEqual(result.spot.id, "F1-B1-S2")
        self.assertEqual(result.location.floor, 1)
        self.assertTrue(result.compatibility.is_exact_match)
        self.assertEqual(result.check_in_time, T0)
        self.assertEqual(self.storage.spots.get("F1-B1-S2").current_vehicle, "ABC123")
        self.assert_consistent()

    def test_electric_vehicle_gets_charging_spot(self):
        result = self.service.check_in("standard", "EV1", is_electric=True)
        self.assertEqual(result.spot.id, "F1-B1-S3")

    def test_already_parked(self):
        self.service.check_in("standard", "ABC123")
        with self.assertRaises(AlreadyParkedError) as ctx:
            self.service.check_in("compact", "abc123")
        self.assertEqual(ctx.exception.kind, ErrorKind.ALREADY_PARKED)
        self.assert_consistent()

    def test_no_available_spot(self):
        self.service.check_in("oversized", "TRUCK1")
        with self.assertRaises(NoAvailableSpotError) as ctx:
            self.service.check_in("oversized", "TRUCK2")
        self.assertEqual(ctx.exception.details["compatible_available"], 0)
        self.assertEqual(ctx.exception.details["total_available"], 4)
        self.assert_consistent()

    def test_compact_overflows_into_larger_spots(self):
        plates = ["C1", "C2", "C3", "C4", "C5"]
        assigned = [self.service.check_in("compact", p).spot.spot_type for p in plates]
        self.assertEqual(assigned[0], "compact")
        self.assertEqual(len(set(r for r in assigned)), 3)
        with self.assertRaises(NoAvailableSpotError):
            self.service.check_in("compact", "C6")
        self.assert_consistent()

    def test_failed_session_write_rolls_back_spot(self):
        with patch.object(self.storage.sessions, "add", side_effect=RuntimeError("disk full")):
            with self.assertRaises(RuntimeError):
                self.service.check_in("standard", "ABC123")
        self.assertTrue(self.storage.spots.get("F1-B1-S2").is_available)
        self.assertEqual(self.recorder.events, [])
        self.assert_consistent()

    def test_publishes_check_in_event(self):
        result = self.service.check_in("compact", "ABC123")
        events = self.recorder.of_type(VehicleCheckedInEvent)
        self.assertEqual(len(events), 1)
        self.assertEqual(events[0].spot_id, result.spot.id)

    def test_simulate_check_in(self):
        ok = self.service.simulate_check_in("ABC123", "standard")
        self.assertTrue(ok.success)
        self.assertEqual(ok.spot.id, "F1-B1-S2")
        self.assertEqual(self.occupied_count(), 0)

        self.service.check_in("standard", "ABC123")
        duplicate = self.service.simulate_check_in("ABC123", "standard")
        self.assertEqual(duplicate.error, "ALREADY_PARKED")

        self.service.check_in("oversized", "TRUCK1")
        full = self.service.simulate_check_in("TRUCK2", "oversized")
        self.assertEqual(full.error, "NO_AVAILABLE_SPOT")
        self.assertFalse(full.availability.has_available)

    def test_simulated_assignment_matches_real_assignment(self):
        simulation = self.service.simulate_assignment("compact")
        again = self.service.simulate_assignment("compact")
        self.assertEqual(simulation.spot.id, again.spot.id)
        self.assertEqual(self.service.check_in("compact", "ABC123").spot.id, simulation.spot.id)


class TestCheckout(ServiceTestBase):

    def test_scenario_compact_vehicle(self):
        storage = InMemoryStorage([
            Spot(1, 1, 1, SpotType.COMPACT),
            Spot(1, 1, 2, SpotType.OVERSIZED, features=[SpotFeature.EV_CHARGING]),
        ])
        service = ParkingService(
            storage.unit_of_work, config=self.config, clock=self.clock,
            rate_table=RateTable(hourly_rates={vt: Decimal("5.00") for vt in VehicleType}),
        )
        check_in = service.check_in("compact", "SCN001")
        self.assertEqual(check_in.spot.spot_type, "compact")

        result = service.check_out("SCN001", {
            "check_out_time": T0 + timedelta(minutes=130),
            "apply_grace_period": False,
        })
        self.assertEqual(result.amount_due, Decimal("15"))
        self.assertEqual(result.billing.billable_hours, 3)
        self.assertEqual((result.duration.hours, result.duration.minutes), (2, 10))
        self.assertEqual(result.location.spot_number, 1)

    def test_check_out_releases_spot_and_closes_session(self):
        spot_id = self.service.check_in("standard", "ABC123").spot.id
        self.clock.advance(minutes=95)
        result = self.service.check_out("ABC123")

        self.assertEqual(result.amount_due, Decimal("10.00"))
        self.assertEqual(result.check_out_time, T0 + timedelta(minutes=95))
        self.assertTrue(self.storage.spots.get(spot_id).is_available)
        self.assertIsNone(self.service.get_active_session("ABC123"))
        self.assertEqual(len(self.recorder.of_type(VehicleCheckedOutEvent)), 1)
        self.assert_consistent()

    def test_grace_period_checkout_is_free(self):
        self.service.check_in("standard", "ABC123")
        result = self.service.check_out("ABC123", {"check_out_time": T0 + timedelta(minutes=15)})
        self.assertEqual(result.amount_due, Decimal("0"))
        self.assertTrue(result.billing.within_grace_period)

    def test_discount_from_options(self):
        self.service.check_in("standard", "ABC123")
        result = self.service.check_out("ABC123", {
            "check_out_time": T0 + timedelta(hours=3), "discount": "100",
        })
        self.assertEqual(result.billing.subtotal, Decimal("15.00"))
        self.assertEqual(result.amount_due, Decimal("0"))

    def test_unknown_vehicle(self):
        with self.assertRaises(VehicleNotFoundError):
            self.service.check_out("NOPE1")

    def test_second_checkout_fails(self):
        self.service.check_in("standard", "ABC123")
        self.service.check_out("ABC123", {"check_out_time": T0 + timedelta(hours=1)})
        with self.assertRaises(VehicleNotFoundError):
            self.service.check_out("ABC123", {"check_out_time": T0 + timedelta(hours=2)})

    def test_invalid_time_range_changes_nothing(self):
        spot_id = self.service.check_in("standard", "ABC123").spot.id
        with self.assertRaises(InvalidTimeRangeError):
            self.service.check_out("ABC123", {"check_out_time": T0 - timedelta(minutes=1)})
        self.assertIsNotNone(self.service.get_active_session("ABC123"))
        self.assertFalse(self.storage.spots.get(spot_id).is_available)
        self.assert_consistent()

    def test_spot_conflict_rolls_back(self):
        spot_id = self.service.check_in("standard", "ABC123").spot.id
        self.storage.spots.release(spot_id, "ABC123")

        with self.assertRaises(SpotStateConflictError):
            self.service.check_out("ABC123", {"check_out_time": T0 + timedelta(hours=1)})
        self.assertIsNotNone(self.service.get_active_session("ABC123"))

    def test_simulation_matches_real_checkout(self):
        self.service.check_in("oversized", "TRUCK1")
        options = {"check_out_time": T0 + timedelta(minutes=200), "discount": "1.25"}

        simulated = self.service.simulate_checkout("TRUCK1", options)
        self.assertTrue(simulated.simulated)
        self.assertIsNotNone(self.service.get_active_session("TRUCK1"))

        real = self.service.check_out("TRUCK1", options)
        self.assertEqual(simulated.amount_due, real.amount_due)
        self.assertEqual(simulated.duration, real.duration)
        self.assertEqual(real.amount_due, Decimal("26.75"))

    def test_simulation_failures_are_wrapped(self):
        with self.assertRaises(SimulationError) as ctx:
            self.service.simulate_checkout("NOPE1")
        self.assertEqual(ctx.exception.cause_kind, ErrorKind.VEHICLE_NOT_FOUND)
        self.assertIsInstance(ctx.exception.__cause__, VehicleNotFoundError)

        self.service.check_in("standard", "ABC123")
        with self.assertRaises(SimulationError) as ctx:
            self.service.simulate_checkout("ABC123", {"check_out_time": T0})
        self.assertEqual(ctx.exception.cause_kind, ErrorKind.INVALID_TIME_RANGE)

    def test_simulation_wraps_unexpected_errors(self):
        self.service.check_in("standard", "ABC123")
        with patch.object(self.service.billing_engine, "charge_for_session",
                          side_effect=RuntimeError("boom")):
            with self.assertLogs("ParkingService", level="ERROR"):
                with self.assertRaises(SimulationError) as ctx:
                    self.service.simulate_checkout("ABC123", {"check_out_time": T0 + timedelta(hours=1)})
        self.assertIsNone(ctx.exception.cause_kind)
        self.assertIsInstance(ctx.exception.__cause__, RuntimeError)
        self.assertIsNotNone(self.service.get_active_session("ABC123"))

    def test_aware_checkout_time_against_naive_check_in(self):
        self.service.check_in("standard", "ABC123")
        aware = (T0 + timedelta(hours=2)).astimezone()
        result = self.service.check_out("ABC123", {"check_out_time": aware})

        self.assertIsNone(result.check_out_time.tzinfo)
        self.assertEqual(result.check_out_time, T0 + timedelta(hours=2))
        self.assertEqual(result.amount_due, Decimal("10.00"))
        self.assert_consistent()

    def test_aware_clock_against_naive_check_in(self):
        self.service.check_in("standard", "ABC123")
        self.clock.now = (T0 + timedelta(hours=1)).astimezone(timezone.utc)
        result = self.service.check_out("ABC123")
        self.assertIsNone(result.check_out_time.tzinfo)
        self.assertEqual(result.check_out_time, T0 + timedelta(hours=1))
        self.assertEqual(result.amount_due, Decimal("5.00"))

    def test_utc_checkout_time_through_command_handler(self):
        handler = ParkingCommandHandler(self.service)
        checked_in = handler.handle({"type": "check_in", "data": {
            "license_plate": "ABC123", "vehicle_type": "standard",
            "check_in_time": T0.isoformat(),
        }})
        self.assertTrue(checked_in["success"])

        checked_out = handler.handle({"type": "check_out", "data": {
            "license_plate": "ABC123",
            "options": {"check_out_time": "2099-01-01T10:00:00Z"},
        }})
        self.assertTrue(checked_out["success"], checked_out)
        self.assertGreater(Decimal(checked_out["data"]["amount_due"]), Decimal("0"))
        self.assert_consistent()


class TestForcedCheckout(ServiceTestBase):

    def test_forced_checkout_bills_normally(self):
        self.service.check_in("standard", "ABC123")
        self.clock.advance(hours=2)
        result = self.service.force_checkout("ABC123", "towed")
        self.assertTrue(result.forced)
        self.assertEqual(result.reason, "towed")
        self.assertEqual(result.amount_due, Decimal("10.00"))
        self.assertEqual(result.warnings, [])
        self.assertEqual(self.service.get_checkout_stats().forced_checkouts, 1)
        self.assert_consistent()

    def test_forced_checkout_tolerates_bad_time(self):
        self.service.check_in("standard", "ABC123")
        result = self.service.force_checkout("ABC123", "clock skew",
                                             check_out_time=T0 - timedelta(minutes=10))
        self.assertEqual(result.amount_due, Decimal("0"))
        self.assertEqual(result.duration.total_minutes, 0)
        self.assertEqual(result.check_out_time, T0)
        self.assertEqual(len(result.warnings), 1)
        self.assert_consistent()

    def test_forced_checkout_tolerates_spot_conflict(self):
        spot_id = self.service.check_in("standard", "ABC123").spot.id
        self.storage.spots.release(spot_id, "ABC123")
        self.clock.advance(minutes=30)

        result = self.service.force_checkout("ABC123", "spot reassigned")
        self.assertIn(spot_id, result.warnings[0])
        self.assertIsNone(self.service.get_active_session("ABC123"))
        self.assert_consistent()

    def test_forced_checkout_still_needs_a_session(self):
        with self.assertRaises(VehicleNotFoundError):
            self.service.force_checkout("NOPE1", "audit")


class TestQueries(ServiceTestBase):

    def test_vehicles_ready_for_checkout(self):
        self.service.check_in("standard", "EARLY1")
        self.clock.advance(minutes=45)
        self.service.check_in("compact", "LATE1")
        self.clock.advance(minutes=20)

        ready = self.service.get_vehicles_ready_for_checkout(min_minutes=60)
        self.assertEqual([r.license_plate for r in ready], ["EARLY1"])
        self.assertEqual(ready[0].duration.total_minutes, 65)
        self.assertEqual(ready[0].estimated_amount, Decimal("10.00"))

        everyone = self.service.get_vehicles_ready_for_checkout()
        self.assertEqual(len(everyone), 2)
        self.assertEqual(everyone[1].estimated_amount, Decimal("4.00"))

    def test_minimum_is_inclusive(self):
        self.service.check_in("standard", "ABC123")
        self.clock.advance(minutes=30)
        self.assertEqual(len(self.service.get_vehicles_ready_for_checkout(min_minutes=30)), 1)
        self.assertEqual(len(self.service.get_vehicles_ready_for_checkout(min_minutes=31)), 0)

    def test_checkout_stats(self):
        self.service.check_in("standard", "A1")
        self.service.check_in("oversized", "B1")
        self.service.check_in("compact", "C1")
        self.clock.advance(hours=1)
        self.service.check_out("A1")
        self.service.check_out("B1")

        stats = self.service.get_checkout_stats()
        self.assertEqual(stats.completed_sessions, 2)
        self.assertEqual(stats.still_parked, 1)
        self.assertEqual(stats.total_revenue, Decimal("12.00"))
        self.assertEqual(stats.average_revenue, Decimal("6.00"))
        self.assertEqual(stats.occupancy_rate, 20.0)

    def test_assignment_stats(self):
        self.service.check_in("oversized", "TRUCK1")
        stats = self.service.get_assignment_stats()
        self.assertEqual(stats.total_spots, 5)
        self.assertEqual(stats.available_spots, 4)
        self.assertFalse(stats.by_vehicle_type["oversized"].has_available_spot)

    def test_out_of_service_spots_count_as_unavailable(self):
        self.service.set_spot_status("F1-B1-S2", SpotStatus.OUT_OF_SERVICE)
        assignment = self.service.get_assignment_stats()
        self.assertEqual(assignment.occupied_spots, 0)
        self.assertEqual(assignment.occupancy_rate, 20.0)
        self.assertEqual(self.service.get_checkout_stats().occupancy_rate, 20.0)

    def test_out_of_service_spot_is_skipped(self):
        self.service.set_spot_status("F1-B1-S2", SpotStatus.OUT_OF_SERVICE)
        self.assertEqual(self.service.check_in("standard", "ABC123").spot.id, "F1-B1-S3")
        with self.assertRaises(SpotStateConflictError):
            self.service.set_spot_status("F1-B1-S3", "out_of_service")

    def test_grace_period_hot_reload(self):
        self.service.check_in("standard", "ABC123")
        options = {"check_out_time": T0 + timedelta(minutes=20)}
        self.assertEqual(self.service.simulate_checkout("ABC123", options).amount_due, Decimal("5.00"))

        self.config.reload(GarageConfig(billing=BillingConfig(grace_period_minutes=30)))
        self.assertEqual(self.service.simulate_checkout("ABC123", options).amount_due, Decimal("0"))

    def test_pinned_policy_ignores_reload(self):
        service = self.build_service(billing_policy=BillingPolicy(grace_period_minutes=0))
        service.check_in("standard", "ABC123")
        options = {"check_out_time": T0 + timedelta(minutes=5)}
        self.config.reload(GarageConfig(billing=BillingConfig(grace_period_minutes=30)))
        self.assertEqual(service.simulate_checkout("ABC123", options).amount_due, Decimal("5.00"))


class TestStateInvariant(ServiceTestBase):

    def test_random_operation_sequences(self):
        rng = random.Random(2024)
        plates = [f"CAR{i}" for i in range(8)]
        for _ in range(300):
            plate = rng.choice(plates)
            self.clock.advance(minutes=rng.randint(1, 90))
            action = rng.random()
            try:
                if action < 0.5:
                    self.service.check_in(rng.choice(list(VehicleType)), plate)
                elif action < 0.9:
                    self.service.check_out(plate)
                else:
                    self.service.force_checkout(plate, "random audit")
            except (AlreadyParkedError, NoAvailableSpotError, VehicleNotFoundError):
                pass
            self.assertEqual(self.occupied_count(), self.active_count())
        self.assertEqual(self.service.check_consistency(), [])


if __name__ == "__main__":
    unittest.main()
