#!/usr/bin/env python3
"""
Checkout Billing Engine Unit Tests
"""

import unittest
from datetime import datetime, timedelta
from decimal import Decimal

from parkcore.domain.models import (
    VehicleType, RateType, Vehicle, InvalidTimeRangeError,
)
from parkcore.domain.aggregates import ParkingSession
from parkcore.domain.policies import RateTable, BillingPolicy
from parkcore.domain.billing import CheckoutBillingEngine, calculate_duration


T0 = datetime(2024, 3, 1, 9, 0)


def flat_rates(amount):
    return RateTable(hourly_rates={vt: Decimal(amount) for vt in VehicleType})


class TestDuration(unittest.TestCase):

    def test_floors_to_whole_minutes(self):
        duration = calculate_duration(T0, T0 + timedelta(minutes=90, seconds=59))
        self.assertEqual(duration.total_minutes, 90)
        self.assertEqual((duration.hours, duration.minutes), (1, 30))

    def test_requires_positive_range(self):
        with self.assertRaises(InvalidTimeRangeError):
            calculate_duration(T0, T0)
        with self.assertRaises(InvalidTimeRangeError):
            calculate_duration(T0, T0 - timedelta(seconds=1))


class TestBillableHours(unittest.TestCase):

    def setUp(self):
        self.engine = CheckoutBillingEngine(billing_policy=BillingPolicy(grace_period_minutes=15))

    def test_grace_period_boundary(self):
        self.assertEqual(self.engine.calculate_billable_hours(15, True), 0)
        self.assertEqual(self.engine.calculate_billable_hours(16, True), 1)

    def test_grace_disabled_bills_minimum(self):
        self.assertEqual(self.engine.calculate_billable_hours(5, False), 1)
        self.assertEqual(self.engine.calculate_billable_hours(0, False), 1)

    def test_partial_hours_round_up(self):
        self.assertEqual(self.engine.calculate_billable_hours(61, False), 2)
        self.assertEqual(self.engine.calculate_billable_hours(120, False), 2)

    def test_rounding_rule_is_configurable(self):
        engine = CheckoutBillingEngine(billing_policy=BillingPolicy(round_up_partial_hours=False))
        self.assertEqual(engine.calculate_billable_hours(80, False), 1)
        self.assertEqual(engine.calculate_billable_hours(90, False), 2)


class TestCalculateCharge(unittest.TestCase):

    def test_ninety_minutes_bills_two_hours(self):
        engine = CheckoutBillingEngine(flat_rates("10.00"))
        result = engine.calculate_charge("standard", "hourly", T0, T0 + timedelta(minutes=90),
                                         apply_grace_period=True)
        self.assertEqual(result.billable_hours, 2)
        self.assertEqual(result.total.amount, Decimal("20.00"))

    def test_grace_period_bills_nothing(self):
        engine = CheckoutBillingEngine(flat_rates("10.00"))
        inside = engine.calculate_charge("standard", "hourly", T0, T0 + timedelta(minutes=15),
                                         apply_grace_period=True)
        outside = engine.calculate_charge("standard", "hourly", T0, T0 + timedelta(minutes=16),
                                          apply_grace_period=True)
        self.assertEqual(inside.total.amount, Decimal("0.00"))
        self.assertTrue(inside.within_grace_period)
        self.assertEqual(outside.total.amount, Decimal("10.00"))

    def test_default_grace_comes_from_policy(self):
        engine = CheckoutBillingEngine(
            flat_rates("10.00"), BillingPolicy(apply_grace_period_by_default=False)
        )
        result = engine.calculate_charge("standard", "hourly", T0, T0 + timedelta(minutes=10))
        self.assertFalse(result.grace_period_applied)
        self.assertEqual(result.total.amount, Decimal("10.00"))

    def test_rates_per_vehicle_type(self):
        engine = CheckoutBillingEngine()
        end = T0 + timedelta(hours=2)
        amounts = {
            vt: engine.calculate_charge(vt, RateType.HOURLY, T0, end).total.amount
            for vt in VehicleType
        }
        self.assertEqual(amounts, {
            VehicleType.COMPACT: Decimal("8.00"),
            VehicleType.STANDARD: Decimal("10.00"),
            VehicleType.OVERSIZED: Decimal("14.00"),
        })

    def test_daily_rate_is_discounted_and_capped(self):
        engine = CheckoutBillingEngine()
        result = engine.calculate_charge("standard", "daily", T0, T0 + timedelta(hours=10))
        self.assertEqual(result.rate_per_hour.amount, Decimal("4.00"))
        self.assertEqual(result.billable_hours, 8)
        self.assertTrue(result.hour_cap_applied)
        self.assertEqual(result.total.amount, Decimal("32.00"))

    def test_monthly_rate_cap(self):
        engine = CheckoutBillingEngine()
        result = engine.calculate_charge("standard", "monthly", T0, T0 + timedelta(hours=30))
        self.assertEqual(result.billable_hours, 24)
        self.assertEqual(result.total.amount, Decimal("72.00"))

    def test_discount_never_makes_total_negative(self):
        engine = CheckoutBillingEngine(flat_rates("5.00"))
        end = T0 + timedelta(minutes=130)
        for discount in ["15", "15.01", "100"]:
            result = engine.calculate_charge("compact", "hourly", T0, end,
                                             apply_grace_period=False, discount=discount)
            self.assertEqual(result.subtotal.amount, Decimal("15.00"))
            self.assertEqual(result.total.amount, Decimal("0.00"))

        partial = engine.calculate_charge("compact", "hourly", T0, end,
                                          apply_grace_period=False, discount="2.50")
        self.assertEqual(partial.total.amount, Decimal("12.50"))

    def test_invalid_range_raises(self):
        engine = CheckoutBillingEngine()
        with self.assertRaises(InvalidTimeRangeError):
            engine.calculate_charge("compact", "hourly", T0, T0 - timedelta(minutes=5))

    def test_policy_sources_resolved_per_call(self):
        current = {"policy": BillingPolicy(grace_period_minutes=15)}
        engine = CheckoutBillingEngine(flat_rates("10"), lambda: current["policy"])
        end = T0 + timedelta(minutes=20)
        self.assertEqual(engine.calculate_charge("compact", "hourly", T0, end).total.amount,
                         Decimal("10.00"))
        current["policy"] = BillingPolicy(grace_period_minutes=30)
        self.assertEqual(engine.calculate_charge("compact", "hourly", T0, end).total.amount,
                         Decimal("0.00"))


class TestEstimate(unittest.TestCase):

    def test_estimate_for_active_session(self):
        session = ParkingSession.start(Vehicle("ABC123", "standard"), "F1-B1-S1", T0)
        engine = CheckoutBillingEngine()
        self.assertIsNone(engine.estimate(session, T0))
        estimate = engine.estimate(session, T0 + timedelta(minutes=61))
        self.assertEqual(estimate.total.amount, Decimal("10.00"))


if __name__ == "__main__":
    unittest.main()
