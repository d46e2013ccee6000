# File: src/parkcore/domain/billing.py
"""
Checkout Billing Engine

Pure fee computation: duration decomposition, grace period, billable
hour rounding, rate plan caps and discounts. Nothing here touches spot
or session state; the coordinator applies the result.
"""

from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal, ROUND_HALF_UP
from typing import Optional, Dict, Any
import math
import logging

from .models import (
    DurationBreakdown, Money, TimeRange, RateType, VehicleType,
)
from .policies import RateTable, BillingPolicy, PolicySource, resolve_policy


def calculate_duration(check_in: datetime, check_out: datetime) -> DurationBreakdown:
    """
    Whole minutes between check-in and check-out, floored

    Raises InvalidTimeRangeError unless check_out is strictly later.
    """
    span = TimeRange(check_in, check_out)
    return DurationBreakdown.from_minutes(int(span.total_seconds // 60))


@dataclass(frozen=True)
class BillingResult:
    """Everything needed to explain an amount due"""
    duration: DurationBreakdown
    billable_hours: int
    rate_per_hour: Money
    subtotal: Money
    discount: Money
    total: Money
    rate_type: RateType
    vehicle_type: VehicleType
    grace_period_applied: bool
    within_grace_period: bool
    hour_cap_applied: bool

    def to_dict(self) -> Dict[str, Any]:
        return {
            "duration": self.duration.to_dict(),
            "billable_hours": self.billable_hours,
            "rate_per_hour": float(self.rate_per_hour.amount),
            "subtotal": float(self.subtotal.amount),
            "discount": float(self.discount.amount),
            "total": float(self.total.amount),
            "currency": self.total.currency,
            "rate_type": self.rate_type.value,
            "vehicle_type": self.vehicle_type.value,
            "grace_period_applied": self.grace_period_applied,
            "within_grace_period": self.within_grace_period,
            "hour_cap_applied": self.hour_cap_applied,
        }


class CheckoutBillingEngine:
    """
    Computes the charge for a stay from a rate table and billing policy

    Both sources may be fixed values or callables returning the current
    value, so reloaded configuration takes effect on the next call.
    """

    def __init__(self, rate_table: PolicySource = None, billing_policy: PolicySource = None):
        self._rate_table = rate_table if rate_table is not None else RateTable()
        self._billing_policy = billing_policy if billing_policy is not None else BillingPolicy()
        self.logger = logging.getLogger(self.__class__.__name__)

    @property
    def rate_table(self) -> RateTable:
        return resolve_policy(self._rate_table)

    @property
    def billing_policy(self) -> BillingPolicy:
        return resolve_policy(self._billing_policy)

    def calculate_duration(self, check_in: datetime, check_out: datetime) -> DurationBreakdown:
        return calculate_duration(check_in, check_out)

    def calculate_billable_hours(
        self,
        total_minutes: int,
        apply_grace_period: Optional[bool] = None,
        policy: Optional[BillingPolicy] = None,
    ) -> int:
        """Hours to charge for, before any rate plan cap"""
        policy = policy or self.billing_policy
        if apply_grace_period is None:
            apply_grace_period = policy.apply_grace_period_by_default

        if apply_grace_period and total_minutes <= policy.grace_period_minutes:
            return 0

        if policy.round_up_partial_hours:
            hours = math.ceil(total_minutes / 60)
        else:
            hours = int((Decimal(total_minutes) / 60).quantize(Decimal('1'), rounding=ROUND_HALF_UP))
        return max(policy.minimum_billable_hours, hours)

    def calculate_charge(
        self,
        vehicle_type,
        rate_type,
        check_in_time: datetime,
        check_out_time: datetime,
        apply_grace_period: Optional[bool] = None,
        discount=None,
    ) -> BillingResult:
        """Price one stay; the total is never negative"""
        vehicle_type = VehicleType.parse(vehicle_type)
        rate_type = RateType.parse(rate_type)
        rates = self.rate_table
        policy = self.billing_policy
        if apply_grace_period is None:
            apply_grace_period = policy.apply_grace_period_by_default

        duration = calculate_duration(check_in_time, check_out_time)
        billable_hours = self.calculate_billable_hours(
            duration.total_minutes, apply_grace_period, policy
        )
        within_grace = apply_grace_period and billable_hours == 0

        cap = rates.hour_cap(rate_type)
        cap_applied = cap is not None and billable_hours > cap
        if cap_applied:
            billable_hours = cap

        rate = Money(rates.rate_per_hour(rate_type, vehicle_type), rates.currency)
        subtotal = rate * billable_hours
        discount_money = Money(Decimal(str(discount or 0)), rates.currency)
        total = subtotal.minus_floor_zero(discount_money)

        self.logger.debug(
            f"Charge for {vehicle_type.value}/{rate_type.value}: {duration.format()} -> "
            f"{billable_hours}h x {rate.format()} = {total.format()}"
        )
        return BillingResult(
            duration=duration,
            billable_hours=billable_hours,
            rate_per_hour=rate,
            subtotal=subtotal,
            discount=discount_money,
            total=total,
            rate_type=rate_type,
            vehicle_type=vehicle_type,
            grace_period_applied=apply_grace_period,
            within_grace_period=within_grace,
            hour_cap_applied=cap_applied,
        )

    def charge_for_session(self, session, check_out_time: datetime,
                           apply_grace_period: Optional[bool] = None, discount=None) -> BillingResult:
        return self.calculate_charge(
            session.vehicle_type, session.rate_type, session.check_in_time, check_out_time,
            apply_grace_period=apply_grace_period, discount=discount,
        )

    def estimate(self, session, now: Optional[datetime] = None) -> Optional[BillingResult]:
        """Live estimate for an active session; None before the first minute has started"""
        now = now or datetime.now()
        if now <= session.check_in_time:
            return None
        return self.charge_for_session(session, now)
