from __future__ import annotations

from dataclasses import dataclass
from datetime import date

from rental_engine.services.errors import EquipmentUnavailable, InvalidDateRange

DAYS_PER_WEEK = 7
DAYS_PER_MONTH = 30


@dataclass(frozen=True)
class PriceBreakdown:
    days: int
    months: int
    weeks: int
    extra_days: int
    monthly_rate: int | None
    weekly_rate: int | None
    daily_rate: int
    rental_cost: int
    delivery_fee: int
    security_deposit: int
    total_amount: int

    def to_dict(self) -> dict:
        return {
            "days": self.days,
            "months": self.months,
            "weeks": self.weeks,
            "extraDays": self.extra_days,
            "monthlyRate": self.monthly_rate,
            "weeklyRate": self.weekly_rate,
            "dailyRate": self.daily_rate,
            "monthlyAmount": self.months * (self.monthly_rate or 0),
            "weeklyAmount": self.weeks * (self.weekly_rate or 0),
            "dailyAmount": self.extra_days * self.daily_rate,
            "rentalCost": self.rental_cost,
            "deliveryFee": self.delivery_fee,
            "securityDeposit": self.security_deposit,
            "totalAmount": self.total_amount,
        }


def rental_days(start_date: date, end_date: date) -> int:
    return (end_date - start_date).days + 1


def _tier_rate(raw_rate, unit_days: int, daily_rate: int) -> int | None:
    if raw_rate is None:
        return None
    rate = int(raw_rate)
    # A tier only applies when it undercuts paying the same days one by one.
    if rate <= 0 or rate >= unit_days * daily_rate:
        return None
    return rate


def _split_weeks(days: int, daily_rate: int, weekly_rate: int | None) -> tuple[int, int]:
    if weekly_rate is None:
        return 0, days
    weeks, extra_days = divmod(days, DAYS_PER_WEEK)
    if extra_days * daily_rate > weekly_rate:
        return weeks + 1, 0
    return weeks, extra_days


def price(equipment, start_date: date, end_date: date) -> tuple[int, PriceBreakdown]:
    days = rental_days(start_date, end_date)
    if days <= 0:
        raise InvalidDateRange("End date must be on or after the start date.")

    daily_rate = int(equipment.DailyRate or 0)
    if daily_rate <= 0:
        raise EquipmentUnavailable("This equipment has no daily rate configured.")
    weekly_rate = _tier_rate(equipment.WeeklyRate, DAYS_PER_WEEK, daily_rate)
    monthly_rate = _tier_rate(equipment.MonthlyRate, DAYS_PER_MONTH, daily_rate)

    if monthly_rate is not None:
        months, remainder = divmod(days, DAYS_PER_MONTH)
    else:
        months, remainder = 0, days
    weeks, extra_days = _split_weeks(remainder, daily_rate, weekly_rate)

    remainder_cost = weeks * (weekly_rate or 0) + extra_days * daily_rate
    if monthly_rate is not None and remainder_cost > monthly_rate:
        months, weeks, extra_days = months + 1, 0, 0

    rental_cost = months * (monthly_rate or 0) + weeks * (weekly_rate or 0) + extra_days * daily_rate
    delivery_fee = int(equipment.DeliveryFee or 0)
    security_deposit = int(equipment.SecurityDeposit or 0)
    total_amount = rental_cost + delivery_fee

    breakdown = PriceBreakdown(
        days=days,
        months=months,
        weeks=weeks,
        extra_days=extra_days,
        monthly_rate=monthly_rate,
        weekly_rate=weekly_rate,
        daily_rate=daily_rate,
        rental_cost=rental_cost,
        delivery_fee=delivery_fee,
        security_deposit=security_deposit,
        total_amount=total_amount,
    )
    return total_amount, breakdown
