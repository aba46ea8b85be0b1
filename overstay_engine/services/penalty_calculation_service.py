"""
Penalty Calculation Service

Converts days overdue and an effective configuration into a penalty amount.
"""

from decimal import Decimal, ROUND_HALF_UP
from typing import Union

from overstay_engine.schemas.overstay import PenaltyCalculation

Number = Union[int, float, str, Decimal]


class PenaltyCalculationService:
    """Pure penalty arithmetic, no database access"""

    @staticmethod
    def penalty_days(days_overdue: int, grace_period_days: int, max_penalty_days: int) -> int:
        """Days that accrue a penalty: past the grace period, capped at the maximum"""
        return max(0, min(days_overdue - grace_period_days, max_penalty_days))

    @staticmethod
    def daily_penalty_charge_cents(daily_rate_cents: int, penalty_rate: Number) -> int:
        """Daily rate plus the surcharge, rounded half-up to whole cents"""
        # Rounded per day (not on the total) so every day's charge is the same in audits
        charge = Decimal(daily_rate_cents) * (Decimal('1') + Decimal(str(penalty_rate)))
        return int(charge.quantize(Decimal('1'), rounding=ROUND_HALF_UP))

    @staticmethod
    def calculate(
        days_overdue: int,
        grace_period_days: int,
        daily_rate_cents: int,
        penalty_rate: Number,
        max_penalty_days: int
    ) -> PenaltyCalculation:
        """
        Calculate the overstay penalty.

        Example: 5 days overdue, 3 grace days, 2000 cents/day, 10% surcharge
        -> 2 penalty days at 2200 cents = 4400 cents.
        """
        penalty_days = PenaltyCalculationService.penalty_days(
            days_overdue, grace_period_days, max_penalty_days
        )
        daily_charge = PenaltyCalculationService.daily_penalty_charge_cents(
            daily_rate_cents, penalty_rate
        )

        return PenaltyCalculation(
            penalty_days=penalty_days,
            daily_penalty_charge_cents=daily_charge,
            calculated_penalty_cents=daily_charge * penalty_days
        )
