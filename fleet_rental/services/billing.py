import math
from datetime import datetime
from decimal import ROUND_HALF_UP, Decimal
from typing import Union

MIN_BILLABLE_DAYS = 1
HOURS_PER_DAY = 24
SECONDS_PER_HOUR = 3600
CENTS = Decimal("0.01")


def elapsed_hours(rent_time: datetime, return_time: datetime) -> int:
    """Whole hours between rent and return; partial hours are dropped."""
    return int((return_time - rent_time).total_seconds() // SECONDS_PER_HOUR)


def billable_days(rent_time: datetime, return_time: datetime) -> int:
    """
    Days charged for a rental.

    Elapsed time is counted in whole hours (partial hours are dropped), then
    rounded up to full days, with a one-day minimum: 1 minute -> 1 day,
    24h -> 1 day, 25h -> 2 days.
    """
    hours = elapsed_hours(rent_time, return_time)
    days = math.ceil(hours / HOURS_PER_DAY)
    return max(days, MIN_BILLABLE_DAYS)


def rental_cost(days: int, rent_per_day: Union[Decimal, int, str]) -> Decimal:
    return (Decimal(days) * Decimal(str(rent_per_day))).quantize(CENTS, rounding=ROUND_HALF_UP)
