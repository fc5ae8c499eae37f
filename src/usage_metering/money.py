"""
Fixed-point credit arithmetic and the billing constants of the metering engine.

Every balance or usage figure is a ``Decimal`` with two fraction digits. Values
are quantized on every mutation so thousands of small ticks never accumulate
binary floating point error.
"""

from __future__ import annotations

import math
from decimal import ROUND_HALF_UP, Decimal
from typing import Union

CreditAmount = Union[Decimal, int, float, str]

CENT = Decimal("0.01")
ZERO = Decimal("0.00")

# 1 credit buys 60 seconds of translation.
SECONDS_PER_CREDIT = 60
TICK_SECONDS = 3
TICK_CHARGE = Decimal("0.05")

# Charged at start even if the session is stopped before the first tick.
MINIMUM_SESSION_SECONDS = TICK_SECONDS
MINIMUM_SESSION_CHARGE = TICK_CHARGE
MINIMUM_START_BALANCE = TICK_CHARGE


def to_credits(value: CreditAmount) -> Decimal:
    """Convert ``value`` to a 2-digit credit amount, rounding half up."""
    if isinstance(value, float):
        # go through repr so 0.1 becomes Decimal("0.1")
        value = str(value)
    return Decimal(value).quantize(CENT, rounding=ROUND_HALF_UP)


def credits_for_seconds(seconds: int) -> Decimal:
    return to_credits(Decimal(seconds) / Decimal(SECONDS_PER_CREDIT))


def whole_seconds_between(start, end) -> int:
    """Elapsed whole seconds between two datetimes, never negative."""
    elapsed = (end - start).total_seconds()
    if elapsed <= 0:
        return 0
    return int(math.floor(elapsed))
