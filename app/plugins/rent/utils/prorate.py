from __future__ import annotations
from dataclasses import dataclass
from datetime import date
from calendar import monthrange
from decimal import Decimal, ROUND_HALF_UP
from typing import Optional, Union

from utils.date_helper import validate_period
from utils.exceptions import InvalidCoverage, InvalidAmount

CENTS = Decimal("0.01")
TOLERANCE = Decimal("0.01")


def to_decimal(x) -> Decimal:
    if isinstance(x, Decimal):
        return x
    if hasattr(x, "to_decimal"):  # bson Decimal128
        return x.to_decimal()
    try:
        value = Decimal(str(x))
    except ArithmeticError as e:
        raise InvalidAmount(f"Not a valid amount: {x!r}") from e
    if not value.is_finite():
        raise InvalidAmount(f"Not a valid amount: {x!r}")
    return value


def to_cents(x) -> Decimal:
    return to_decimal(x).quantize(CENTS, rounding=ROUND_HALF_UP)


def days_in_month(year: int, month: int) -> int:
    validate_period(year, month)
    return monthrange(year, month)[1]


def daily_rate(monthly_rent, year: int, month: int) -> Decimal:
    """Unrounded per-day rate; summing it over the month gives back the rent."""
    return to_decimal(monthly_rent) / Decimal(days_in_month(year, month))


# ---------------- Coverage kinds ----------------

@dataclass(frozen=True)
class MoveIn:
    move_in: date


@dataclass(frozen=True)
class MoveOut:
    move_out: date


@dataclass(frozen=True)
class Days:
    days: int


@dataclass(frozen=True)
class Stay:
    move_in: date
    move_out: date


Coverage = Union[MoveIn, MoveOut, Days, Stay]


def _in_month(d: date, year: int, month: int) -> bool:
    return d.year == year and d.month == month


def covered_days(year: int, month: int, coverage: Coverage) -> int:
    dim = days_in_month(year, month)

    if isinstance(coverage, Days):
        days = int(coverage.days)
    elif isinstance(coverage, MoveIn):
        # move-in day counts as occupied
        if _in_month(coverage.move_in, year, month):
            days = dim - coverage.move_in.day + 1
        else:
            days = dim
    elif isinstance(coverage, MoveOut):
        if _in_month(coverage.move_out, year, month):
            days = coverage.move_out.day
        else:
            days = dim
    elif isinstance(coverage, Stay):
        if coverage.move_out < coverage.move_in:
            raise InvalidCoverage(
                f"Move-out {coverage.move_out} is before move-in {coverage.move_in}"
            )
        first = date(year, month, 1)
        last = date(year, month, dim)
        start = max(coverage.move_in, first)
        end = min(coverage.move_out, last)
        days = (end - start).days + 1
    else:
        raise InvalidCoverage(f"Unknown coverage: {coverage!r}")

    if days <= 0 or days > dim:
        raise InvalidCoverage(
            f"Days covered must be between 1 and {dim} for {year}-{month:02d}, got {days}",
            days=days,
        )
    return days


def prorated_amount(monthly_rent, year: int, month: int, coverage: Coverage) -> Decimal:
    """
    Rent owed for part of a month, rounded half-up to cents.

    Computed as rent * days / days_in_month so that a full month returns the
    monthly rent exactly.
    """
    days = covered_days(year, month, coverage)
    dim = days_in_month(year, month)
    amount = (to_decimal(monthly_rent) * days / Decimal(dim)).quantize(CENTS, rounding=ROUND_HALF_UP)
    if amount <= 0:
        raise InvalidCoverage(f"Prorated amount must be positive, got {amount}", days=days)
    return amount


def coverage_from_fields(
    days_covered: Optional[int] = None,
    move_in: Optional[date] = None,
    move_out: Optional[date] = None,
) -> Optional[Coverage]:
    """Pick the coverage described by ledger proration fields; explicit days win."""
    if days_covered is not None:
        return Days(days_covered)
    if move_in and move_out:
        return Stay(move_in, move_out)
    if move_in:
        return MoveIn(move_in)
    if move_out:
        return MoveOut(move_out)
    return None


def is_consistent(amount, monthly_rent, year: int, month: int, coverage: Coverage) -> bool:
    expected = prorated_amount(monthly_rent, year, month, coverage)
    return abs(to_decimal(amount) - expected) <= TOLERANCE
