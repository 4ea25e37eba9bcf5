from __future__ import annotations

from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Iterable, Optional, Sequence

CENT = Decimal("0.01")
ZERO = Decimal("0")
HUNDRED = Decimal("100")

METRIC_FIELDS = {
    "sales": "total_sales",
    "transactions": "transaction_count",
    "customers": "unique_customers",
    "avg_transaction": "avg_transaction",
}


def to_decimal(value: Any) -> Decimal:
    if value is None:
        return ZERO
    if isinstance(value, Decimal):
        return value
    if isinstance(value, float):
        return Decimal(repr(value))
    return Decimal(value)


def money(value: Any) -> Decimal:
    return to_decimal(value).quantize(CENT, rounding=ROUND_HALF_UP)


def percent_of(part: Any, whole: Any) -> Decimal:
    whole = to_decimal(whole)
    if whole == 0:
        return ZERO
    return HUNDRED * to_decimal(part) / whole


def average(values: Iterable[Any]) -> Decimal:
    items = [to_decimal(value) for value in values]
    if not items:
        return ZERO
    return sum(items, ZERO) / len(items)


@dataclass
class BranchMetricRow:
    branch_id: int
    name: str
    code: str
    city: Optional[str] = None
    region: Optional[str] = None
    transaction_count: int = 0
    total_sales: Decimal = ZERO
    net_sales: Decimal = ZERO
    avg_transaction: Decimal = ZERO
    unique_customers: int = 0
    min_transaction: Decimal = ZERO
    max_transaction: Decimal = ZERO

    def value(self, metric: str) -> Decimal:
        return to_decimal(getattr(self, METRIC_FIELDS[metric]))


@dataclass
class RankedEntry:
    row: BranchMetricRow
    rank: int
    value: Decimal
    gap_to_previous: Decimal
    percentage_of_total: Decimal = ZERO


def rank_rows(rows: Sequence[BranchMetricRow], metric: str) -> list[RankedEntry]:
    if metric not in METRIC_FIELDS:
        raise ValueError(f"unknown metric: {metric}")
    ordered = sorted(rows, key=lambda row: (-row.value(metric), row.branch_id))
    shares = percentages_of_total([row.value(metric) for row in ordered])
    ranked: list[RankedEntry] = []
    previous: Optional[Decimal] = None
    for index, row in enumerate(ordered):
        value = row.value(metric)
        gap = ZERO if previous is None else previous - value
        ranked.append(
            RankedEntry(
                row=row,
                rank=index + 1,
                value=value,
                gap_to_previous=gap,
                percentage_of_total=shares[index],
            )
        )
        previous = value
    return ranked


def percentages_of_total(values: Sequence[Any]) -> list[Decimal]:
    total = sum((to_decimal(value) for value in values), ZERO)
    if total == 0:
        return [Decimal("0.00") for _ in values]
    return [
        percent_of(value, total).quantize(CENT, rounding=ROUND_HALF_UP) for value in values
    ]


def shift_difference(final_cash: Any, expected_cash: Any) -> Decimal:
    return money(final_cash) - money(expected_cash)


def total_cash_variance(shifts: Iterable[Any]) -> Decimal:
    return sum(
        (shift_difference(shift.final_cash, shift.expected_cash) for shift in shifts), ZERO
    )
