from __future__ import annotations

from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Iterable, Optional, Sequence

from branchops.calculator import CENT, HUNDRED, average, money, to_decimal

BALANCED = "balanced"
MINOR_ISSUES = "minor_issues"
REQUIRES_ATTENTION = "requires_attention"

ESCALATING_SEVERITIES = {"high", "critical"}


@dataclass(frozen=True)
class Thresholds:
    cash_difference: Decimal = Decimal("1000")
    cash_high_multiplier: Decimal = Decimal("10")
    finance_tolerance: Decimal = Decimal("100")
    wastage_percent: Decimal = Decimal("10")

    @classmethod
    def from_settings(cls, settings) -> "Thresholds":
        return cls(
            cash_difference=to_decimal(settings.cash_difference_threshold),
            cash_high_multiplier=to_decimal(settings.cash_high_severity_multiplier),
            finance_tolerance=to_decimal(settings.finance_mismatch_tolerance),
            wastage_percent=to_decimal(settings.wastage_threshold_percent),
        )


@dataclass
class Discrepancy:
    type: str
    severity: str
    difference: Decimal
    threshold: Decimal
    description: str
    branch_id: Optional[int] = None
    expected: Optional[Decimal] = None
    actual: Optional[Decimal] = None
    details: dict = field(default_factory=dict)

    def to_dict(self) -> dict:
        data = {
            "type": self.type,
            "severity": self.severity,
            "difference": float(self.difference),
            "threshold": float(self.threshold),
            "description": self.description,
            "branchId": self.branch_id,
        }
        if self.expected is not None:
            data["expected"] = float(self.expected)
        if self.actual is not None:
            data["actual"] = float(self.actual)
        data.update(self.details)
        return data


def detect_cash_difference(
    difference: Any, thresholds: Thresholds, branch_id: Optional[int] = None
) -> Optional[Discrepancy]:
    difference = money(difference)
    magnitude = abs(difference)
    if magnitude <= thresholds.cash_difference:
        return None
    high_cutoff = thresholds.cash_difference * thresholds.cash_high_multiplier
    return Discrepancy(
        type="cash_difference",
        severity="high" if magnitude > high_cutoff else "medium",
        difference=difference,
        threshold=thresholds.cash_difference,
        description=f"Significant cash difference of {difference:,.2f}",
        branch_id=branch_id,
    )


def expected_finance_total(total_sales: Any, total_tax: Any, total_discount: Any) -> Decimal:
    return money(total_sales) + money(total_tax) - money(total_discount)


def detect_finance_mismatch(
    finance_total: Any,
    expected_total: Any,
    thresholds: Thresholds,
    branch_id: Optional[int] = None,
) -> Optional[Discrepancy]:
    actual = money(finance_total)
    expected = money(expected_total)
    difference = actual - expected
    if abs(difference) <= thresholds.finance_tolerance:
        return None
    return Discrepancy(
        type="finance_mismatch",
        severity="high",
        difference=difference,
        threshold=thresholds.finance_tolerance,
        description="Finance transactions don't match POS sales",
        branch_id=branch_id,
        expected=expected,
        actual=actual,
    )


@dataclass
class WastageAnomalyReport:
    average_percentage: Decimal
    cutoff: Decimal
    anomalies: list[Discrepancy]


def detect_wastage_anomalies(
    rows: Sequence[Any], threshold_percent: Any
) -> WastageAnomalyReport:
    """Flag branches whose waste-as-%-of-sales exceeds the cohort cutoff.

    ``rows`` need ``branch_id``, ``waste_percentage_of_sales`` and
    ``total_value``. The cutoff is ``average * (1 + threshold/100)``; a
    branch is flagged when strictly above it with a nonzero waste value, and
    is ``critical`` beyond twice the cutoff. A zero cohort average flags
    nothing.
    """
    avg = average(row.waste_percentage_of_sales for row in rows)
    cutoff = avg * (1 + to_decimal(threshold_percent) / HUNDRED)
    anomalies: list[Discrepancy] = []
    if avg <= 0:
        return WastageAnomalyReport(average_percentage=avg, cutoff=cutoff, anomalies=anomalies)
    for row in rows:
        actual = to_decimal(row.waste_percentage_of_sales)
        if actual <= cutoff or to_decimal(row.total_value) <= 0:
            continue
        deviation = HUNDRED * (actual - avg) / avg
        anomalies.append(
            Discrepancy(
                type="high_wastage",
                severity="critical" if actual > cutoff * 2 else "warning",
                difference=deviation.quantize(CENT),
                threshold=cutoff.quantize(CENT),
                description=f"Waste is {actual.quantize(CENT)}% of sales against a cutoff of {cutoff.quantize(CENT)}%",
                branch_id=row.branch_id,
                actual=actual.quantize(CENT),
                details={"deviation": float(deviation.quantize(CENT))},
            )
        )
    return WastageAnomalyReport(average_percentage=avg, cutoff=cutoff, anomalies=anomalies)


def overall_status(discrepancies: Iterable[Discrepancy]) -> str:
    items = list(discrepancies)
    if not items:
        return BALANCED
    if any(item.severity in ESCALATING_SEVERITIES for item in items):
        return REQUIRES_ATTENTION
    return MINOR_ISSUES
