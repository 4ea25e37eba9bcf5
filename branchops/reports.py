from __future__ import annotations

import logging
from collections import defaultdict
from dataclasses import replace
from datetime import datetime, timezone, tzinfo
from decimal import Decimal
from functools import partial
from typing import Any, Callable, Optional

from sqlalchemy.orm import Session

from branchops import aggregator
from branchops.calculator import (
    METRIC_FIELDS,
    ZERO,
    BranchMetricRow,
    money,
    percent_of,
    rank_rows,
    to_decimal,
    total_cash_variance,
)
from branchops.detector import (
    Thresholds,
    detect_cash_difference,
    detect_finance_mismatch,
    detect_wastage_anomalies,
    expected_finance_total,
    overall_status,
)
from branchops.errors import InvalidParameterError, NotFound
from branchops.fanout import run_parallel, unwrap_all
from branchops.models import FinanceReconciliation
from branchops.notifications import RECONCILIATION_COMPLETED, build_channels, dispatch
from branchops.scope import ReportScope

logger = logging.getLogger(__name__)

VIEWS = ("leaderboard", "comparison", "trends")
TOP_TREND_BRANCHES = 5
TOP_PRODUCTS = 20
TREND_DAYS = 30

SessionFactory = Callable[[], Session]


def _num(value: Any) -> float:
    return float(to_decimal(value))


def _money(value: Any) -> float:
    return float(money(value))


def _fan_out(tasks: dict, session_factory: SessionFactory, settings) -> dict:
    results = run_parallel(
        tasks,
        session_factory,
        timeout=settings.query_timeout_seconds,
        workers=settings.query_workers,
    )
    return unwrap_all(results)


def _metadata(scope: ReportScope, **extra: Any) -> dict:
    data = {
        "period": scope.period,
        "startDate": scope.start.isoformat(),
        "endDate": scope.end.isoformat(),
        "branchIds": scope.as_dict()["branch_ids"],
        "generatedAt": datetime.now(timezone.utc).isoformat(),
    }
    data.update(extra)
    return data


# Leaderboard


def _branch_dict(row: BranchMetricRow) -> dict:
    return {
        "id": row.branch_id,
        "name": row.name,
        "code": row.code,
        "city": row.city,
        "region": row.region,
    }


def _metrics_dict(row: BranchMetricRow) -> dict:
    return {
        "transaction_count": row.transaction_count,
        "total_sales": _money(row.total_sales),
        "net_sales": _money(row.net_sales),
        "avg_transaction": _money(row.avg_transaction),
        "unique_customers": row.unique_customers,
        "min_transaction": _money(row.min_transaction),
        "max_transaction": _money(row.max_transaction),
    }


def _ranked_dict(entry) -> dict:
    data = {
        "rank": entry.rank,
        "branch": _branch_dict(entry.row),
        "value": _num(entry.value),
        "gap_to_previous": _num(entry.gap_to_previous),
        "percentage_of_total": _num(entry.percentage_of_total),
    }
    data.update(_metrics_dict(entry.row))
    return data


def _stats_dict(stats: dict) -> dict:
    return {
        key: _money(value) if isinstance(value, Decimal) else value for key, value in stats.items()
    }


def _change(current: Any, previous: Any) -> Optional[float]:
    previous = to_decimal(previous)
    if previous == 0:
        return None
    return _money(percent_of(to_decimal(current) - previous, previous))


def _validate_leaderboard(metric: str, view: str, limit: int) -> None:
    if metric not in METRIC_FIELDS:
        raise InvalidParameterError(
            f"invalid metric: {metric}; expected one of {', '.join(METRIC_FIELDS)}"
        )
    if view not in VIEWS:
        raise InvalidParameterError(f"invalid view: {view}; expected one of {', '.join(VIEWS)}")
    if limit < 1:
        raise InvalidParameterError("limit must be at least 1")


def build_leaderboard(
    session_factory: SessionFactory,
    settings,
    tenant_id: int,
    scope: ReportScope,
    metric: str = "sales",
    view: str = "leaderboard",
    limit: int = 10,
) -> dict:
    _validate_leaderboard(metric, view, limit)
    if view == "comparison":
        return _comparison_view(session_factory, settings, tenant_id, scope, metric)
    if view == "trends":
        return _trends_view(session_factory, settings, tenant_id, scope, metric)

    values = _fan_out(
        {
            "leaderboard": partial(
                aggregator.leaderboard_rows, tenant_id=tenant_id, scope=scope, metric=metric
            ),
            "current": partial(aggregator.overall_sales_stats, tenant_id=tenant_id, scope=scope),
            "previous": partial(
                aggregator.overall_sales_stats, tenant_id=tenant_id, scope=scope.previous()
            ),
        },
        session_factory,
        settings,
    )
    ranked = [_ranked_dict(entry) for entry in rank_rows(values["leaderboard"], metric)[:limit]]
    current, previous = values["current"], values["previous"]
    return {
        "leaderboard": ranked,
        "topPerformer": ranked[0] if ranked else None,
        "topPerformers": {
            "highest": ranked[0] if ranked else None,
            "lowest": ranked[-1] if ranked else None,
        },
        "previousPeriod": {
            "current": _stats_dict(current),
            "previous": _stats_dict(previous),
            "startDate": scope.previous().start.isoformat(),
            "endDate": scope.previous().end.isoformat(),
            "salesChangePercentage": _change(current["total_sales"], previous["total_sales"]),
            "transactionChangePercentage": _change(
                current["total_transactions"], previous["total_transactions"]
            ),
        },
        "metadata": _metadata(scope, metric=metric, view="leaderboard", limit=limit),
    }


def _comparison_view(
    session_factory: SessionFactory, settings, tenant_id: int, scope: ReportScope, metric: str
) -> dict:
    values = _fan_out(
        {
            "branches": partial(
                aggregator.branch_sales_rows, tenant_id=tenant_id, scope=scope, include_idle=True
            ),
            "overall": partial(aggregator.overall_sales_stats, tenant_id=tenant_id, scope=scope),
        },
        session_factory,
        settings,
    )
    branches = [_ranked_dict(entry) for entry in rank_rows(values["branches"], metric)]
    return {
        "branches": branches,
        "overallStats": _stats_dict(values["overall"]),
        "metadata": _metadata(scope, metric=metric, view="comparison"),
    }


def _granularity(scope: ReportScope) -> str:
    if scope.period in ("today", "yesterday"):
        return "hour"
    if scope.period in ("quarter", "year"):
        return "month"
    return "day"


def _bucket(moment: datetime, granularity: str, tz: Optional[tzinfo]) -> str:
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    if tz is not None:
        moment = moment.astimezone(tz)
    if granularity == "hour":
        return moment.strftime("%Y-%m-%dT%H:00")
    if granularity == "month":
        return moment.strftime("%Y-%m")
    return moment.strftime("%Y-%m-%d")


def _bucket_value(points: list, metric: str) -> Decimal:
    if metric == "transactions":
        return Decimal(len(points))
    if metric == "customers":
        return Decimal(len({point.customer_id for point in points if point.customer_id is not None}))
    total = sum((point.total for point in points), ZERO)
    if metric == "avg_transaction":
        return money(total / len(points)) if points else ZERO
    return money(total)


def _trends_view(
    session_factory: SessionFactory, settings, tenant_id: int, scope: ReportScope, metric: str
) -> dict:
    values = _fan_out(
        {
            "rows": partial(
                aggregator.leaderboard_rows, tenant_id=tenant_id, scope=scope, metric=metric
            ),
            "points": partial(aggregator.sale_points, tenant_id=tenant_id, scope=scope),
        },
        session_factory,
        settings,
    )
    top = rank_rows(values["rows"], metric)[:TOP_TREND_BRANCHES]
    top_ids = {entry.row.branch_id for entry in top}
    granularity = _granularity(scope)

    buckets: dict[str, dict[int, list]] = defaultdict(lambda: defaultdict(list))
    for point in values["points"]:
        if point.branch_id in top_ids:
            buckets[_bucket(point.occurred_at, granularity, scope.start.tzinfo)][point.branch_id].append(point)

    chart_data = []
    for label in sorted(buckets):
        series = buckets[label]
        chart_data.append(
            {
                "period": label,
                "values": {
                    str(entry.row.branch_id): _num(_bucket_value(series.get(entry.row.branch_id, []), metric))
                    for entry in top
                },
            }
        )
    return {
        "chartData": chart_data,
        "topBranches": [_ranked_dict(entry) for entry in top],
        "metric": metric,
        "metadata": _metadata(scope, metric=metric, view="trends", granularity=granularity),
    }


# Reconciliation


def resolve_branches(
    session: Session, tenant_id: int, scope: ReportScope
) -> list[aggregator.BranchInfo]:
    if scope.all_branches:
        return aggregator.load_branches(session, tenant_id, scope)
    branches = aggregator.load_branches(session, tenant_id, scope, active_only=False)
    missing = sorted(set(scope.branch_ids) - {branch.id for branch in branches})
    if missing:
        raise NotFound(f"branch {missing[0]} not found")
    return branches


def _pos_dict(summary: aggregator.PosSummary) -> dict:
    return {
        "totalTransactions": summary.total_transactions,
        "totalSales": _money(summary.total_sales),
        "paymentBreakdown": {
            method: _money(amount) for method, amount in summary.payment_breakdown.items()
        },
        "tax": _money(summary.total_tax),
        "discount": _money(summary.total_discount),
    }


def _finance_list(entries: list, include_transactions: bool) -> list[dict]:
    groups = aggregator.group_ledger(entries)
    result = []
    for transaction_type in sorted(groups):
        group = groups[transaction_type]
        item = {"type": transaction_type, "count": group.count, "total": _money(group.total)}
        if include_transactions:
            item["transactions"] = [entry.to_dict() for entry in group.transactions]
        result.append(item)
    return result


def _ledger_total(entries: list) -> Decimal:
    return sum((group.total for group in aggregator.group_ledger(entries).values()), ZERO)


def _settlement_dict(line: aggregator.SettlementLine, branch_ids: set[int]) -> dict:
    outgoing = line.from_branch_id in branch_ids
    incoming = line.to_branch_id in branch_ids
    if outgoing and incoming:
        direction = "internal"
    else:
        direction = "outgoing" if outgoing else "incoming"
    return {
        "number": line.settlement_number,
        "type": line.settlement_type,
        "amount": _money(line.amount),
        "status": line.status,
        "date": line.settlement_date.isoformat(),
        "fromBranch": {"id": line.from_branch_id, "name": line.from_branch_name},
        "toBranch": {"id": line.to_branch_id, "name": line.to_branch_name},
        "direction": direction,
    }


def build_reconciliation(
    session: Session,
    session_factory: SessionFactory,
    settings,
    tenant_id: int,
    user_id: str,
    scope: ReportScope,
    include_transactions: bool = False,
) -> dict:
    """Compare POS sales, ledger totals and counted cash for every branch in scope.

    The run is persisted as an append-only snapshot together with the result
    of each notification channel. Channel failures are reported, not raised.
    """
    branches = resolve_branches(session, tenant_id, scope)
    branch_ids = {branch.id for branch in branches}
    scope = replace(scope, branch_ids=frozenset(branch_ids))
    thresholds = Thresholds.from_settings(settings)

    values = _fan_out(
        {
            "pos": partial(aggregator.pos_summaries, tenant_id=tenant_id, scope=scope),
            "ledger": partial(aggregator.ledger_entries, tenant_id=tenant_id, scope=scope),
            "shifts": partial(aggregator.shift_summaries, tenant_id=tenant_id, scope=scope),
            "settlements": partial(aggregator.settled_settlements, tenant_id=tenant_id, scope=scope),
        },
        session_factory,
        settings,
    )
    ledger_by_branch = aggregator.bucket_ledger_by_branch(values["ledger"])
    shifts_by_branch: dict[int, list] = defaultdict(list)
    for shift in values["shifts"]:
        shifts_by_branch[shift.branch_id].append(shift)

    pos_total = aggregator.PosSummary()
    discrepancies = []
    cash_branches = []
    for branch in branches:
        pos = values["pos"].get(branch.id, aggregator.PosSummary())
        pos_total = pos_total.merge(pos)
        shifts = shifts_by_branch.get(branch.id, [])
        expected_cash = sum((shift.expected_cash for shift in shifts), ZERO)
        actual_cash = sum((shift.final_cash for shift in shifts), ZERO)
        cash_difference = total_cash_variance(shifts)
        finance_total = _ledger_total(ledger_by_branch.get(branch.id, []))
        expected_total = expected_finance_total(pos.total_sales, pos.total_tax, pos.total_discount)

        for found in (
            detect_cash_difference(cash_difference, thresholds, branch.id),
            detect_finance_mismatch(finance_total, expected_total, thresholds, branch.id),
        ):
            if found is not None:
                discrepancies.append(found)
        cash_branches.append(
            {
                "branchId": branch.id,
                "branchName": branch.name,
                "branchCode": branch.code,
                "shiftCount": len(shifts),
                "expected": _money(expected_cash),
                "actual": _money(actual_cash),
                "difference": _money(cash_difference),
                "posSales": _money(pos.total_sales),
                "financeTotal": _money(finance_total),
            }
        )

    all_shifts = values["shifts"]
    finance_total = _ledger_total(values["ledger"])
    payable = sum(
        (line.amount for line in values["settlements"] if line.from_branch_id in branch_ids), ZERO
    )
    receivable = sum(
        (line.amount for line in values["settlements"] if line.to_branch_id in branch_ids), ZERO
    )
    status = overall_status(discrepancies)
    generated_at = datetime.now(timezone.utc)

    report = {
        "period": {
            "startDate": scope.start.isoformat(),
            "endDate": scope.end.isoformat(),
            "period": scope.period,
        },
        "branches": [branch.to_dict() for branch in branches],
        "posSummary": _pos_dict(pos_total),
        "financeSummary": _finance_list(values["ledger"], include_transactions),
        "cashReconciliation": {
            "expected": _money(sum((shift.expected_cash for shift in all_shifts), ZERO)),
            "actual": _money(sum((shift.final_cash for shift in all_shifts), ZERO)),
            "difference": _money(total_cash_variance(all_shifts)),
            "branches": cash_branches,
            "shifts": [shift.to_dict() for shift in all_shifts],
        },
        "interBranchSettlements": {
            "payable": _money(payable),
            "receivable": _money(receivable),
            "net": _money(receivable - payable),
            "transactions": [
                _settlement_dict(line, branch_ids) for line in values["settlements"]
            ],
        },
        "discrepancies": [item.to_dict() for item in discrepancies],
        "status": status,
        "generatedAt": generated_at.isoformat(),
    }

    single_branch = branches[0].id if len(branches) == 1 else None
    channels = build_channels(
        session, settings, tenant_id, single_branch, RECONCILIATION_COMPLETED, user_id
    )
    channel_results = [result.to_dict() for result in dispatch(channels, RECONCILIATION_COMPLETED, report)]

    record = FinanceReconciliation(
        tenant_id=tenant_id,
        branch_ids=sorted(branch_ids),
        start_date=scope.start,
        end_date=scope.end,
        pos_total=pos_total.total_sales,
        finance_total=finance_total,
        cash_expected=money(sum((shift.expected_cash for shift in all_shifts), ZERO)),
        cash_actual=money(sum((shift.final_cash for shift in all_shifts), ZERO)),
        cash_difference=money(total_cash_variance(all_shifts)),
        status=status,
        discrepancies=report["discrepancies"],
        channel_results=channel_results,
        created_by=user_id,
        created_at=generated_at,
    )
    session.add(record)
    session.commit()
    session.refresh(record)
    logger.info(
        "reconciliation %s for tenant %s branches=%s status=%s discrepancies=%d",
        record.id,
        tenant_id,
        sorted(branch_ids),
        status,
        len(discrepancies),
    )
    report["notifications"] = channel_results
    report["reconciliationId"] = record.id
    return report


def reconciliation_to_dict(record: FinanceReconciliation) -> dict:
    return {
        "reconciliation_id": record.id,
        "tenant_id": record.tenant_id,
        "branch_ids": record.branch_ids,
        "start_date": record.start_date.isoformat(),
        "end_date": record.end_date.isoformat(),
        "pos_total": _money(record.pos_total),
        "finance_total": _money(record.finance_total),
        "cash_expected": _money(record.cash_expected),
        "cash_actual": _money(record.cash_actual),
        "cash_difference": _money(record.cash_difference),
        "status": record.status,
        "discrepancies": record.discrepancies,
        "channel_results": record.channel_results or [],
        "created_by": record.created_by,
        "created_at": record.created_at.isoformat(),
    }


# Wastage


def _wastage_branch_dict(row: aggregator.BranchWastageRow) -> dict:
    return {
        "id": row.branch_id,
        "name": row.name,
        "code": row.code,
        "city": row.city,
        "waste_records": row.waste_records,
        "total_quantity": _num(row.total_quantity),
        "total_value": _money(row.total_value),
        "avg_value_per_record": _money(row.avg_value_per_record),
        "branch_sales": _money(row.branch_sales),
        "waste_percentage_of_sales": _money(row.waste_percentage_of_sales),
        "record_percentage": _money(row.record_percentage),
    }


def _plain(item: dict) -> dict:
    return {key: _num(value) if isinstance(value, Decimal) else value for key, value in item.items()}


def build_wastage_analysis(
    session_factory: SessionFactory,
    settings,
    tenant_id: int,
    scope: ReportScope,
    category_id: Optional[int] = None,
    product_id: Optional[int] = None,
    threshold: Optional[Any] = None,
) -> dict:
    threshold = to_decimal(settings.wastage_threshold_percent if threshold is None else threshold)
    if threshold < 0:
        raise InvalidParameterError("threshold must not be negative")
    filters = aggregator.wastage_filters(tenant_id, scope, category_id, product_id)
    values = _fan_out(
        {
            "summary": partial(aggregator.wastage_summary, filters=filters),
            "branches": partial(
                aggregator.branch_wastage_rows,
                tenant_id=tenant_id,
                scope=scope,
                category_id=category_id,
                product_id=product_id,
            ),
            "products": partial(aggregator.top_waste_products, filters=filters, limit=TOP_PRODUCTS),
            "categories": partial(aggregator.category_wastage, filters=filters),
            "trends": partial(aggregator.wastage_trend, filters=filters, days=TREND_DAYS),
            "by_type": partial(aggregator.wastage_by_type, filters=filters),
        },
        session_factory,
        settings,
    )
    branch_rows = values["branches"]
    products = values["products"]
    categories = values["categories"]
    summary = values["summary"]
    report = detect_wastage_anomalies(branch_rows, threshold)

    names = {row.branch_id: row for row in branch_rows}
    anomalies = []
    for item in report.anomalies:
        data = item.to_dict()
        row = names[item.branch_id]
        data.update(
            {
                "branchName": row.name,
                "branchCode": row.code,
                "wasteValue": _money(row.total_value),
                "branchSales": _money(row.branch_sales),
            }
        )
        anomalies.append(data)

    top_five_value = sum((product["total_value"] for product in products[:5]), ZERO)
    type_values = {
        waste_type: summary[f"{waste_type}_value"] for waste_type in aggregator.WASTE_TYPES
    }
    primary_type = max(type_values, key=lambda key: (type_values[key], key))
    highest_branch = branch_rows[0] if branch_rows and branch_rows[0].total_value > 0 else None

    return {
        "summary": {
            **_plain(summary),
            "potentialSavings": _money(top_five_value / 2),
            "anomalyThreshold": _money(report.cutoff),
            "avgWastePercentage": _money(report.average_percentage),
            "thresholdPercent": _num(threshold),
        },
        "branchComparison": [_wastage_branch_dict(row) for row in branch_rows],
        "anomalies": anomalies,
        "topProducts": [_plain(product) for product in products],
        "categoryBreakdown": [_plain(category) for category in categories],
        "trends": [_plain(point) for point in values["trends"]],
        "wasteByType": [_plain(item) for item in values["by_type"]],
        "insights": {
            "highestWasteBranch": _wastage_branch_dict(highest_branch) if highest_branch else None,
            "mostWastedProduct": _plain(products[0]) if products else None,
            "mostProblematicCategory": _plain(categories[0]) if categories else None,
            "primaryWasteType": primary_type if type_values[primary_type] > 0 else None,
            "totalAnomalies": len(anomalies),
        },
        "metadata": _metadata(
            scope, categoryId=category_id, productId=product_id, threshold=_num(threshold)
        ),
    }
