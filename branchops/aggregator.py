from __future__ import annotations

from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Optional

from sqlalchemy import and_, case, distinct, func, or_, select
from sqlalchemy.orm import Session, aliased

from branchops.calculator import (
    ZERO,
    BranchMetricRow,
    money,
    percent_of,
    shift_difference,
    to_decimal,
)
from branchops.models import (
    Branch,
    FinanceTransaction,
    InterBranchSettlement,
    PosTransaction,
    Product,
    ProductCategory,
    Shift,
    WastageRecord,
)
from branchops.queries import (
    Filters,
    branch_filters,
    completed_transactions,
    fetch_all,
    money_sum,
    scoped,
)
from branchops.scope import ReportScope

PAYMENT_METHODS = ("cash", "card", "ewallet", "transfer")
WASTE_TYPES = ("spoilage", "error", "theft", "expired")
SETTLED_STATUSES = ("approved", "paid")


@dataclass(frozen=True)
class BranchInfo:
    id: int
    name: str
    code: str
    city: Optional[str] = None
    region: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "code": self.code,
            "city": self.city,
            "region": self.region,
        }


def load_branches(
    session: Session, tenant_id: int, scope: ReportScope, active_only: bool = True
) -> list[BranchInfo]:
    stmt = branch_filters(tenant_id, scope, active_only).apply(
        select(Branch.id, Branch.name, Branch.code, Branch.city, Branch.region)
    ).order_by(Branch.id)
    return [
        BranchInfo(id=row.id, name=row.name, code=row.code, city=row.city, region=row.region)
        for row in fetch_all(session, stmt, "branches")
    ]


# Branch performance


def branch_sales_rows(
    session: Session, tenant_id: int, scope: ReportScope, include_idle: bool = False
) -> list[BranchMetricRow]:
    """One row per active branch in scope from completed transactions.

    Branches without qualifying transactions are dropped unless
    ``include_idle`` is set, in which case they come back zero-filled.
    """
    tx = PosTransaction
    join_on = and_(tx.branch_id == Branch.id, *completed_transactions(tenant_id, scope).predicates)
    stmt = (
        select(
            Branch.id,
            Branch.name,
            Branch.code,
            Branch.city,
            Branch.region,
            func.count(tx.id).label("transaction_count"),
            money_sum(tx.total).label("total_sales"),
            money_sum(tx.subtotal).label("net_sales"),
            func.coalesce(func.avg(tx.total), 0).label("avg_transaction"),
            func.count(distinct(tx.customer_id)).label("unique_customers"),
            func.coalesce(func.min(tx.total), 0).label("min_transaction"),
            func.coalesce(func.max(tx.total), 0).label("max_transaction"),
        )
        .select_from(Branch)
        .join(tx, join_on, isouter=include_idle)
        .group_by(Branch.id, Branch.name, Branch.code, Branch.city, Branch.region)
        .order_by(Branch.id)
    )
    stmt = branch_filters(tenant_id, scope).apply(stmt)
    if not include_idle:
        stmt = stmt.having(func.count(tx.id) > 0)
    return [
        BranchMetricRow(
            branch_id=row.id,
            name=row.name,
            code=row.code,
            city=row.city,
            region=row.region,
            transaction_count=int(row.transaction_count or 0),
            total_sales=money(row.total_sales),
            net_sales=money(row.net_sales),
            avg_transaction=money(row.avg_transaction),
            unique_customers=int(row.unique_customers or 0),
            min_transaction=money(row.min_transaction),
            max_transaction=money(row.max_transaction),
        )
        for row in fetch_all(session, stmt, "branch sales")
    ]


def leaderboard_rows(
    session: Session, tenant_id: int, scope: ReportScope, metric: str
) -> list[BranchMetricRow]:
    rows = branch_sales_rows(session, tenant_id, scope)
    if metric == "customers":
        rows = [row for row in rows if row.unique_customers > 0]
    return rows


def overall_sales_stats(session: Session, tenant_id: int, scope: ReportScope) -> dict:
    tx = PosTransaction
    stmt = completed_transactions(tenant_id, scope).apply(
        select(
            func.count(tx.id).label("total_transactions"),
            money_sum(tx.total).label("total_sales"),
            func.coalesce(func.avg(tx.total), 0).label("avg_transaction"),
            func.count(distinct(tx.customer_id)).label("total_customers"),
            func.count(distinct(tx.branch_id)).label("active_branches"),
        )
    )
    row = fetch_all(session, stmt, "overall sales")[0]
    return {
        "total_transactions": int(row.total_transactions or 0),
        "total_sales": money(row.total_sales),
        "avg_transaction": money(row.avg_transaction),
        "total_customers": int(row.total_customers or 0),
        "active_branches": int(row.active_branches or 0),
    }


@dataclass(frozen=True)
class SalePoint:
    branch_id: int
    occurred_at: datetime
    total: Decimal
    customer_id: Optional[int]


def sale_points(session: Session, tenant_id: int, scope: ReportScope) -> list[SalePoint]:
    tx = PosTransaction
    stmt = (
        completed_transactions(tenant_id, scope)
        .add(Branch.is_active.is_(True))
        .apply(
            select(tx.branch_id, tx.transaction_date, tx.total, tx.customer_id).join(
                Branch, Branch.id == tx.branch_id
            )
        )
        .order_by(tx.transaction_date, tx.id)
    )
    return [
        SalePoint(
            branch_id=row.branch_id,
            occurred_at=row.transaction_date,
            total=money(row.total),
            customer_id=row.customer_id,
        )
        for row in fetch_all(session, stmt, "sales trend")
    ]


# Reconciliation


@dataclass
class PosSummary:
    total_transactions: int = 0
    total_sales: Decimal = ZERO
    total_tax: Decimal = ZERO
    total_discount: Decimal = ZERO
    payment_breakdown: dict = field(
        default_factory=lambda: {method: ZERO for method in PAYMENT_METHODS}
    )

    def merge(self, other: "PosSummary") -> "PosSummary":
        return PosSummary(
            total_transactions=self.total_transactions + other.total_transactions,
            total_sales=self.total_sales + other.total_sales,
            total_tax=self.total_tax + other.total_tax,
            total_discount=self.total_discount + other.total_discount,
            payment_breakdown={
                method: self.payment_breakdown[method] + other.payment_breakdown[method]
                for method in PAYMENT_METHODS
            },
        )


def pos_summaries(
    session: Session, tenant_id: int, scope: ReportScope
) -> dict[int, PosSummary]:
    tx = PosTransaction
    method_sums = [
        money_sum(case((tx.payment_method == method, tx.total), else_=0)).label(method)
        for method in PAYMENT_METHODS
    ]
    stmt = (
        completed_transactions(tenant_id, scope)
        .apply(
            select(
                tx.branch_id,
                func.count(tx.id).label("total_transactions"),
                money_sum(tx.total).label("total_sales"),
                money_sum(tx.tax).label("total_tax"),
                money_sum(tx.discount).label("total_discount"),
                *method_sums,
            )
        )
        .group_by(tx.branch_id)
    )
    summaries = {}
    for row in fetch_all(session, stmt, "POS summary"):
        summaries[row.branch_id] = PosSummary(
            total_transactions=int(row.total_transactions or 0),
            total_sales=money(row.total_sales),
            total_tax=money(row.total_tax),
            total_discount=money(row.total_discount),
            payment_breakdown={
                method: money(getattr(row, method)) for method in PAYMENT_METHODS
            },
        )
    return summaries


@dataclass(frozen=True)
class LedgerEntry:
    branch_id: int
    transaction_type: str
    transaction_number: str
    transaction_date: datetime
    amount: Decimal
    category: Optional[str]
    payment_method: Optional[str]
    description: Optional[str]
    reference_type: Optional[str]
    reference_id: Optional[int]

    def to_dict(self) -> dict:
        return {
            "number": self.transaction_number,
            "date": self.transaction_date.isoformat(),
            "amount": float(self.amount),
            "category": self.category,
            "paymentMethod": self.payment_method,
            "description": self.description,
            "referenceType": self.reference_type,
            "referenceId": self.reference_id,
        }


def ledger_entries(session: Session, tenant_id: int, scope: ReportScope) -> list[LedgerEntry]:
    ft = FinanceTransaction
    stmt = (
        scoped(ft.tenant_id, ft.transaction_date, ft.branch_id, tenant_id, scope)
        .apply(select(ft))
        .order_by(ft.transaction_date.desc(), ft.id.desc())
    )
    return [
        LedgerEntry(
            branch_id=entry.branch_id,
            transaction_type=entry.transaction_type,
            transaction_number=entry.transaction_number,
            transaction_date=entry.transaction_date,
            amount=money(entry.amount),
            category=entry.category,
            payment_method=entry.payment_method,
            description=entry.description,
            reference_type=entry.reference_type,
            reference_id=entry.reference_id,
        )
        for (entry,) in fetch_all(session, stmt, "finance ledger")
    ]


@dataclass
class LedgerGroup:
    count: int = 0
    total: Decimal = ZERO
    transactions: list = field(default_factory=list)


def group_ledger(entries: list[LedgerEntry]) -> dict[str, LedgerGroup]:
    groups: dict[str, LedgerGroup] = {}
    for entry in entries:
        group = groups.setdefault(entry.transaction_type, LedgerGroup())
        group.count += 1
        group.total += entry.amount
        group.transactions.append(entry)
    return groups


@dataclass(frozen=True)
class ShiftSummary:
    branch_id: int
    shift_id: int
    shift_name: str
    shift_date: datetime
    opened_at: datetime
    closed_at: Optional[datetime]
    transaction_count: int
    total_sales: Decimal
    initial_cash: Decimal
    final_cash: Decimal
    expected_cash: Decimal
    opened_by: Optional[str]
    closed_by: Optional[str]

    @property
    def difference(self) -> Decimal:
        return shift_difference(self.final_cash, self.expected_cash)

    def to_dict(self) -> dict:
        return {
            "shiftId": self.shift_id,
            "branchId": self.branch_id,
            "shiftName": self.shift_name,
            "date": self.shift_date.isoformat(),
            "openedAt": self.opened_at.isoformat(),
            "closedAt": self.closed_at.isoformat() if self.closed_at else None,
            "transactions": self.transaction_count,
            "sales": float(self.total_sales),
            "initialCash": float(self.initial_cash),
            "finalCash": float(self.final_cash),
            "expectedCash": float(self.expected_cash),
            "difference": float(self.difference),
            "openedBy": self.opened_by,
            "closedBy": self.closed_by,
        }


def shift_summaries(session: Session, tenant_id: int, scope: ReportScope) -> list[ShiftSummary]:
    tx = PosTransaction
    join_on = and_(tx.shift_id == Shift.id, tx.status == "completed")
    stmt = (
        scoped(Shift.tenant_id, Shift.shift_date, Shift.branch_id, tenant_id, scope)
        .apply(
            select(
                Shift,
                func.count(tx.id).label("transaction_count"),
                money_sum(tx.total).label("total_sales"),
            )
            .select_from(Shift)
            .join(tx, join_on, isouter=True)
        )
        .group_by(Shift.id)
        .order_by(Shift.shift_date.desc(), Shift.id.desc())
    )
    return [
        ShiftSummary(
            branch_id=shift.branch_id,
            shift_id=shift.id,
            shift_name=shift.shift_name,
            shift_date=shift.shift_date,
            opened_at=shift.opened_at,
            closed_at=shift.closed_at,
            transaction_count=int(transaction_count or 0),
            total_sales=money(total_sales),
            initial_cash=money(shift.initial_cash_amount),
            final_cash=money(shift.final_cash_amount),
            expected_cash=money(shift.expected_cash_amount),
            opened_by=shift.opened_by,
            closed_by=shift.closed_by,
        )
        for shift, transaction_count, total_sales in fetch_all(session, stmt, "shifts")
    ]


@dataclass(frozen=True)
class SettlementLine:
    settlement_id: int
    settlement_number: str
    settlement_type: str
    amount: Decimal
    status: str
    settlement_date: datetime
    from_branch_id: int
    from_branch_name: Optional[str]
    to_branch_id: int
    to_branch_name: Optional[str]


def settled_settlements(
    session: Session, tenant_id: int, scope: ReportScope
) -> list[SettlementLine]:
    ibs = InterBranchSettlement
    from_branch = aliased(Branch)
    to_branch = aliased(Branch)
    filters = Filters().add(ibs.tenant_id == tenant_id)
    filters.add(ibs.settlement_date >= scope.start).add(ibs.settlement_date <= scope.end)
    filters.add(ibs.status.in_(SETTLED_STATUSES))
    if not scope.all_branches:
        ids = sorted(scope.branch_ids)
        filters.add(or_(ibs.from_branch_id.in_(ids), ibs.to_branch_id.in_(ids)))
    stmt = (
        filters.apply(
            select(ibs, from_branch.name, to_branch.name)
            .join(from_branch, from_branch.id == ibs.from_branch_id, isouter=True)
            .join(to_branch, to_branch.id == ibs.to_branch_id, isouter=True)
        )
        .order_by(ibs.settlement_date.desc(), ibs.id.desc())
    )
    return [
        SettlementLine(
            settlement_id=settlement.id,
            settlement_number=settlement.settlement_number,
            settlement_type=settlement.settlement_type,
            amount=money(settlement.amount),
            status=settlement.status,
            settlement_date=settlement.settlement_date,
            from_branch_id=settlement.from_branch_id,
            from_branch_name=from_name,
            to_branch_id=settlement.to_branch_id,
            to_branch_name=to_name,
        )
        for settlement, from_name, to_name in fetch_all(session, stmt, "settlements")
    ]


# Wastage


def _waste_value():
    return WastageRecord.quantity * WastageRecord.cost_per_unit


def wastage_filters(
    tenant_id: int,
    scope: ReportScope,
    category_id: Optional[int] = None,
    product_id: Optional[int] = None,
) -> Filters:
    w = WastageRecord
    filters = scoped(w.tenant_id, w.waste_date, w.branch_id, tenant_id, scope)
    filters.add_if(
        category_id,
        lambda value: w.product_id.in_(select(Product.id).where(Product.category_id == value)),
    )
    filters.add_if(product_id, lambda value: w.product_id == value)
    return filters


def wastage_summary(session: Session, filters: Filters) -> dict:
    w = WastageRecord
    value = _waste_value()
    type_sums = [
        money_sum(case((w.waste_type == waste_type, value), else_=0)).label(f"{waste_type}_value")
        for waste_type in WASTE_TYPES
    ]
    stmt = filters.apply(
        select(
            func.count(w.id).label("total_waste_records"),
            func.count(distinct(w.branch_id)).label("branches_with_waste"),
            money_sum(w.quantity).label("total_waste_quantity"),
            money_sum(value).label("total_waste_value"),
            func.coalesce(func.avg(value), 0).label("avg_waste_value"),
            *type_sums,
        )
    )
    row = fetch_all(session, stmt, "wastage summary")[0]
    summary = {
        "total_waste_records": int(row.total_waste_records or 0),
        "branches_with_waste": int(row.branches_with_waste or 0),
        "total_waste_quantity": to_decimal(row.total_waste_quantity),
        "total_waste_value": money(row.total_waste_value),
        "avg_waste_value": money(row.avg_waste_value),
    }
    for waste_type in WASTE_TYPES:
        summary[f"{waste_type}_value"] = money(getattr(row, f"{waste_type}_value"))
    return summary


@dataclass
class BranchWastageRow:
    branch_id: int
    name: str
    code: str
    city: Optional[str]
    waste_records: int
    total_quantity: Decimal
    total_value: Decimal
    avg_value_per_record: Decimal
    branch_sales: Decimal
    waste_percentage_of_sales: Decimal = ZERO
    record_percentage: Decimal = ZERO


def branch_wastage_rows(
    session: Session,
    tenant_id: int,
    scope: ReportScope,
    category_id: Optional[int] = None,
    product_id: Optional[int] = None,
) -> list[BranchWastageRow]:
    w = WastageRecord
    value = _waste_value()
    waste_join = and_(
        w.branch_id == Branch.id,
        *wastage_filters(tenant_id, scope, category_id, product_id).predicates,
    )
    stmt = (
        select(
            Branch.id,
            Branch.name,
            Branch.code,
            Branch.city,
            func.count(w.id).label("waste_records"),
            money_sum(w.quantity).label("total_quantity"),
            money_sum(value).label("total_value"),
            func.coalesce(func.avg(value), 0).label("avg_value"),
        )
        .select_from(Branch)
        .outerjoin(w, waste_join)
        .group_by(Branch.id, Branch.name, Branch.code, Branch.city)
        .order_by(Branch.id)
    )
    stmt = branch_filters(tenant_id, scope).apply(stmt)
    waste_rows = fetch_all(session, stmt, "branch wastage")

    tx = PosTransaction
    sales_stmt = (
        completed_transactions(tenant_id, scope)
        .apply(select(tx.branch_id, money_sum(tx.total).label("total_sales")))
        .group_by(tx.branch_id)
    )
    sales = {
        row.branch_id: money(row.total_sales)
        for row in fetch_all(session, sales_stmt, "branch sales")
    }

    total_records = sum(int(row.waste_records or 0) for row in waste_rows)
    rows = []
    for row in waste_rows:
        branch_sales = sales.get(row.id, ZERO)
        total_value = money(row.total_value)
        records = int(row.waste_records or 0)
        rows.append(
            BranchWastageRow(
                branch_id=row.id,
                name=row.name,
                code=row.code,
                city=row.city,
                waste_records=records,
                total_quantity=to_decimal(row.total_quantity),
                total_value=total_value,
                avg_value_per_record=money(row.avg_value),
                branch_sales=branch_sales,
                waste_percentage_of_sales=percent_of(total_value, branch_sales),
                record_percentage=money(percent_of(records, total_records)),
            )
        )
    rows.sort(key=lambda item: (-item.total_value, item.branch_id))
    return rows


def top_waste_products(session: Session, filters: Filters, limit: int = 20) -> list[dict]:
    w = WastageRecord
    value = _waste_value()
    stmt = (
        filters.apply(
            select(
                Product.id,
                Product.name,
                Product.sku,
                ProductCategory.name.label("category_name"),
                w.waste_type,
                func.count(w.id).label("waste_count"),
                money_sum(w.quantity).label("total_quantity"),
                money_sum(value).label("total_value"),
                func.coalesce(func.avg(w.cost_per_unit), 0).label("avg_cost"),
            )
            .select_from(w)
            .join(Product, Product.id == w.product_id)
            .outerjoin(ProductCategory, ProductCategory.id == Product.category_id)
        )
        .group_by(Product.id, Product.name, Product.sku, ProductCategory.name, w.waste_type)
        .order_by(money_sum(value).desc(), Product.id)
        .limit(limit)
    )
    rows = fetch_all(session, stmt, "top wasted products")
    total_count = fetch_all(
        session,
        filters.apply(select(func.count(w.id))),
        "wastage count",
    )[0][0]
    return [
        {
            "id": row.id,
            "name": row.name,
            "sku": row.sku,
            "category_name": row.category_name,
            "waste_type": row.waste_type,
            "waste_count": int(row.waste_count),
            "total_quantity": to_decimal(row.total_quantity),
            "total_value": money(row.total_value),
            "avg_cost": money(row.avg_cost),
            "frequency_percentage": money(percent_of(row.waste_count, total_count or 0)),
        }
        for row in rows
    ]


def category_wastage(session: Session, filters: Filters) -> list[dict]:
    w = WastageRecord
    value = _waste_value()
    stmt = (
        filters.apply(
            select(
                ProductCategory.id,
                ProductCategory.name,
                func.count(w.id).label("waste_count"),
                money_sum(w.quantity).label("total_quantity"),
                money_sum(value).label("total_value"),
                func.count(distinct(w.product_id)).label("affected_products"),
                func.count(distinct(w.branch_id)).label("affected_branches"),
            )
            .select_from(w)
            .join(Product, Product.id == w.product_id)
            .join(ProductCategory, ProductCategory.id == Product.category_id)
        )
        .group_by(ProductCategory.id, ProductCategory.name)
        .order_by(money_sum(value).desc(), ProductCategory.id)
    )
    return [
        {
            "id": row.id,
            "name": row.name,
            "waste_count": int(row.waste_count),
            "total_quantity": to_decimal(row.total_quantity),
            "total_value": money(row.total_value),
            "affected_products": int(row.affected_products),
            "affected_branches": int(row.affected_branches),
        }
        for row in fetch_all(session, stmt, "category wastage")
    ]


def wastage_trend(session: Session, filters: Filters, days: int = 30) -> list[dict]:
    w = WastageRecord
    value = _waste_value()
    day = func.date(w.waste_date)
    stmt = (
        filters.apply(
            select(
                day.label("date"),
                func.count(w.id).label("record_count"),
                money_sum(value).label("daily_value"),
                func.count(distinct(w.branch_id)).label("branches_affected"),
            )
        )
        .group_by(day)
        .order_by(day.desc())
        .limit(days)
    )
    return [
        {
            "date": str(row.date),
            "record_count": int(row.record_count),
            "daily_value": money(row.daily_value),
            "branches_affected": int(row.branches_affected),
        }
        for row in fetch_all(session, stmt, "wastage trend")
    ]


def wastage_by_type(session: Session, filters: Filters) -> list[dict]:
    w = WastageRecord
    value = _waste_value()
    stmt = (
        filters.apply(
            select(
                w.waste_type,
                w.reason,
                func.count(w.id).label("count"),
                money_sum(value).label("total_value"),
                func.coalesce(func.avg(value), 0).label("avg_value"),
            )
        )
        .group_by(w.waste_type, w.reason)
        .order_by(money_sum(value).desc(), w.waste_type)
    )
    return [
        {
            "waste_type": row.waste_type,
            "reason": row.reason,
            "count": int(row.count),
            "total_value": money(row.total_value),
            "avg_value": money(row.avg_value),
        }
        for row in fetch_all(session, stmt, "wastage by type")
    ]


def bucket_ledger_by_branch(entries: list[LedgerEntry]) -> dict[int, list[LedgerEntry]]:
    buckets: dict[int, list[LedgerEntry]] = defaultdict(list)
    for entry in entries:
        buckets[entry.branch_id].append(entry)
    return buckets
