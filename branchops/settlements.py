from __future__ import annotations

import logging
from datetime import date, datetime, timezone
from decimal import Decimal
from typing import Any, Optional

from sqlalchemy import func, or_, select
from sqlalchemy.orm import Session, aliased

from branchops.calculator import money
from branchops.errors import InvalidParameterError, InvalidStateTransition, NotFound
from branchops.models import Branch, FinanceTransaction, InterBranchSettlement, SettlementHistory
from branchops.queries import Filters

logger = logging.getLogger(__name__)

SETTLEMENT_TYPES = (
    "cash_transfer",
    "stock_transfer_value",
    "expense_sharing",
    "revenue_sharing",
    "loan_repayment",
    "other",
)
REFERENCE_TYPES = ("inventory_transfer", "expense_report", "revenue_report", "manual", "other")
PAYMENT_METHODS = ("cash", "transfer", "bank_transfer", "offset")
STATUSES = ("pending", "approved", "paid", "cancelled", "overdue")

TRANSITIONS = {
    "pending": frozenset({"approved", "cancelled"}),
    "approved": frozenset({"paid", "cancelled"}),
    "overdue": frozenset({"paid", "cancelled"}),
    "paid": frozenset(),
    "cancelled": frozenset(),
}
ACTION_STATUS = {"approve": "approved", "pay": "paid", "cancel": "cancelled"}

LEDGER_REFERENCE = "inter_branch_settlement"


def target_status(current: str, action: str) -> str:
    if action not in ACTION_STATUS:
        raise InvalidParameterError(
            f"invalid action: {action}; expected one of {', '.join(ACTION_STATUS)}"
        )
    new_status = ACTION_STATUS[action]
    if new_status not in TRANSITIONS.get(current, frozenset()):
        raise InvalidStateTransition(action, current)
    return new_status


def allowed_actions(status: str) -> list[str]:
    return [
        action
        for action, new_status in ACTION_STATUS.items()
        if new_status in TRANSITIONS.get(status, frozenset())
    ]


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _iso(value: Any) -> Optional[str]:
    return value.isoformat() if value is not None else None


def snapshot(settlement: InterBranchSettlement) -> dict:
    return {
        "id": settlement.id,
        "settlement_number": settlement.settlement_number,
        "from_branch_id": settlement.from_branch_id,
        "to_branch_id": settlement.to_branch_id,
        "settlement_type": settlement.settlement_type,
        "amount": str(money(settlement.amount)),
        "currency": settlement.currency,
        "status": settlement.status,
        "approved_by": settlement.approved_by,
        "approved_at": _iso(settlement.approved_at),
        "paid_by": settlement.paid_by,
        "paid_at": _iso(settlement.paid_at),
        "payment_method": settlement.payment_method,
        "payment_reference": settlement.payment_reference,
        "notes": settlement.notes,
    }


def settlement_to_dict(
    settlement: InterBranchSettlement,
    from_branch_name: Optional[str] = None,
    to_branch_name: Optional[str] = None,
) -> dict:
    return {
        "settlement_id": settlement.id,
        "tenant_id": settlement.tenant_id,
        "settlement_number": settlement.settlement_number,
        "from_branch_id": settlement.from_branch_id,
        "from_branch_name": from_branch_name,
        "to_branch_id": settlement.to_branch_id,
        "to_branch_name": to_branch_name,
        "settlement_type": settlement.settlement_type,
        "amount": float(money(settlement.amount)),
        "currency": settlement.currency,
        "description": settlement.description,
        "reference_type": settlement.reference_type,
        "reference_id": settlement.reference_id,
        "settlement_date": _iso(settlement.settlement_date),
        "due_date": _iso(settlement.due_date),
        "status": settlement.status,
        "allowed_actions": allowed_actions(settlement.status),
        "approved_by": settlement.approved_by,
        "approved_at": _iso(settlement.approved_at),
        "paid_by": settlement.paid_by,
        "paid_at": _iso(settlement.paid_at),
        "payment_method": settlement.payment_method,
        "payment_reference": settlement.payment_reference,
        "notes": settlement.notes,
        "created_by": settlement.created_by,
        "created_at": _iso(settlement.created_at),
        "updated_at": _iso(settlement.updated_at),
    }


def history_to_dict(entry: SettlementHistory) -> dict:
    return {
        "history_id": entry.id,
        "action": entry.action,
        "previous_status": entry.previous_status,
        "new_value": entry.new_value,
        "notes": entry.notes,
        "user_id": entry.user_id,
        "ip_address": entry.ip_address,
        "user_agent": entry.user_agent,
        "created_at": _iso(entry.created_at),
    }


def next_settlement_number(session: Session, tenant_id: int, year: int) -> str:
    prefix = f"IBS-{year}-"
    numbers = session.scalars(
        select(InterBranchSettlement.settlement_number).where(
            InterBranchSettlement.tenant_id == tenant_id,
            InterBranchSettlement.settlement_number.like(f"{prefix}%"),
        )
    )
    last = 0
    for number in numbers:
        suffix = number[len(prefix):]
        if suffix.isdigit():
            last = max(last, int(suffix))
    return f"{prefix}{last + 1:04d}"


def _tenant_branches(session: Session, tenant_id: int, branch_ids: list[int]) -> dict[int, Branch]:
    branches = session.scalars(
        select(Branch).where(Branch.tenant_id == tenant_id, Branch.id.in_(branch_ids))
    )
    return {branch.id: branch for branch in branches}


def create_settlement(
    session: Session,
    tenant_id: int,
    user_id: str,
    from_branch_id: int,
    to_branch_id: int,
    settlement_type: str,
    amount: Decimal,
    description: Optional[str] = None,
    reference_type: str = "manual",
    reference_id: Optional[int] = None,
    settlement_date: Optional[datetime] = None,
    due_date: Optional[date] = None,
    notes: Optional[str] = None,
    currency: str = "IDR",
    ip_address: Optional[str] = None,
    user_agent: Optional[str] = None,
    now: Optional[datetime] = None,
) -> InterBranchSettlement:
    if from_branch_id == to_branch_id:
        raise InvalidParameterError("cannot create settlement for same branch")
    if settlement_type not in SETTLEMENT_TYPES:
        raise InvalidParameterError(f"invalid settlement_type: {settlement_type}")
    if reference_type not in REFERENCE_TYPES:
        raise InvalidParameterError(f"invalid reference_type: {reference_type}")
    amount = money(amount)
    if amount <= 0:
        raise InvalidParameterError("amount must be greater than 0")
    branches = _tenant_branches(session, tenant_id, [from_branch_id, to_branch_id])
    for branch_id in (from_branch_id, to_branch_id):
        if branch_id not in branches:
            raise NotFound(f"branch {branch_id} not found")

    now = now or _now()
    try:
        settlement = InterBranchSettlement(
            tenant_id=tenant_id,
            settlement_number=next_settlement_number(session, tenant_id, now.year),
            from_branch_id=from_branch_id,
            to_branch_id=to_branch_id,
            settlement_type=settlement_type,
            amount=amount,
            currency=currency,
            description=description,
            reference_type=reference_type,
            reference_id=reference_id,
            settlement_date=settlement_date or now,
            due_date=due_date,
            status="pending",
            notes=notes,
            created_by=user_id,
            created_at=now,
            updated_at=now,
        )
        session.add(settlement)
        session.flush()
        session.add(
            SettlementHistory(
                settlement_id=settlement.id,
                action="created",
                previous_status=None,
                new_value=snapshot(settlement),
                notes=notes,
                user_id=user_id,
                ip_address=ip_address,
                user_agent=user_agent,
                created_at=now,
            )
        )
        session.commit()
    except Exception:
        session.rollback()
        raise
    session.refresh(settlement)
    logger.info(
        "settlement %s created: %s -> %s amount=%s",
        settlement.settlement_number,
        from_branch_id,
        to_branch_id,
        amount,
    )
    return settlement


def _ledger_entries(
    settlement: InterBranchSettlement,
    from_branch: Branch,
    to_branch: Branch,
    user_id: str,
    payment_method: str,
    now: datetime,
) -> list[FinanceTransaction]:
    stamp = now.strftime("%Y%m%d")
    amount = money(settlement.amount)
    return [
        FinanceTransaction(
            tenant_id=settlement.tenant_id,
            branch_id=settlement.from_branch_id,
            transaction_number=f"PAY-{from_branch.code}-{stamp}-{settlement.id:04d}",
            transaction_date=now,
            transaction_type="expense",
            category="Inter-Branch Payment",
            amount=amount,
            payment_method=payment_method,
            description=f"Payment to {to_branch.name} - {settlement.settlement_number}",
            reference_type=LEDGER_REFERENCE,
            reference_id=settlement.id,
            created_by=user_id,
            created_at=now,
        ),
        FinanceTransaction(
            tenant_id=settlement.tenant_id,
            branch_id=settlement.to_branch_id,
            transaction_number=f"REC-{to_branch.code}-{stamp}-{settlement.id:04d}",
            transaction_date=now,
            transaction_type="income",
            category="Inter-Branch Receipt",
            amount=amount,
            payment_method=payment_method,
            description=f"Receipt from {from_branch.name} - {settlement.settlement_number}",
            reference_type=LEDGER_REFERENCE,
            reference_id=settlement.id,
            created_by=user_id,
            created_at=now,
        ),
    ]


def apply_action(
    session: Session,
    tenant_id: int,
    settlement_id: int,
    action: str,
    user_id: str,
    notes: Optional[str] = None,
    payment_method: Optional[str] = None,
    payment_reference: Optional[str] = None,
    ip_address: Optional[str] = None,
    user_agent: Optional[str] = None,
    now: Optional[datetime] = None,
) -> InterBranchSettlement:
    """Apply ``approve``, ``pay`` or ``cancel`` atomically.

    Rejected transitions raise before anything is written; any failure after
    that rolls back the status change, the ledger entries and the history row
    together.
    """
    if action not in ACTION_STATUS:
        raise InvalidParameterError(
            f"invalid action: {action}; expected one of {', '.join(ACTION_STATUS)}"
        )
    if payment_method is not None and payment_method not in PAYMENT_METHODS:
        raise InvalidParameterError(f"invalid paymentMethod: {payment_method}")
    now = now or _now()
    try:
        settlement = session.scalars(
            select(InterBranchSettlement)
            .where(
                InterBranchSettlement.id == settlement_id,
                InterBranchSettlement.tenant_id == tenant_id,
            )
            .with_for_update()
        ).first()
        if settlement is None:
            raise NotFound("settlement not found")
        previous = settlement.status
        try:
            new_status = target_status(previous, action)
        except InvalidStateTransition:
            logger.warning(
                "rejected %s on settlement %s in status %s", action, settlement.id, previous
            )
            raise

        settlement.status = new_status
        settlement.updated_at = now
        if notes is not None:
            settlement.notes = notes
        if action == "approve":
            settlement.approved_by = user_id
            settlement.approved_at = now
        elif action == "pay":
            method = payment_method or "transfer"
            settlement.paid_by = user_id
            settlement.paid_at = now
            settlement.payment_method = method
            settlement.payment_reference = payment_reference
            branches = _tenant_branches(
                session, tenant_id, [settlement.from_branch_id, settlement.to_branch_id]
            )
            session.add_all(
                _ledger_entries(
                    settlement,
                    branches[settlement.from_branch_id],
                    branches[settlement.to_branch_id],
                    user_id,
                    method,
                    now,
                )
            )
        session.add(
            SettlementHistory(
                settlement_id=settlement.id,
                action=new_status,
                previous_status=previous,
                new_value=snapshot(settlement),
                notes=notes,
                user_id=user_id,
                ip_address=ip_address,
                user_agent=user_agent,
                created_at=now,
            )
        )
        session.commit()
    except Exception:
        session.rollback()
        raise
    session.refresh(settlement)
    logger.info(
        "settlement %s %s -> %s by %s", settlement.settlement_number, previous, new_status, user_id
    )
    return settlement


def _named_settlements():
    from_branch = aliased(Branch)
    to_branch = aliased(Branch)
    stmt = (
        select(InterBranchSettlement, from_branch.name, to_branch.name)
        .join(from_branch, from_branch.id == InterBranchSettlement.from_branch_id)
        .join(to_branch, to_branch.id == InterBranchSettlement.to_branch_id)
    )
    return stmt, from_branch, to_branch


def list_settlements(
    session: Session,
    tenant_id: int,
    status: Optional[str] = None,
    from_branch_id: Optional[int] = None,
    to_branch_id: Optional[int] = None,
    settlement_type: Optional[str] = None,
    start: Optional[datetime] = None,
    end: Optional[datetime] = None,
    search: Optional[str] = None,
    limit: int = 20,
    cursor: Optional[int] = None,
) -> tuple[list[dict], Optional[int], dict]:
    ibs = InterBranchSettlement
    stmt, from_branch, to_branch = _named_settlements()
    filters = Filters().add(ibs.tenant_id == tenant_id)
    if status is not None and status != "all":
        if status not in STATUSES:
            raise InvalidParameterError(f"invalid status: {status}")
        filters.add(ibs.status == status)
    if settlement_type is not None and settlement_type not in SETTLEMENT_TYPES:
        raise InvalidParameterError(f"invalid settlement_type: {settlement_type}")
    filters.add_if(from_branch_id, lambda value: ibs.from_branch_id == value)
    filters.add_if(to_branch_id, lambda value: ibs.to_branch_id == value)
    filters.add_if(settlement_type, lambda value: ibs.settlement_type == value)
    filters.add_if(start, lambda value: ibs.settlement_date >= value)
    filters.add_if(end, lambda value: ibs.settlement_date <= value)
    if search:
        pattern = f"%{search}%"
        filters.add(
            or_(
                ibs.settlement_number.ilike(pattern),
                ibs.description.ilike(pattern),
                from_branch.name.ilike(pattern),
                to_branch.name.ilike(pattern),
            )
        )

    page_stmt = filters.apply(stmt)
    if cursor is not None:
        page_stmt = page_stmt.where(ibs.id > cursor)
    rows = session.execute(page_stmt.order_by(ibs.id).limit(limit + 1)).all()
    next_cursor = None
    if len(rows) > limit:
        next_cursor = rows[limit - 1][0].id
        rows = rows[:limit]

    summary_stmt = filters.apply(
        select(ibs.status, func.count(ibs.id), func.coalesce(func.sum(ibs.amount), 0))
        .join(from_branch, from_branch.id == ibs.from_branch_id)
        .join(to_branch, to_branch.id == ibs.to_branch_id)
    ).group_by(ibs.status)
    summary = {
        row_status: {"count": int(count), "total_amount": float(money(total))}
        for row_status, count, total in session.execute(summary_stmt).all()
    }
    data = [settlement_to_dict(settlement, from_name, to_name) for settlement, from_name, to_name in rows]
    return data, next_cursor, summary


def get_settlement(session: Session, tenant_id: int, settlement_id: int) -> dict:
    stmt, _, _ = _named_settlements()
    row = session.execute(
        stmt.where(
            InterBranchSettlement.id == settlement_id,
            InterBranchSettlement.tenant_id == tenant_id,
        )
    ).first()
    if row is None:
        raise NotFound("settlement not found")
    settlement, from_name, to_name = row
    history = session.scalars(
        select(SettlementHistory)
        .where(SettlementHistory.settlement_id == settlement.id)
        .order_by(SettlementHistory.created_at, SettlementHistory.id)
    )
    data = settlement_to_dict(settlement, from_name, to_name)
    data["history"] = [history_to_dict(entry) for entry in history]
    return data
