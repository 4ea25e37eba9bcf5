from __future__ import annotations

import logging
from typing import Any, Callable

from sqlalchemy import Select, func
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from branchops.errors import DataUnavailable
from branchops.models import Branch, PosTransaction
from branchops.scope import ReportScope

logger = logging.getLogger(__name__)


class Filters:
    def __init__(self) -> None:
        self._predicates: list[Any] = []

    def add(self, predicate: Any) -> "Filters":
        self._predicates.append(predicate)
        return self

    def add_if(self, value: Any, build: Callable[[Any], Any]) -> "Filters":
        if value is not None:
            self._predicates.append(build(value))
        return self

    @property
    def predicates(self) -> list[Any]:
        return list(self._predicates)

    def apply(self, stmt: Select) -> Select:
        if not self._predicates:
            return stmt
        return stmt.where(*self._predicates)


def scoped(
    tenant_column: Any,
    date_column: Any,
    branch_column: Any,
    tenant_id: int,
    scope: ReportScope,
) -> Filters:
    filters = Filters()
    filters.add(tenant_column == tenant_id)
    filters.add(date_column >= scope.start)
    filters.add(date_column <= scope.end)
    if not scope.all_branches:
        filters.add(branch_column.in_(sorted(scope.branch_ids)))
    return filters


def completed_transactions(tenant_id: int, scope: ReportScope) -> Filters:
    return scoped(
        PosTransaction.tenant_id,
        PosTransaction.transaction_date,
        PosTransaction.branch_id,
        tenant_id,
        scope,
    ).add(PosTransaction.status == "completed")


def branch_filters(tenant_id: int, scope: ReportScope, active_only: bool = True) -> Filters:
    filters = Filters().add(Branch.tenant_id == tenant_id)
    if active_only:
        filters.add(Branch.is_active.is_(True))
    if not scope.all_branches:
        filters.add(Branch.id.in_(sorted(scope.branch_ids)))
    return filters


def money_sum(expression: Any) -> Any:
    return func.coalesce(func.sum(expression), 0)


def fetch_all(session: Session, stmt: Select, description: str) -> list[Any]:
    try:
        return list(session.execute(stmt).all())
    except SQLAlchemyError as exc:
        logger.exception("query failed: %s", description)
        raise DataUnavailable(f"{description} is unavailable") from exc
