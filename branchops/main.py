from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date, datetime, time, timezone
from decimal import Decimal
from typing import Any, Optional, Union
from uuid import uuid4
from zoneinfo import ZoneInfo

from fastapi import Depends, FastAPI, Header, Query, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from branchops import reports, settlements
from branchops.config import Settings, settings as app_settings
from branchops.db import SessionLocal
from branchops.errors import DataUnavailable, Forbidden, NotFound, ReportingError, Unauthorized
from branchops.models import Branch, FinanceReconciliation, Tenant
from branchops.scope import resolve_scope

logging.basicConfig(
    level=app_settings.log_level.upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

app = FastAPI(title="Branch Operations Reporting")

ADMIN_ROLES = {"admin", "super_admin"}


def _meta(request_id: Optional[str] = None, warnings: Optional[list[str]] = None) -> dict:
    return {
        "request_id": request_id or f"req_{uuid4().hex}",
        "warnings": warnings or [],
    }


def get_db() -> Session:
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def get_session_factory():
    return SessionLocal


def get_settings() -> Settings:
    return app_settings


@dataclass(frozen=True)
class Identity:
    tenant_id: int
    user_id: str
    role: Optional[str]


def get_identity(
    x_tenant_id: Optional[str] = Header(default=None),
    x_user_id: Optional[str] = Header(default=None),
    x_user_role: Optional[str] = Header(default=None),
) -> Identity:
    if not x_tenant_id or not x_user_id:
        raise Unauthorized("missing tenant or user identity")
    try:
        tenant_id = int(x_tenant_id)
    except ValueError:
        raise Unauthorized("invalid tenant identity") from None
    return Identity(tenant_id=tenant_id, user_id=x_user_id, role=x_user_role)


def require_admin(identity: Identity = Depends(get_identity)) -> Identity:
    if identity.role not in ADMIN_ROLES:
        raise Forbidden("admin or super_admin role required")
    return identity


@app.exception_handler(ReportingError)
async def handle_reporting_error(request: Request, exc: ReportingError) -> JSONResponse:
    if isinstance(exc, DataUnavailable):
        logger.error("%s %s failed: %s", request.method, request.url.path, exc.message)
    return JSONResponse(status_code=exc.status_code, content={"error": exc.to_dict(), "meta": _meta()})


@app.exception_handler(SQLAlchemyError)
async def handle_database_error(request: Request, exc: SQLAlchemyError) -> JSONResponse:
    logger.exception("database error on %s %s", request.method, request.url.path)
    error = DataUnavailable("data is temporarily unavailable")
    return JSONResponse(status_code=error.status_code, content={"error": error.to_dict(), "meta": _meta()})


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _zone(config: Settings) -> ZoneInfo:
    return ZoneInfo(config.report_timezone)


def _paginate_by_id(query, model, limit: int, cursor: Optional[int]) -> tuple[list[Any], Optional[int]]:
    if cursor is not None:
        query = query.filter(model.id > cursor)
    rows = query.order_by(model.id).limit(limit + 1).all()
    next_cursor = None
    if len(rows) > limit:
        next_cursor = rows[limit - 1].id
        rows = rows[:limit]
    return rows, next_cursor


def _list_meta(limit: int, cursor: Optional[int], next_cursor: Optional[int]) -> dict:
    meta = _meta()
    if next_cursor is not None:
        meta["page"] = {"limit": limit, "cursor": str(next_cursor)}
    elif cursor is not None:
        meta["page"] = {"limit": limit, "cursor": str(cursor)}
    else:
        meta["page"] = {"limit": limit, "cursor": None}
    return meta


@app.get("/", tags=["root"])
def read_root() -> dict:
    return {"status": "ok"}


@app.get("/health", tags=["health"])
def health_check() -> dict:
    return {"status": "healthy"}


class TenantCreate(BaseModel):
    model_config = {"json_schema_extra": {"example": {'name': 'Kopi Nusantara', 'is_active': True}}}
    name: str
    is_active: bool = True


@app.post("/api/v1/tenants", tags=["Tenants"])
def create_tenant(payload: TenantCreate, db: Session = Depends(get_db)) -> dict:
    tenant = Tenant(
        name=payload.name,
        status="ACTIVE" if payload.is_active else "INACTIVE",
        created_at=_now(),
    )
    db.add(tenant)
    db.commit()
    db.refresh(tenant)
    return {
        "data": {"tenant_id": tenant.id, "name": tenant.name, "is_active": payload.is_active},
        "meta": _meta(),
    }


@app.get("/api/v1/tenants/{tenant_id}", tags=["Tenants"])
def get_tenant(tenant_id: int, db: Session = Depends(get_db)) -> dict:
    tenant = db.get(Tenant, tenant_id)
    if not tenant:
        raise NotFound("tenant not found")
    return {
        "data": {
            "tenant_id": tenant.id,
            "name": tenant.name,
            "status": tenant.status,
            "created_at": tenant.created_at.isoformat(),
        },
        "meta": _meta(),
    }


class BranchCreate(BaseModel):
    model_config = {"json_schema_extra": {"example": {'name': 'Kemang', 'code': 'JKT-01', 'city': 'Jakarta', 'region': 'West Java', 'timezone': 'Asia/Jakarta', 'is_active': True}}}
    name: str
    code: str
    city: Optional[str] = None
    region: Optional[str] = None
    timezone: str = "UTC"
    is_active: bool = True


def _branch_data(branch: Branch) -> dict:
    return {
        "branch_id": branch.id,
        "tenant_id": branch.tenant_id,
        "name": branch.name,
        "code": branch.code,
        "city": branch.city,
        "region": branch.region,
        "timezone": branch.timezone,
        "is_active": branch.is_active,
        "created_at": branch.created_at.isoformat(),
    }


@app.post("/api/v1/branches", tags=["Branches"])
def create_branch(
    payload: BranchCreate,
    identity: Identity = Depends(get_identity),
    db: Session = Depends(get_db),
) -> dict:
    if not db.get(Tenant, identity.tenant_id):
        raise NotFound("tenant not found")
    branch = Branch(
        tenant_id=identity.tenant_id,
        name=payload.name,
        code=payload.code,
        city=payload.city,
        region=payload.region,
        timezone=payload.timezone,
        is_active=payload.is_active,
        created_at=_now(),
    )
    db.add(branch)
    db.commit()
    db.refresh(branch)
    return {"data": _branch_data(branch), "meta": _meta()}


@app.get("/api/v1/branches", tags=["Branches"])
def list_branches(
    is_active: Optional[bool] = Query(default=None),
    limit: int = Query(default=50, ge=1, le=500),
    cursor: Optional[int] = Query(default=None),
    identity: Identity = Depends(get_identity),
    db: Session = Depends(get_db),
) -> dict:
    query = db.query(Branch).filter(Branch.tenant_id == identity.tenant_id)
    if is_active is not None:
        query = query.filter(Branch.is_active == is_active)
    branches, next_cursor = _paginate_by_id(query, Branch, limit, cursor)
    return {
        "data": [_branch_data(branch) for branch in branches],
        "meta": _list_meta(limit, cursor, next_cursor),
    }


@app.get("/api/v1/reports/branch-leaderboard", tags=["Reports"])
def branch_leaderboard(
    period: str = Query(default="month"),
    metric: str = Query(default="sales"),
    view: str = Query(default="leaderboard"),
    limit: Optional[int] = Query(default=None, ge=1, le=100),
    branch_ids: Optional[str] = Query(default=None, alias="branchIds"),
    start_date: Optional[str] = Query(default=None, alias="startDate"),
    end_date: Optional[str] = Query(default=None, alias="endDate"),
    identity: Identity = Depends(get_identity),
    session_factory=Depends(get_session_factory),
    config: Settings = Depends(get_settings),
) -> dict:
    scope = resolve_scope(period, start_date, end_date, branch_ids, _now(), _zone(config))
    data = reports.build_leaderboard(
        session_factory,
        config,
        identity.tenant_id,
        scope,
        metric=metric,
        view=view,
        limit=limit or config.leaderboard_limit,
    )
    return {"data": data, "meta": _meta()}


class ReconciliationRequest(BaseModel):
    model_config = {
        "populate_by_name": True,
        "json_schema_extra": {
            "example": {
                "branchId": 1,
                "startDate": "2026-03-01",
                "endDate": "2026-03-01",
                "includeTransactions": True,
            }
        },
    }
    branch_id: Optional[int] = Field(default=None, alias="branchId")
    branch_ids: Optional[Union[list[int], str]] = Field(default=None, alias="branchIds")
    start_date: Optional[date] = Field(default=None, alias="startDate")
    end_date: Optional[date] = Field(default=None, alias="endDate")
    period: Optional[str] = None
    include_transactions: bool = Field(default=False, alias="includeTransactions")


@app.post("/api/v1/finance/reconciliation", tags=["Finance"])
def run_reconciliation(
    payload: ReconciliationRequest,
    identity: Identity = Depends(get_identity),
    db: Session = Depends(get_db),
    session_factory=Depends(get_session_factory),
    config: Settings = Depends(get_settings),
) -> dict:
    branch_selection = payload.branch_ids if payload.branch_ids is not None else payload.branch_id
    period = payload.period
    if period is None and payload.start_date is None:
        period = "yesterday"
    scope = resolve_scope(
        period, payload.start_date, payload.end_date, branch_selection, _now(), _zone(config)
    )
    data = reports.build_reconciliation(
        db,
        session_factory,
        config,
        identity.tenant_id,
        identity.user_id,
        scope,
        include_transactions=payload.include_transactions,
    )
    return {"data": data, "meta": _meta()}


@app.get("/api/v1/finance/reconciliations", tags=["Finance"])
def list_reconciliations(
    status: Optional[str] = Query(default=None),
    limit: int = Query(default=50, ge=1, le=500),
    cursor: Optional[int] = Query(default=None),
    identity: Identity = Depends(get_identity),
    db: Session = Depends(get_db),
) -> dict:
    query = db.query(FinanceReconciliation).filter(
        FinanceReconciliation.tenant_id == identity.tenant_id
    )
    if status is not None:
        query = query.filter(FinanceReconciliation.status == status)
    records, next_cursor = _paginate_by_id(query, FinanceReconciliation, limit, cursor)
    return {
        "data": [reports.reconciliation_to_dict(record) for record in records],
        "meta": _list_meta(limit, cursor, next_cursor),
    }


@app.get("/api/v1/finance/reconciliations/{reconciliation_id}", tags=["Finance"])
def get_reconciliation(
    reconciliation_id: int,
    identity: Identity = Depends(get_identity),
    db: Session = Depends(get_db),
) -> dict:
    record = db.get(FinanceReconciliation, reconciliation_id)
    if not record or record.tenant_id != identity.tenant_id:
        raise NotFound("reconciliation not found")
    return {"data": reports.reconciliation_to_dict(record), "meta": _meta()}


@app.get("/api/v1/reports/wastage-analysis", tags=["Reports"])
def wastage_analysis(
    period: str = Query(default="month"),
    start_date: Optional[str] = Query(default=None, alias="startDate"),
    end_date: Optional[str] = Query(default=None, alias="endDate"),
    branch_ids: Optional[str] = Query(default=None, alias="branchIds"),
    category_id: Optional[int] = Query(default=None, alias="categoryId"),
    product_id: Optional[int] = Query(default=None, alias="productId"),
    threshold: Optional[Decimal] = Query(default=None, ge=0),
    identity: Identity = Depends(get_identity),
    session_factory=Depends(get_session_factory),
    config: Settings = Depends(get_settings),
) -> dict:
    scope = resolve_scope(period, start_date, end_date, branch_ids, _now(), _zone(config))
    data = reports.build_wastage_analysis(
        session_factory,
        config,
        identity.tenant_id,
        scope,
        category_id=category_id,
        product_id=product_id,
        threshold=threshold,
    )
    return {"data": data, "meta": _meta()}


class SettlementCreate(BaseModel):
    model_config = {
        "populate_by_name": True,
        "json_schema_extra": {
            "example": {
                "fromBranchId": 1,
                "toBranchId": 2,
                "settlementType": "stock_transfer_value",
                "amount": 1250000.0,
                "description": "Coffee beans transfer",
                "referenceType": "inventory_transfer",
                "referenceId": 77,
                "dueDate": "2026-03-31",
            }
        },
    }
    from_branch_id: int = Field(alias="fromBranchId")
    to_branch_id: int = Field(alias="toBranchId")
    settlement_type: str = Field(alias="settlementType")
    amount: Decimal
    currency: str = "IDR"
    description: Optional[str] = None
    reference_type: str = Field(default="manual", alias="referenceType")
    reference_id: Optional[int] = Field(default=None, alias="referenceId")
    settlement_date: Optional[datetime] = Field(default=None, alias="settlementDate")
    due_date: Optional[date] = Field(default=None, alias="dueDate")
    notes: Optional[str] = None


class SettlementAction(BaseModel):
    model_config = {
        "populate_by_name": True,
        "json_schema_extra": {
            "example": {"action": "pay", "paymentMethod": "bank_transfer", "paymentReference": "TRX-88121"}
        },
    }
    action: str
    notes: Optional[str] = None
    payment_method: Optional[str] = Field(default=None, alias="paymentMethod")
    payment_reference: Optional[str] = Field(default=None, alias="paymentReference")


def _client_info(request: Request) -> tuple[Optional[str], Optional[str]]:
    host = request.client.host if request.client else None
    return host, request.headers.get("user-agent")


@app.post("/api/v1/finance/settlements", tags=["Settlements"], status_code=201)
def create_settlement(
    payload: SettlementCreate,
    request: Request,
    identity: Identity = Depends(require_admin),
    db: Session = Depends(get_db),
) -> dict:
    ip_address, user_agent = _client_info(request)
    settlement = settlements.create_settlement(
        db,
        identity.tenant_id,
        identity.user_id,
        from_branch_id=payload.from_branch_id,
        to_branch_id=payload.to_branch_id,
        settlement_type=payload.settlement_type,
        amount=payload.amount,
        description=payload.description,
        reference_type=payload.reference_type,
        reference_id=payload.reference_id,
        settlement_date=payload.settlement_date,
        due_date=payload.due_date,
        notes=payload.notes,
        currency=payload.currency,
        ip_address=ip_address,
        user_agent=user_agent,
    )
    return {"data": settlements.get_settlement(db, identity.tenant_id, settlement.id), "meta": _meta()}


@app.get("/api/v1/finance/settlements", tags=["Settlements"])
def list_settlements(
    status: Optional[str] = Query(default=None),
    from_branch_id: Optional[int] = Query(default=None, alias="fromBranchId"),
    to_branch_id: Optional[int] = Query(default=None, alias="toBranchId"),
    settlement_type: Optional[str] = Query(default=None, alias="settlementType"),
    start_date: Optional[date] = Query(default=None, alias="startDate"),
    end_date: Optional[date] = Query(default=None, alias="endDate"),
    search: Optional[str] = Query(default=None),
    limit: int = Query(default=20, ge=1, le=500),
    cursor: Optional[int] = Query(default=None),
    identity: Identity = Depends(require_admin),
    db: Session = Depends(get_db),
    config: Settings = Depends(get_settings),
) -> dict:
    tz = _zone(config)
    data, next_cursor, summary = settlements.list_settlements(
        db,
        identity.tenant_id,
        status=status,
        from_branch_id=from_branch_id,
        to_branch_id=to_branch_id,
        settlement_type=settlement_type,
        start=datetime.combine(start_date, time.min, tzinfo=tz) if start_date else None,
        end=datetime.combine(end_date, time.max, tzinfo=tz) if end_date else None,
        search=search,
        limit=limit,
        cursor=cursor,
    )
    meta = _list_meta(limit, cursor, next_cursor)
    meta["summary"] = summary
    return {"data": data, "meta": meta}


@app.get("/api/v1/finance/settlements/{settlement_id}", tags=["Settlements"])
def get_settlement(
    settlement_id: int,
    identity: Identity = Depends(require_admin),
    db: Session = Depends(get_db),
) -> dict:
    return {"data": settlements.get_settlement(db, identity.tenant_id, settlement_id), "meta": _meta()}


@app.put("/api/v1/finance/settlements/{settlement_id}", tags=["Settlements"])
def update_settlement(
    settlement_id: int,
    payload: SettlementAction,
    request: Request,
    identity: Identity = Depends(require_admin),
    db: Session = Depends(get_db),
) -> dict:
    ip_address, user_agent = _client_info(request)
    settlements.apply_action(
        db,
        identity.tenant_id,
        settlement_id,
        payload.action,
        identity.user_id,
        notes=payload.notes,
        payment_method=payload.payment_method,
        payment_reference=payload.payment_reference,
        ip_address=ip_address,
        user_agent=user_agent,
    )
    return {"data": settlements.get_settlement(db, identity.tenant_id, settlement_id), "meta": _meta()}
