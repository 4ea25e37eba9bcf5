from datetime import datetime, timezone
from decimal import Decimal
from itertools import count

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine, event
from sqlalchemy.orm import sessionmaker

from branchops.config import Settings
from branchops.db import Base
from branchops.main import app, get_db, get_session_factory, get_settings
from branchops.models import (
    Branch,
    FinanceTransaction,
    InterBranchSettlement,
    PosTransaction,
    Product,
    ProductCategory,
    Shift,
    Tenant,
    WastageRecord,
    Webhook,
)

REPORT_DAY = datetime(2026, 3, 2, 12, 0, tzinfo=timezone.utc)


@pytest.fixture
def engine(tmp_path):
    engine = create_engine(
        f"sqlite:///{tmp_path / 'branchops.db'}",
        connect_args={"check_same_thread": False},
    )

    # pysqlite defers BEGIN on its own; let SQLAlchemy emit it so SAVEPOINT works.
    @event.listens_for(engine, "connect")
    def _connect(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine, "begin")
    def _begin(conn):
        conn.exec_driver_sql("BEGIN")

    Base.metadata.create_all(bind=engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(bind=engine, autoflush=False, autocommit=False)


@pytest.fixture
def settings():
    return Settings(
        _env_file=None,
        database_url="sqlite://",
        report_timezone="UTC",
        query_timeout_seconds=10,
        smtp_host=None,
        whatsapp_api_url=None,
        dashboard_notifications=True,
    )


@pytest.fixture
def client(session_factory, settings):
    def override_get_db():
        db = session_factory()
        try:
            yield db
        finally:
            db.close()

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_session_factory] = lambda: session_factory
    app.dependency_overrides[get_settings] = lambda: settings
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


@pytest.fixture
def headers():
    def build(tenant_id: int, role: str = "admin", user_id: str = "user-1") -> dict:
        return {"X-Tenant-Id": str(tenant_id), "X-User-Id": user_id, "X-User-Role": role}

    return build


class Seeder:
    """Inserts committed rows and hands back detached instances."""

    def __init__(self, session_factory) -> None:
        self.session_factory = session_factory
        self._numbers = count(1)

    def _add(self, row):
        with self.session_factory() as session:
            session.add(row)
            session.commit()
            session.refresh(row)
            session.expunge(row)
        return row

    def tenant(self, name="Kopi Nusantara"):
        return self._add(Tenant(name=name, status="ACTIVE", created_at=REPORT_DAY))

    def branch(self, tenant_id, name, code=None, is_active=True, city=None, region=None):
        return self._add(
            Branch(
                tenant_id=tenant_id,
                name=name,
                code=code or name[:3].upper(),
                city=city,
                region=region,
                is_active=is_active,
                created_at=REPORT_DAY,
            )
        )

    def sale(
        self,
        tenant_id,
        branch_id,
        total,
        when=REPORT_DAY,
        tax=0,
        discount=0,
        payment_method="cash",
        status="completed",
        customer_id=None,
        shift_id=None,
    ):
        total = Decimal(str(total))
        return self._add(
            PosTransaction(
                tenant_id=tenant_id,
                branch_id=branch_id,
                shift_id=shift_id,
                customer_id=customer_id,
                transaction_number=f"TRX-{next(self._numbers):05d}",
                transaction_date=when,
                subtotal=total - Decimal(str(tax)) + Decimal(str(discount)),
                tax=Decimal(str(tax)),
                discount=Decimal(str(discount)),
                total=total,
                payment_method=payment_method,
                status=status,
            )
        )

    def ledger(self, tenant_id, branch_id, amount, transaction_type="income", when=REPORT_DAY, category="Sales"):
        return self._add(
            FinanceTransaction(
                tenant_id=tenant_id,
                branch_id=branch_id,
                transaction_number=f"FIN-{next(self._numbers):05d}",
                transaction_date=when,
                transaction_type=transaction_type,
                category=category,
                amount=Decimal(str(amount)),
                payment_method="cash",
                created_at=when,
            )
        )

    def shift(self, tenant_id, branch_id, expected, final, when=REPORT_DAY, name="Morning"):
        return self._add(
            Shift(
                tenant_id=tenant_id,
                branch_id=branch_id,
                shift_name=name,
                shift_date=when,
                opened_at=when,
                closed_at=when,
                initial_cash_amount=Decimal("0"),
                final_cash_amount=Decimal(str(final)),
                expected_cash_amount=Decimal(str(expected)),
                cash_difference=Decimal(str(final)) - Decimal(str(expected)),
                opened_by="cashier-1",
                closed_by="cashier-1",
            )
        )

    def category(self, tenant_id, name):
        return self._add(ProductCategory(tenant_id=tenant_id, name=name))

    def product(self, tenant_id, name, category_id=None, sku=None):
        return self._add(Product(tenant_id=tenant_id, name=name, category_id=category_id, sku=sku))

    def waste(
        self,
        tenant_id,
        branch_id,
        product_id,
        quantity,
        cost_per_unit,
        waste_type="spoilage",
        when=REPORT_DAY,
        reason="expired stock",
    ):
        return self._add(
            WastageRecord(
                tenant_id=tenant_id,
                branch_id=branch_id,
                product_id=product_id,
                quantity=Decimal(str(quantity)),
                cost_per_unit=Decimal(str(cost_per_unit)),
                waste_type=waste_type,
                reason=reason,
                waste_date=when,
            )
        )

    def settlement(self, tenant_id, from_branch_id, to_branch_id, amount, status="pending", when=REPORT_DAY):
        return self._add(
            InterBranchSettlement(
                tenant_id=tenant_id,
                settlement_number=f"IBS-2025-{next(self._numbers):04d}",
                from_branch_id=from_branch_id,
                to_branch_id=to_branch_id,
                settlement_type="stock_transfer_value",
                amount=Decimal(str(amount)),
                currency="IDR",
                reference_type="manual",
                settlement_date=when,
                status=status,
                created_by="user-1",
                created_at=when,
                updated_at=when,
            )
        )

    def webhook(self, tenant_id, url, event, branch_id=None, secret=None, is_active=True, headers=None):
        return self._add(
            Webhook(
                tenant_id=tenant_id,
                branch_id=branch_id,
                event=event,
                name=f"hook-{next(self._numbers)}",
                url=url,
                secret_key=secret,
                headers=headers,
                timeout_seconds=5,
                is_active=is_active,
            )
        )


@pytest.fixture
def seed(session_factory):
    return Seeder(session_factory)
