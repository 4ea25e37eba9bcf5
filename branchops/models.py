from sqlalchemy import (
    BigInteger,
    Boolean,
    CheckConstraint,
    Date,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    JSON,
    Numeric,
    Text,
    UniqueConstraint,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column

from branchops.db import Base

ID_TYPE = BigInteger().with_variant(Integer, "sqlite")
JSON_TYPE = JSON().with_variant(JSONB, "postgresql")
MONEY = Numeric(15, 2)
QUANTITY = Numeric(15, 3)


class Tenant(Base):
    __tablename__ = "tenant"

    id: Mapped[int] = mapped_column(ID_TYPE, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(Text, nullable=False)
    status: Mapped[str] = mapped_column(Text, nullable=False, default="ACTIVE")
    created_at: Mapped[DateTime] = mapped_column(DateTime(timezone=True), nullable=False)


class Branch(Base):
    __tablename__ = "branch"

    id: Mapped[int] = mapped_column(ID_TYPE, primary_key=True, autoincrement=True)
    tenant_id: Mapped[int] = mapped_column(
        BigInteger, ForeignKey("tenant.id"), nullable=False
    )
    name: Mapped[str] = mapped_column(Text, nullable=False)
    code: Mapped[str] = mapped_column(Text, nullable=False)
    city: Mapped[str | None] = mapped_column(Text)
    region: Mapped[str | None] = mapped_column(Text)
    timezone: Mapped[str] = mapped_column(Text, nullable=False, default="UTC")
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    created_at: Mapped[DateTime] = mapped_column(DateTime(timezone=True), nullable=False)


class ProductCategory(Base):
    __tablename__ = "product_category"

    id: Mapped[int] = mapped_column(ID_TYPE, primary_key=True, autoincrement=True)
    tenant_id: Mapped[int] = mapped_column(
        BigInteger, ForeignKey("tenant.id"), nullable=False
    )
    name: Mapped[str] = mapped_column(Text, nullable=False)


class Product(Base):
    __tablename__ = "product"

    id: Mapped[int] = mapped_column(ID_TYPE, primary_key=True, autoincrement=True)
    tenant_id: Mapped[int] = mapped_column(
        BigInteger, ForeignKey("tenant.id"), nullable=False
    )
    category_id: Mapped[int | None] = mapped_column(
        BigInteger, ForeignKey("product_category.id")
    )
    name: Mapped[str] = mapped_column(Text, nullable=False)
    sku: Mapped[str | None] = mapped_column(Text)


class Shift(Base):
    __tablename__ = "shift"

    id: Mapped[int] = mapped_column(ID_TYPE, primary_key=True, autoincrement=True)
    tenant_id: Mapped[int] = mapped_column(
        BigInteger, ForeignKey("tenant.id"), nullable=False
    )
    branch_id: Mapped[int] = mapped_column(
        BigInteger, ForeignKey("branch.id"), nullable=False
    )
    shift_name: Mapped[str] = mapped_column(Text, nullable=False)
    shift_date: Mapped[DateTime] = mapped_column(DateTime(timezone=True), nullable=False)
    opened_at: Mapped[DateTime] = mapped_column(DateTime(timezone=True), nullable=False)
    closed_at: Mapped[DateTime | None] = mapped_column(DateTime(timezone=True))
    initial_cash_amount: Mapped[Numeric] = mapped_column(MONEY, nullable=False, default=0)
    final_cash_amount: Mapped[Numeric | None] = mapped_column(MONEY)
    expected_cash_amount: Mapped[Numeric | None] = mapped_column(MONEY)
    cash_difference: Mapped[Numeric | None] = mapped_column(MONEY)
    opened_by: Mapped[str | None] = mapped_column(Text)
    closed_by: Mapped[str | None] = mapped_column(Text)


class PosTransaction(Base):
    __tablename__ = "pos_transaction"
    __table_args__ = (
        Index("ix_pos_transaction_branch_date", "branch_id", "transaction_date"),
        CheckConstraint(
            "status IN ('completed', 'pending', 'voided')", name="pos_transaction_status"
        ),
    )

    id: Mapped[int] = mapped_column(ID_TYPE, primary_key=True, autoincrement=True)
    tenant_id: Mapped[int] = mapped_column(
        BigInteger, ForeignKey("tenant.id"), nullable=False
    )
    branch_id: Mapped[int] = mapped_column(
        BigInteger, ForeignKey("branch.id"), nullable=False
    )
    shift_id: Mapped[int | None] = mapped_column(BigInteger, ForeignKey("shift.id"))
    customer_id: Mapped[int | None] = mapped_column(BigInteger)
    transaction_number: Mapped[str] = mapped_column(Text, nullable=False)
    transaction_date: Mapped[DateTime] = mapped_column(
        DateTime(timezone=True), nullable=False
    )
    subtotal: Mapped[Numeric] = mapped_column(MONEY, nullable=False, default=0)
    tax: Mapped[Numeric] = mapped_column(MONEY, nullable=False, default=0)
    discount: Mapped[Numeric] = mapped_column(MONEY, nullable=False, default=0)
    total: Mapped[Numeric] = mapped_column(MONEY, nullable=False, default=0)
    payment_method: Mapped[str] = mapped_column(Text, nullable=False, default="cash")
    status: Mapped[str] = mapped_column(Text, nullable=False, default="completed")


class FinanceTransaction(Base):
    __tablename__ = "finance_transaction"
    __table_args__ = (
        Index("ix_finance_transaction_branch_date", "branch_id", "transaction_date"),
        CheckConstraint(
            "transaction_type IN ('income', 'expense')", name="finance_transaction_type"
        ),
    )

    id: Mapped[int] = mapped_column(ID_TYPE, primary_key=True, autoincrement=True)
    tenant_id: Mapped[int] = mapped_column(
        BigInteger, ForeignKey("tenant.id"), nullable=False
    )
    branch_id: Mapped[int] = mapped_column(
        BigInteger, ForeignKey("branch.id"), nullable=False
    )
    transaction_number: Mapped[str] = mapped_column(Text, nullable=False)
    transaction_date: Mapped[DateTime] = mapped_column(
        DateTime(timezone=True), nullable=False
    )
    transaction_type: Mapped[str] = mapped_column(Text, nullable=False)
    category: Mapped[str | None] = mapped_column(Text)
    amount: Mapped[Numeric] = mapped_column(MONEY, nullable=False)
    payment_method: Mapped[str | None] = mapped_column(Text)
    description: Mapped[str | None] = mapped_column(Text)
    reference_type: Mapped[str | None] = mapped_column(Text)
    reference_id: Mapped[int | None] = mapped_column(BigInteger)
    created_by: Mapped[str | None] = mapped_column(Text)
    created_at: Mapped[DateTime] = mapped_column(DateTime(timezone=True), nullable=False)


class WastageRecord(Base):
    __tablename__ = "wastage_record"
    __table_args__ = (
        Index("ix_wastage_record_branch_date", "branch_id", "waste_date"),
        CheckConstraint(
            "waste_type IN ('spoilage', 'error', 'theft', 'expired')",
            name="wastage_record_type",
        ),
    )

    id: Mapped[int] = mapped_column(ID_TYPE, primary_key=True, autoincrement=True)
    tenant_id: Mapped[int] = mapped_column(
        BigInteger, ForeignKey("tenant.id"), nullable=False
    )
    branch_id: Mapped[int] = mapped_column(
        BigInteger, ForeignKey("branch.id"), nullable=False
    )
    product_id: Mapped[int] = mapped_column(
        BigInteger, ForeignKey("product.id"), nullable=False
    )
    quantity: Mapped[Numeric] = mapped_column(QUANTITY, nullable=False)
    cost_per_unit: Mapped[Numeric] = mapped_column(MONEY, nullable=False)
    waste_type: Mapped[str] = mapped_column(Text, nullable=False)
    reason: Mapped[str | None] = mapped_column(Text)
    waste_date: Mapped[DateTime] = mapped_column(DateTime(timezone=True), nullable=False)


class InterBranchSettlement(Base):
    __tablename__ = "inter_branch_settlement"
    __table_args__ = (
        CheckConstraint(
            "status IN ('pending', 'approved', 'paid', 'cancelled', 'overdue')",
            name="settlement_status",
        ),
        CheckConstraint("from_branch_id <> to_branch_id", name="settlement_distinct_branches"),
        CheckConstraint("amount > 0", name="settlement_amount_positive"),
        UniqueConstraint("tenant_id", "settlement_number", name="settlement_number_per_tenant"),
    )

    id: Mapped[int] = mapped_column(ID_TYPE, primary_key=True, autoincrement=True)
    tenant_id: Mapped[int] = mapped_column(
        BigInteger, ForeignKey("tenant.id"), nullable=False
    )
    settlement_number: Mapped[str] = mapped_column(Text, nullable=False)
    from_branch_id: Mapped[int] = mapped_column(
        BigInteger, ForeignKey("branch.id"), nullable=False
    )
    to_branch_id: Mapped[int] = mapped_column(
        BigInteger, ForeignKey("branch.id"), nullable=False
    )
    settlement_type: Mapped[str] = mapped_column(Text, nullable=False)
    amount: Mapped[Numeric] = mapped_column(MONEY, nullable=False)
    currency: Mapped[str] = mapped_column(Text, nullable=False, default="IDR")
    description: Mapped[str | None] = mapped_column(Text)
    reference_type: Mapped[str] = mapped_column(Text, nullable=False, default="manual")
    reference_id: Mapped[int | None] = mapped_column(BigInteger)
    settlement_date: Mapped[DateTime] = mapped_column(DateTime(timezone=True), nullable=False)
    due_date: Mapped[Date | None] = mapped_column(Date)
    status: Mapped[str] = mapped_column(Text, nullable=False, default="pending")
    approved_by: Mapped[str | None] = mapped_column(Text)
    approved_at: Mapped[DateTime | None] = mapped_column(DateTime(timezone=True))
    paid_by: Mapped[str | None] = mapped_column(Text)
    paid_at: Mapped[DateTime | None] = mapped_column(DateTime(timezone=True))
    payment_method: Mapped[str | None] = mapped_column(Text)
    payment_reference: Mapped[str | None] = mapped_column(Text)
    notes: Mapped[str | None] = mapped_column(Text)
    created_by: Mapped[str] = mapped_column(Text, nullable=False)
    created_at: Mapped[DateTime] = mapped_column(DateTime(timezone=True), nullable=False)
    updated_at: Mapped[DateTime] = mapped_column(DateTime(timezone=True), nullable=False)


class SettlementHistory(Base):
    __tablename__ = "inter_branch_settlement_history"

    id: Mapped[int] = mapped_column(ID_TYPE, primary_key=True, autoincrement=True)
    settlement_id: Mapped[int] = mapped_column(
        BigInteger, ForeignKey("inter_branch_settlement.id"), nullable=False
    )
    action: Mapped[str] = mapped_column(Text, nullable=False)
    previous_status: Mapped[str | None] = mapped_column(Text)
    new_value: Mapped[dict | None] = mapped_column(JSON_TYPE)
    notes: Mapped[str | None] = mapped_column(Text)
    user_id: Mapped[str] = mapped_column(Text, nullable=False)
    ip_address: Mapped[str | None] = mapped_column(Text)
    user_agent: Mapped[str | None] = mapped_column(Text)
    created_at: Mapped[DateTime] = mapped_column(DateTime(timezone=True), nullable=False)


class FinanceReconciliation(Base):
    __tablename__ = "finance_reconciliation"

    id: Mapped[int] = mapped_column(ID_TYPE, primary_key=True, autoincrement=True)
    tenant_id: Mapped[int] = mapped_column(
        BigInteger, ForeignKey("tenant.id"), nullable=False
    )
    branch_ids: Mapped[list] = mapped_column(JSON_TYPE, nullable=False)
    start_date: Mapped[DateTime] = mapped_column(DateTime(timezone=True), nullable=False)
    end_date: Mapped[DateTime] = mapped_column(DateTime(timezone=True), nullable=False)
    pos_total: Mapped[Numeric] = mapped_column(MONEY, nullable=False)
    finance_total: Mapped[Numeric] = mapped_column(MONEY, nullable=False)
    cash_expected: Mapped[Numeric] = mapped_column(MONEY, nullable=False)
    cash_actual: Mapped[Numeric] = mapped_column(MONEY, nullable=False)
    cash_difference: Mapped[Numeric] = mapped_column(MONEY, nullable=False)
    status: Mapped[str] = mapped_column(Text, nullable=False)
    discrepancies: Mapped[list] = mapped_column(JSON_TYPE, nullable=False)
    channel_results: Mapped[list | None] = mapped_column(JSON_TYPE)
    created_by: Mapped[str] = mapped_column(Text, nullable=False)
    created_at: Mapped[DateTime] = mapped_column(DateTime(timezone=True), nullable=False)


class Webhook(Base):
    __tablename__ = "webhook"

    id: Mapped[int] = mapped_column(ID_TYPE, primary_key=True, autoincrement=True)
    tenant_id: Mapped[int] = mapped_column(
        BigInteger, ForeignKey("tenant.id"), nullable=False
    )
    branch_id: Mapped[int | None] = mapped_column(BigInteger, ForeignKey("branch.id"))
    event: Mapped[str] = mapped_column(Text, nullable=False)
    name: Mapped[str] = mapped_column(Text, nullable=False)
    url: Mapped[str] = mapped_column(Text, nullable=False)
    secret_key: Mapped[str | None] = mapped_column(Text)
    headers: Mapped[dict | None] = mapped_column(JSON_TYPE)
    timeout_seconds: Mapped[int] = mapped_column(Integer, nullable=False, default=10)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)


class DashboardNotification(Base):
    __tablename__ = "dashboard_notification"

    id: Mapped[int] = mapped_column(ID_TYPE, primary_key=True, autoincrement=True)
    tenant_id: Mapped[int] = mapped_column(
        BigInteger, ForeignKey("tenant.id"), nullable=False
    )
    branch_id: Mapped[int | None] = mapped_column(BigInteger, ForeignKey("branch.id"))
    event: Mapped[str] = mapped_column(Text, nullable=False)
    title: Mapped[str] = mapped_column(Text, nullable=False)
    payload: Mapped[dict] = mapped_column(JSON_TYPE, nullable=False)
    created_at: Mapped[DateTime] = mapped_column(DateTime(timezone=True), nullable=False)
