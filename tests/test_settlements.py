from datetime import datetime, timezone
from decimal import Decimal

import pytest
from sqlalchemy import func, select

from branchops import settlements
from branchops.models import FinanceTransaction, InterBranchSettlement, SettlementHistory
from branchops.settlements import ACTION_STATUS, STATUSES, TRANSITIONS


def _state(session_factory, settlement_id):
    with session_factory() as session:
        settlement = session.get(InterBranchSettlement, settlement_id)
        history = session.scalar(
            select(func.count(SettlementHistory.id)).where(
                SettlementHistory.settlement_id == settlement_id
            )
        )
        ledger = session.scalar(
            select(func.count(FinanceTransaction.id)).where(
                FinanceTransaction.reference_id == settlement_id
            )
        )
        return settlements.snapshot(settlement), history, ledger


@pytest.fixture
def branches(seed):
    tenant = seed.tenant()
    north = seed.branch(tenant.id, "North", code="NTH")
    south = seed.branch(tenant.id, "South", code="STH")
    return tenant, north, south


def test_create_settlement_numbers_and_history(client, headers, branches) -> None:
    tenant, north, south = branches
    payload = {
        "fromBranchId": north.id,
        "toBranchId": south.id,
        "settlementType": "stock_transfer_value",
        "amount": 1250000.5,
        "description": "Coffee beans transfer",
    }
    first = client.post("/api/v1/finance/settlements", json=payload, headers=headers(tenant.id))
    assert first.status_code == 201
    data = first.json()["data"]
    year = datetime.now(timezone.utc).year
    assert data["settlement_number"] == f"IBS-{year}-0001"
    assert data["status"] == "pending"
    assert data["amount"] == 1250000.5
    assert data["from_branch_name"] == "North"
    assert data["allowed_actions"] == ["approve", "cancel"]
    assert [entry["action"] for entry in data["history"]] == ["created"]
    assert data["history"][0]["new_value"]["status"] == "pending"

    second = client.post("/api/v1/finance/settlements", json=payload, headers=headers(tenant.id))
    assert second.json()["data"]["settlement_number"] == f"IBS-{year}-0002"


@pytest.mark.parametrize(
    "overrides, status, kind",
    [
        ({"toBranchId": "from"}, 400, "invalid_parameter"),
        ({"amount": 0}, 400, "invalid_parameter"),
        ({"settlementType": "gift"}, 400, "invalid_parameter"),
        ({"toBranchId": 9999}, 404, "not_found"),
    ],
)
def test_create_settlement_validation(client, headers, branches, overrides, status, kind) -> None:
    tenant, north, south = branches
    payload = {
        "fromBranchId": north.id,
        "toBranchId": south.id,
        "settlementType": "cash_transfer",
        "amount": 100,
    }
    payload.update(overrides)
    if payload["toBranchId"] == "from":
        payload["toBranchId"] = north.id
    response = client.post("/api/v1/finance/settlements", json=payload, headers=headers(tenant.id))
    assert response.status_code == status
    assert response.json()["error"]["kind"] == kind


def test_branch_of_another_tenant_is_not_found(client, headers, seed, branches) -> None:
    tenant, north, _ = branches
    other = seed.tenant("Other")
    foreign = seed.branch(other.id, "Foreign")
    response = client.post(
        "/api/v1/finance/settlements",
        json={"fromBranchId": north.id, "toBranchId": foreign.id, "settlementType": "other", "amount": 10},
        headers=headers(tenant.id),
    )
    assert response.status_code == 404


def test_settlement_endpoints_require_admin(client, headers, seed, branches) -> None:
    tenant, north, south = branches
    settlement = seed.settlement(tenant.id, north.id, south.id, 100)

    missing = client.get("/api/v1/finance/settlements")
    assert missing.status_code == 401
    assert missing.json()["error"]["kind"] == "unauthorized"

    cashier = headers(tenant.id, role="cashier")
    forbidden = client.put(
        f"/api/v1/finance/settlements/{settlement.id}", json={"action": "approve"}, headers=cashier
    )
    assert forbidden.status_code == 403
    assert forbidden.json()["error"]["kind"] == "forbidden"

    super_admin = client.get(
        f"/api/v1/finance/settlements/{settlement.id}", headers=headers(tenant.id, role="super_admin")
    )
    assert super_admin.status_code == 200


def test_pay_on_pending_is_rejected_without_changes(client, headers, seed, session_factory, branches) -> None:
    tenant, north, south = branches
    settlement = seed.settlement(tenant.id, north.id, south.id, 500, status="pending")
    before = _state(session_factory, settlement.id)

    response = client.put(
        f"/api/v1/finance/settlements/{settlement.id}",
        json={"action": "pay", "paymentMethod": "cash"},
        headers=headers(tenant.id),
    )
    assert response.status_code == 400
    error = response.json()["error"]
    assert error["kind"] == "invalid_state_transition"
    assert error["message"] == "cannot pay settlement with status pending"
    assert _state(session_factory, settlement.id) == before


def test_paying_approved_settlement_writes_both_ledger_entries(
    client, headers, seed, session_factory, branches
) -> None:
    tenant, north, south = branches
    settlement = seed.settlement(tenant.id, north.id, south.id, "750.25", status="approved")

    response = client.put(
        f"/api/v1/finance/settlements/{settlement.id}",
        json={"action": "pay", "paymentMethod": "bank_transfer", "paymentReference": "TRX-88121"},
        headers=headers(tenant.id, user_id="finance-9"),
    )
    assert response.status_code == 200
    data = response.json()["data"]
    assert data["status"] == "paid"
    assert data["paid_by"] == "finance-9"
    assert data["payment_method"] == "bank_transfer"
    assert data["payment_reference"] == "TRX-88121"
    assert data["allowed_actions"] == []
    assert data["history"][-1]["action"] == "paid"
    assert data["history"][-1]["previous_status"] == "approved"

    with session_factory() as session:
        entries = session.scalars(
            select(FinanceTransaction)
            .where(FinanceTransaction.reference_id == settlement.id)
            .order_by(FinanceTransaction.id)
        ).all()
        assert len(entries) == 2
        expense, income = entries
        assert (expense.branch_id, expense.transaction_type, expense.category) == (
            north.id,
            "expense",
            "Inter-Branch Payment",
        )
        assert (income.branch_id, income.transaction_type, income.category) == (
            south.id,
            "income",
            "Inter-Branch Receipt",
        )
        for entry in entries:
            assert entry.reference_type == "inter_branch_settlement"
            assert Decimal(entry.amount) == Decimal("750.25")
            assert entry.payment_method == "bank_transfer"
        assert expense.transaction_number.startswith("PAY-NTH-")
        assert income.transaction_number.startswith("REC-STH-")


@pytest.mark.parametrize("status", STATUSES)
@pytest.mark.parametrize("action", sorted(ACTION_STATUS))
def test_transition_table_is_closed(client, headers, seed, session_factory, branches, status, action) -> None:
    tenant, north, south = branches
    settlement = seed.settlement(tenant.id, north.id, south.id, 100, status=status)
    before = _state(session_factory, settlement.id)

    response = client.put(
        f"/api/v1/finance/settlements/{settlement.id}",
        json={"action": action},
        headers=headers(tenant.id),
    )
    target = ACTION_STATUS[action]
    if target in TRANSITIONS[status]:
        assert response.status_code == 200
        assert response.json()["data"]["status"] == target
        _, history, ledger = _state(session_factory, settlement.id)
        assert history == before[1] + 1
        assert ledger == (2 if action == "pay" else 0)
    else:
        assert response.status_code == 400
        assert response.json()["error"]["kind"] == "invalid_state_transition"
        assert _state(session_factory, settlement.id) == before


def test_unknown_action_and_payment_method(client, headers, seed, branches) -> None:
    tenant, north, south = branches
    settlement = seed.settlement(tenant.id, north.id, south.id, 100, status="approved")
    url = f"/api/v1/finance/settlements/{settlement.id}"

    unknown = client.put(url, json={"action": "refund"}, headers=headers(tenant.id))
    assert unknown.status_code == 400
    assert unknown.json()["error"]["kind"] == "invalid_parameter"

    bad_method = client.put(url, json={"action": "pay", "paymentMethod": "iou"}, headers=headers(tenant.id))
    assert bad_method.status_code == 400

    missing = client.put("/api/v1/finance/settlements/9999", json={"action": "pay"}, headers=headers(tenant.id))
    assert missing.status_code == 404


def test_failed_payment_rolls_back_everything(
    client, headers, seed, session_factory, branches, monkeypatch
) -> None:
    tenant, north, south = branches
    settlement = seed.settlement(tenant.id, north.id, south.id, 100, status="approved")
    before = _state(session_factory, settlement.id)

    build_entries = settlements._ledger_entries

    def corrupt_entries(*args, **kwargs):
        entries = build_entries(*args, **kwargs)
        entries[1].transaction_type = "gift"
        return entries

    monkeypatch.setattr(settlements, "_ledger_entries", corrupt_entries)
    response = client.put(
        f"/api/v1/finance/settlements/{settlement.id}", json={"action": "pay"}, headers=headers(tenant.id)
    )
    assert response.status_code == 500
    body = response.json()
    assert body["error"]["kind"] == "data_unavailable"
    assert "INSERT" not in body["error"]["message"]
    assert _state(session_factory, settlement.id) == before


def test_full_lifecycle_and_listing(client, headers, branches) -> None:
    tenant, north, south = branches
    admin = headers(tenant.id)
    created = client.post(
        "/api/v1/finance/settlements",
        json={
            "fromBranchId": north.id,
            "toBranchId": south.id,
            "settlementType": "expense_sharing",
            "amount": 300,
            "description": "Shared rent March",
        },
        headers=admin,
    ).json()["data"]
    client.post(
        "/api/v1/finance/settlements",
        json={"fromBranchId": south.id, "toBranchId": north.id, "settlementType": "cash_transfer", "amount": 50},
        headers=admin,
    )
    url = f"/api/v1/finance/settlements/{created['settlement_id']}"

    assert client.put(url, json={"action": "approve"}, headers=admin).json()["data"]["status"] == "approved"
    paid = client.put(url, json={"action": "pay", "notes": "settled"}, headers=admin).json()["data"]
    assert paid["payment_method"] == "transfer"
    assert paid["notes"] == "settled"
    assert [entry["action"] for entry in paid["history"]] == ["created", "approved", "paid"]

    listing = client.get("/api/v1/finance/settlements", params={"status": "paid"}, headers=admin).json()
    assert [item["settlement_id"] for item in listing["data"]] == [created["settlement_id"]]
    assert listing["meta"]["summary"] == {"paid": {"count": 1, "total_amount": 300.0}}

    search = client.get("/api/v1/finance/settlements", params={"search": "rent"}, headers=admin).json()
    assert len(search["data"]) == 1

    page = client.get("/api/v1/finance/settlements", params={"limit": 1}, headers=admin).json()
    assert len(page["data"]) == 1
    assert page["meta"]["page"]["cursor"] == str(created["settlement_id"])
    assert page["meta"]["summary"]["pending"]["count"] == 1


@pytest.mark.parametrize("params", [{"status": "archived"}, {"settlementType": "gift"}])
def test_unknown_listing_filters_are_rejected(client, headers, seed, branches, params) -> None:
    tenant, north, south = branches
    seed.settlement(tenant.id, north.id, south.id, 100)
    response = client.get("/api/v1/finance/settlements", params=params, headers=headers(tenant.id))
    assert response.status_code == 400
    assert response.json()["error"]["kind"] == "invalid_parameter"

    every = client.get("/api/v1/finance/settlements", params={"status": "all"}, headers=headers(tenant.id))
    assert every.status_code == 200
    assert len(every.json()["data"]) == 1
