import pytest
import requests
from sqlalchemy import func, select

from branchops import notifications
from branchops.models import DashboardNotification, FinanceReconciliation
from branchops.notifications import RECONCILIATION_COMPLETED

URL = "/api/v1/finance/reconciliation"
DAY = {"startDate": "2026-03-02", "endDate": "2026-03-02"}


@pytest.fixture
def books(seed):
    tenant = seed.tenant()
    north = seed.branch(tenant.id, "North", code="NTH")
    south = seed.branch(tenant.id, "South", code="STH")
    idle = seed.branch(tenant.id, "Idle", code="IDL")
    closed = seed.branch(tenant.id, "Closed", code="CLS", is_active=False)

    seed.sale(tenant.id, north.id, 1000, tax=100)
    seed.ledger(tenant.id, north.id, 1100)
    seed.shift(tenant.id, north.id, expected=1000, final=1000)

    seed.sale(tenant.id, south.id, 500, payment_method="card")
    seed.shift(tenant.id, south.id, expected=500, final=2000)

    seed.sale(tenant.id, closed.id, 999)
    return tenant, north, south, idle


def test_every_branch_in_scope_gets_a_cash_entry(client, headers, books) -> None:
    tenant, north, south, idle = books
    response = client.post(URL, json=DAY, headers=headers(tenant.id))
    assert response.status_code == 200
    data = response.json()["data"]

    entries = {entry["branchId"]: entry for entry in data["cashReconciliation"]["branches"]}
    assert set(entries) == {north.id, south.id, idle.id}
    assert entries[idle.id] == {
        "branchId": idle.id,
        "branchName": "Idle",
        "branchCode": "IDL",
        "shiftCount": 0,
        "expected": 0.0,
        "actual": 0.0,
        "difference": 0.0,
        "posSales": 0.0,
        "financeTotal": 0.0,
    }
    assert entries[south.id]["difference"] == 1500.0
    assert entries[north.id]["financeTotal"] == 1100.0

    assert data["posSummary"] == {
        "totalTransactions": 2,
        "totalSales": 1500.0,
        "paymentBreakdown": {"cash": 1000.0, "card": 500.0, "ewallet": 0.0, "transfer": 0.0},
        "tax": 100.0,
        "discount": 0.0,
    }
    assert data["financeSummary"] == [{"type": "income", "count": 1, "total": 1100.0}]
    cash = data["cashReconciliation"]
    assert (cash["expected"], cash["actual"], cash["difference"]) == (1500.0, 3000.0, 1500.0)
    assert len(cash["shifts"]) == 2


def test_discrepancies_are_detected_per_branch(client, headers, books) -> None:
    tenant, north, south, _ = books
    data = client.post(URL, json=DAY, headers=headers(tenant.id)).json()["data"]

    found = [(item["branchId"], item["type"], item["severity"]) for item in data["discrepancies"]]
    assert found == [
        (south.id, "cash_difference", "medium"),
        (south.id, "finance_mismatch", "high"),
    ]
    mismatch = data["discrepancies"][1]
    assert mismatch["expected"] == 500.0
    assert mismatch["actual"] == 0.0
    assert mismatch["difference"] == -500.0
    assert data["status"] == "requires_attention"


def test_explicit_branch_selection(client, headers, seed, books) -> None:
    tenant, north, south, _ = books
    seed.settlement(tenant.id, north.id, south.id, 300, status="approved")
    seed.settlement(tenant.id, south.id, north.id, 40, status="pending")

    data = client.post(
        URL, json={**DAY, "branchIds": [north.id]}, headers=headers(tenant.id)
    ).json()["data"]
    assert [branch["id"] for branch in data["branches"]] == [north.id]
    assert data["discrepancies"] == []
    assert data["status"] == "balanced"
    settlements = data["interBranchSettlements"]
    assert (settlements["payable"], settlements["receivable"], settlements["net"]) == (300.0, 0.0, -300.0)
    assert [line["direction"] for line in settlements["transactions"]] == ["outgoing"]

    everyone = client.post(URL, json=DAY, headers=headers(tenant.id)).json()["data"]
    line = everyone["interBranchSettlements"]["transactions"][0]
    assert line["direction"] == "internal"
    assert line["fromBranch"] == {"id": north.id, "name": "North"}
    assert everyone["interBranchSettlements"]["net"] == 0.0


def test_single_branch_id_and_transactions(client, headers, books) -> None:
    tenant, north, _, _ = books
    data = client.post(
        URL,
        json={**DAY, "branchId": north.id, "includeTransactions": True},
        headers=headers(tenant.id),
    ).json()["data"]
    income = data["financeSummary"][0]
    assert income["transactions"][0]["amount"] == 1100.0
    assert income["transactions"][0]["category"] == "Sales"


def test_failed_webhook_does_not_block_the_run(
    client, headers, seed, session_factory, books, monkeypatch
) -> None:
    tenant, *_ = books
    hook = seed.webhook(tenant.id, "https://hooks.example.test/finance", RECONCILIATION_COMPLETED)

    def refuse(*args, **kwargs):
        raise requests.ConnectionError("connection refused")

    monkeypatch.setattr(notifications.requests, "post", refuse)
    response = client.post(URL, json=DAY, headers=headers(tenant.id))
    assert response.status_code == 200
    data = response.json()["data"]
    assert data["notifications"] == [
        {"channel": f"webhook:{hook.id}", "success": False, "detail": "connection refused"},
        {"channel": "dashboard", "success": True, "detail": data["notifications"][1]["detail"]},
    ]

    with session_factory() as session:
        record = session.get(FinanceReconciliation, data["reconciliationId"])
        assert record.status == "requires_attention"
        assert record.channel_results == data["notifications"]
        assert session.scalar(
            select(func.count(DashboardNotification.id)).where(
                DashboardNotification.tenant_id == tenant.id
            )
        ) == 1


def test_saved_runs_can_be_listed_and_read(client, headers, seed, books) -> None:
    tenant, north, *_ = books
    admin = headers(tenant.id)
    first = client.post(URL, json=DAY, headers=admin).json()["data"]
    client.post(URL, json={**DAY, "branchIds": [north.id]}, headers=admin)

    other = seed.tenant("Other")
    assert client.get("/api/v1/finance/reconciliations", headers=headers(other.id)).json()["data"] == []

    listing = client.get("/api/v1/finance/reconciliations", headers=admin).json()["data"]
    assert [item["status"] for item in listing] == ["requires_attention", "balanced"]
    balanced = client.get(
        "/api/v1/finance/reconciliations", params={"status": "balanced"}, headers=admin
    ).json()["data"]
    assert [item["branch_ids"] for item in balanced] == [[north.id]]

    detail = client.get(
        f"/api/v1/finance/reconciliations/{first['reconciliationId']}", headers=admin
    ).json()["data"]
    assert detail["pos_total"] == 1500.0
    assert detail["finance_total"] == 1100.0
    assert detail["cash_difference"] == 1500.0
    assert len(detail["discrepancies"]) == 2

    hidden = client.get(
        f"/api/v1/finance/reconciliations/{first['reconciliationId']}", headers=headers(other.id)
    )
    assert hidden.status_code == 404


@pytest.mark.parametrize(
    "body, status, kind",
    [
        ({**DAY, "branchIds": [9999]}, 404, "not_found"),
        ({"startDate": "2026-03-05", "endDate": "2026-03-01"}, 400, "invalid_parameter"),
        ({"period": "fortnight"}, 400, "invalid_parameter"),
    ],
)
def test_rejected_requests(client, headers, books, body, status, kind) -> None:
    tenant, *_ = books
    response = client.post(URL, json=body, headers=headers(tenant.id))
    assert response.status_code == status
    assert response.json()["error"]["kind"] == kind


def test_identity_is_required(client) -> None:
    response = client.post(URL, json=DAY)
    assert response.status_code == 401
