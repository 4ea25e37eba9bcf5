def test_root_and_health(client) -> None:
    assert client.get("/").json() == {"status": "ok"}
    assert client.get("/health").json() == {"status": "healthy"}


def test_create_tenant_branch_flow(client, headers) -> None:
    tenant_resp = client.post("/api/v1/tenants", json={"name": "Kopi Nusantara", "is_active": True})
    assert tenant_resp.status_code == 200
    body = tenant_resp.json()
    tenant_id = body["data"]["tenant_id"]
    assert body["meta"]["request_id"].startswith("req_")

    fetched = client.get(f"/api/v1/tenants/{tenant_id}").json()["data"]
    assert fetched["name"] == "Kopi Nusantara"
    assert fetched["status"] == "ACTIVE"

    branch_resp = client.post(
        "/api/v1/branches",
        json={"name": "Kemang", "code": "JKT-01", "city": "Jakarta", "timezone": "Asia/Jakarta"},
        headers=headers(tenant_id),
    )
    assert branch_resp.status_code == 200
    branch = branch_resp.json()["data"]
    assert branch["branch_id"] > 0
    assert branch["tenant_id"] == tenant_id
    assert branch["is_active"] is True


def test_missing_tenant_uses_error_envelope(client) -> None:
    response = client.get("/api/v1/tenants/999")
    assert response.status_code == 404
    body = response.json()
    assert body["error"] == {"kind": "not_found", "message": "tenant not found"}
    assert "request_id" in body["meta"]


def test_list_branches_paginates_by_id(client, headers, seed) -> None:
    tenant = seed.tenant()
    other = seed.tenant("Other")
    created = [seed.branch(tenant.id, name) for name in ("Alpha", "Bravo", "Charlie")]
    seed.branch(tenant.id, "Closed", is_active=False)
    seed.branch(other.id, "Foreign")

    first = client.get(
        "/api/v1/branches", params={"limit": 2, "is_active": True}, headers=headers(tenant.id)
    ).json()
    assert [item["name"] for item in first["data"]] == ["Alpha", "Bravo"]
    cursor = first["meta"]["page"]["cursor"]
    assert cursor == str(created[1].id)

    second = client.get(
        "/api/v1/branches",
        params={"limit": 2, "is_active": True, "cursor": cursor},
        headers=headers(tenant.id),
    ).json()
    assert [item["name"] for item in second["data"]] == ["Charlie"]

    everything = client.get("/api/v1/branches", headers=headers(tenant.id)).json()["data"]
    assert len(everything) == 4


def test_branches_require_identity(client) -> None:
    response = client.get("/api/v1/branches")
    assert response.status_code == 401
    assert response.json()["error"]["kind"] == "unauthorized"

    bad = client.get("/api/v1/branches", headers={"X-Tenant-Id": "abc", "X-User-Id": "u"})
    assert bad.status_code == 401
