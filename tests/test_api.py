import pytest

from etf_tracker.models.user import Role


@pytest.fixture
def users(make_user, auth_header):
    u = make_user("u")
    v = make_user("v")
    admin = make_user("root", Role.ADMIN)
    return {
        "u": (u, auth_header(u)),
        "v": (v, auth_header(v)),
        "admin": (admin, auth_header(admin)),
    }


def _create_etf(client, headers, ticker="VTI", is_public=False, **extra):
    body = {"ticker": ticker, "description": f"{ticker} fund", "assetClass": "Equity",
            "expenseRatio": 0.03, "isPublic": is_public}
    body.update(extra)
    resp = client.post("/api/etfs", json=body, headers=headers)
    assert resp.status_code == 200, resp.text
    return resp.json()


def test_private_etf_visibility(client, users):
    u, u_headers = users["u"]
    _, v_headers = users["v"]
    _, admin_headers = users["admin"]
    etf = _create_etf(client, u_headers, is_public=False)
    assert etf["userId"] == u.id
    assert etf["expenseRatio"] == pytest.approx(0.03)

    assert client.get(f"/api/etfs/{etf['id']}", headers=v_headers).status_code == 403
    assert client.get(f"/api/etfs/{etf['id']}", headers=admin_headers).status_code == 200
    assert client.get(f"/api/etfs/{etf['id']}", headers=u_headers).status_code == 200
    assert client.get("/api/etfs/9999", headers=u_headers).status_code == 404


def test_create_ignores_client_owner(client, users):
    v, v_headers = users["v"]
    etf = _create_etf(client, v_headers, id=77, userId=12345)
    assert etf["userId"] == v.id
    assert etf["id"] != 77


def test_public_etf_is_read_only_for_others(client, users):
    u, u_headers = users["u"]
    _, v_headers = users["v"]
    etf = _create_etf(client, u_headers, is_public=True)

    assert client.get(f"/api/etfs/{etf['id']}", headers=v_headers).status_code == 200
    resp = client.put(f"/api/etfs/{etf['id']}", json={"ticker": "HACK"}, headers=v_headers)
    assert resp.status_code == 403
    assert client.delete(f"/api/etfs/{etf['id']}", headers=v_headers).status_code == 403


def test_update_keeps_owner(client, users):
    u, u_headers = users["u"]
    v, _ = users["v"]
    _, admin_headers = users["admin"]
    etf = _create_etf(client, u_headers)

    resp = client.put(
        f"/api/etfs/{etf['id']}",
        json={"ticker": "VTI", "description": "admin edit", "userId": v.id, "isPublic": True},
        headers=admin_headers,
    )
    assert resp.status_code == 200
    body = resp.json()
    assert body["userId"] == u.id
    assert body["id"] == etf["id"]
    assert body["isPublic"] is True


def test_blank_ticker_is_rejected(client, users):
    _, u_headers = users["u"]
    resp = client.post("/api/etfs", json={"ticker": "  "}, headers=u_headers)
    assert resp.status_code == 400
    assert resp.json()["detail"] == "Ticker is required"
    resp = client.post("/api/etfs", json={"ticker": "X", "expenseRatio": "lots"}, headers=u_headers)
    assert resp.status_code == 400


def test_list_etfs_with_search_and_sort(client, users):
    _, u_headers = users["u"]
    _, v_headers = users["v"]
    _create_etf(client, u_headers, "VTI", assetClass="Equity")
    _create_etf(client, u_headers, "BND", assetClass="Bond", is_public=True)
    _create_etf(client, v_headers, "VXUS", assetClass="Equity")

    resp = client.get("/api/etfs", params={"search": "v", "sortBy": "ticker", "sortDirection": "DESC"},
                      headers=u_headers)
    assert [e["ticker"] for e in resp.json()] == ["VTI"]

    resp = client.get("/api/etfs", params={"sortBy": "assetClass"}, headers=u_headers)
    assert [e["ticker"] for e in resp.json()] == ["BND", "VTI"]

    resp = client.get("/api/etfs", params={"search": "  ", "sortBy": "whatever"}, headers=v_headers)
    assert [e["ticker"] for e in resp.json()] == ["BND", "VXUS"]


def test_portfolio_membership_flow(client, users):
    u, u_headers = users["u"]
    _, v_headers = users["v"]
    etf = _create_etf(client, u_headers)
    resp = client.post("/api/portfolios", json={"name": "Core", "isPublic": False}, headers=u_headers)
    assert resp.status_code == 200
    portfolio = resp.json()
    assert portfolio["userId"] == u.id
    base = f"/api/portfolios/{portfolio['id']}/etfs"

    resp = client.post(f"{base}/{etf['id']}", headers=u_headers)
    assert resp.status_code == 200
    assert resp.json()["etfId"] == etf["id"]

    resp = client.post(f"{base}/{etf['id']}", headers=u_headers)
    assert resp.status_code == 409
    assert resp.json()["detail"] == "ETF already in portfolio"

    assert [e["ticker"] for e in client.get(base, headers=u_headers).json()] == ["VTI"]
    assert client.get(base, headers=v_headers).status_code == 403
    assert client.post(f"{base}/{etf['id']}", headers=v_headers).status_code == 403
    assert client.post(f"{base}/9999", headers=u_headers).status_code == 404

    assert client.delete(f"{base}/{etf['id']}", headers=u_headers).status_code == 204
    assert client.delete(f"{base}/{etf['id']}", headers=u_headers).status_code == 204
    assert client.get(base, headers=u_headers).json() == []


def test_cannot_add_someone_elses_private_etf(client, users):
    _, u_headers = users["u"]
    _, v_headers = users["v"]
    private = _create_etf(client, u_headers, is_public=False)
    portfolio = client.post("/api/portfolios", json={"name": "Mine"}, headers=v_headers).json()
    resp = client.post(f"/api/portfolios/{portfolio['id']}/etfs/{private['id']}", headers=v_headers)
    assert resp.status_code == 403


def test_delete_portfolio_keeps_etfs(client, users):
    _, u_headers = users["u"]
    etf = _create_etf(client, u_headers)
    portfolio = client.post("/api/portfolios", json={"name": "Core"}, headers=u_headers).json()
    client.post(f"/api/portfolios/{portfolio['id']}/etfs/{etf['id']}", headers=u_headers)

    assert client.delete(f"/api/portfolios/{portfolio['id']}", headers=u_headers).status_code == 204
    assert client.get(f"/api/portfolios/{portfolio['id']}", headers=u_headers).status_code == 404
    assert client.get(f"/api/etfs/{etf['id']}", headers=u_headers).status_code == 200


def test_portfolio_listing_scope(client, users):
    _, u_headers = users["u"]
    _, v_headers = users["v"]
    _, admin_headers = users["admin"]
    client.post("/api/portfolios", json={"name": "Secret"}, headers=u_headers)
    client.post("/api/portfolios", json={"name": "Shared", "isPublic": True}, headers=u_headers)
    client.post("/api/portfolios", json={"name": "Alpha"}, headers=v_headers)

    names = [p["name"] for p in client.get("/api/portfolios", headers=v_headers).json()]
    assert names == ["Alpha", "Shared"]
    names = [p["name"] for p in client.get("/api/portfolios", params={"search": "s"}, headers=v_headers).json()]
    assert names == ["Shared"]
    names = [p["name"] for p in client.get("/api/portfolios", headers=admin_headers).json()]
    assert names == ["Alpha", "Secret", "Shared"]


def test_user_management_requires_admin(client, users):
    _, u_headers = users["u"]
    assert client.get("/api/auth/users", headers=u_headers).status_code == 403
    resp = client.post("/api/auth/users", json={"username": "x", "password": "y", "role": "USER"},
                       headers=u_headers)
    assert resp.status_code == 403


def test_admin_user_lifecycle(client, users):
    _, admin_headers = users["admin"]

    resp = client.post("/api/auth/users", json={"username": " new ", "password": "pw", "role": "admin"},
                       headers=admin_headers)
    assert resp.status_code == 200
    created = resp.json()
    assert created == {"id": created["id"], "username": "new", "role": "ADMIN"}

    resp = client.post("/api/auth/users", json={"username": "new", "password": "pw", "role": "USER"},
                       headers=admin_headers)
    assert resp.status_code == 400
    assert resp.json()["detail"] == "Username is already taken"

    resp = client.post("/api/auth/users", json={"username": "other", "password": "pw", "role": "GOD"},
                       headers=admin_headers)
    assert resp.status_code == 400

    resp = client.put(f"/api/auth/users/{created['id']}", json={"username": "u", "role": "USER"},
                      headers=admin_headers)
    assert resp.status_code == 400

    resp = client.put(
        f"/api/auth/users/{created['id']}",
        json={"username": "renamed", "role": "USER", "newPassword": "fresh"},
        headers=admin_headers,
    )
    assert resp.status_code == 200
    assert resp.json()["role"] == "USER"
    assert client.post("/api/login", json={"username": "renamed", "password": "fresh"}).status_code == 200

    listed = client.get("/api/auth/users", params={"search": "REN"}, headers=admin_headers).json()
    assert [user["username"] for user in listed] == ["renamed"]

    assert client.delete(f"/api/auth/users/{created['id']}", headers=admin_headers).status_code == 204
    assert client.get(f"/api/auth/users/{created['id']}", headers=admin_headers).status_code == 404
    assert client.delete(f"/api/auth/users/{created['id']}", headers=admin_headers).status_code == 404


def test_admin_cannot_delete_self(client, users):
    admin, admin_headers = users["admin"]
    resp = client.delete(f"/api/auth/users/{admin.id}", headers=admin_headers)
    assert resp.status_code == 400
    assert resp.json()["detail"] == "Cannot delete your own account"


def test_health(client):
    assert client.get("/health").json() == {"status": "ok"}


def test_out_of_range_ids_are_not_found(client, users):
    _, u_headers = users["u"]
    _, admin_headers = users["admin"]
    huge = 99999999999999999999
    assert client.get(f"/api/etfs/{huge}", headers=u_headers).status_code == 404
    assert client.put(f"/api/etfs/{huge}", json={"ticker": "X"}, headers=u_headers).status_code == 404
    assert client.delete(f"/api/portfolios/{huge}", headers=u_headers).status_code == 404
    assert client.get(f"/api/auth/users/{huge}", headers=admin_headers).status_code == 404

    portfolio = client.post("/api/portfolios", json={"name": "Core"}, headers=u_headers).json()
    base = f"/api/portfolios/{portfolio['id']}/etfs/{huge}"
    assert client.post(base, headers=u_headers).status_code == 404
    assert client.delete(base, headers=u_headers).status_code == 204


def test_expense_ratio_bounds(client, users):
    _, u_headers = users["u"]
    etf = _create_etf(client, u_headers, expenseRatio="99.9999")
    assert etf["expenseRatio"] == 99.9999
    resp = client.post("/api/etfs", json={"ticker": "BIG", "expenseRatio": 100}, headers=u_headers)
    assert resp.status_code == 400
    resp = client.post("/api/etfs", json={"ticker": "NEG", "expenseRatio": -0.01}, headers=u_headers)
    assert resp.status_code == 400
