"""Waiver listing, per-client summaries and statistics."""

import pytest


@pytest.fixture
def waivers(client, login_as, make_visit, seed):
    make_visit(total_cost="1000")
    make_visit(total_cost="500", client_id=seed.other)
    login_as(seed.admin)
    client.post(f"/api/clients/{seed.lab}/settle",
                json={"paymentMode": "UPI", "description": "Q1 | Waiver: Loyalty", "receivedAmount": "900"})
    client.post(f"/api/clients/{seed.other}/settle",
                json={"paymentMode": "Cash", "description": "Q1", "receivedAmount": "250"})

    make_visit(total_cost="300")
    login_as(seed.admin)
    client.post(f"/api/clients/{seed.lab}/settle",
                json={"paymentMode": "UPI", "description": "Q2 | Waiver: Rounding", "receivedAmount": "280"})
    return seed


def test_list_waivers_paginates_newest_first(client, waivers):
    resp = client.get("/api/waivers", query_string={"limit": 2})
    assert resp.status_code == 200
    data = resp.get_json()
    assert data["pagination"] == {"page": 1, "limit": 2, "totalCount": 3, "totalPages": 2}
    assert [w["reason"] for w in data["waivers"]] == ["Rounding", "Discount/Waiver"]
    assert data["waivers"][0]["client_name"] == "City Diagnostic Center"
    assert data["waivers"][0]["created_by_username"] == "admin"

    page_two = client.get("/api/waivers", query_string={"limit": 2, "page": 2}).get_json()
    assert [w["reason"] for w in page_two["waivers"]] == ["Loyalty"]


def test_list_waivers_rejects_bad_paging(client, waivers):
    assert client.get("/api/waivers", query_string={"page": "x"}).status_code == 400


def test_waiver_summary_orders_by_total(client, waivers):
    resp = client.get("/api/waivers/summary")
    assert resp.status_code == 200
    summary = resp.get_json()["summary"]
    assert [s["client_id"] for s in summary] == [waivers.other, waivers.lab]
    other, lab = summary
    assert other["total_waiver_amount"] == 250.0
    assert lab["total_waivers"] == 2
    assert lab["total_waiver_amount"] == 120.0
    assert lab["total_original_balance"] == 1300.0
    assert lab["total_amount_received"] == 1180.0


def test_client_waivers(client, waivers):
    data = client.get(f"/api/waivers/client/{waivers.lab}").get_json()
    assert len(data["waivers"]) == 2
    assert data["summary"]["total_waiver_amount"] == 120.0

    data = client.get(f"/api/waivers/client/{waivers.walk_in}").get_json()
    assert data == {"waivers": [], "summary": None}


def test_waiver_stats(client, waivers):
    resp = client.get("/api/waivers/stats")
    assert resp.status_code == 200
    stats = resp.get_json()

    overall = stats["overall"]
    assert overall["total_waivers"] == 3
    assert overall["total_waiver_amount"] == 370.0
    assert overall["max_waiver_amount"] == 250.0
    assert overall["min_waiver_amount"] == 20.0
    assert overall["clients_with_waivers"] == 2
    assert overall["average_waiver_amount"] == pytest.approx(123.33, abs=0.01)

    by_mode = {m["payment_mode"]: m for m in stats["byPaymentMode"]}
    assert by_mode["Cash"]["total_amount"] == 250.0
    assert by_mode["UPI"]["count"] == 2

    assert len(stats["last30Days"]) == 1
    assert stats["last30Days"][0]["count"] == 3


def test_waiver_stats_empty(client, login_as, seed):
    login_as(seed.admin)
    overall = client.get("/api/waivers/stats").get_json()["overall"]
    assert overall["total_waivers"] == 0
    assert overall["total_waiver_amount"] is None


def test_waivers_admin_only(client, login_as, seed):
    login_as(seed.reception)
    assert client.get("/api/waivers").status_code == 403
    assert client.get("/api/waivers/stats").status_code == 403
