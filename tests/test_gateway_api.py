from __future__ import annotations

from fastapi.testclient import TestClient
from sqlalchemy import func, select
from sqlalchemy.orm import Session

import apps.cafe.app.main as gateway
from apps.cafe.app.errors import StoreUnavailable
from apps.cafe.app.models import Order, Product

from conftest import ADMIN, KIOSK, KITCHEN


def _order_body(*lines, **extra):
    body = {"orderType": "takeaway", "items": [{"productId": pid, "qty": qty} for pid, qty in lines]}
    body.update(extra)
    return body


def _orders_in_store(engine) -> int:
    with Session(engine) as s:
        return s.execute(select(func.count()).select_from(Order)).scalar_one()


def test_requests_without_a_known_surface_are_unauthorized(client, make_product):
    pid = make_product()
    resp = client.post("/orders", json=_order_body((pid, 1)))
    assert resp.status_code == 401
    resp = client.post("/orders", json=_order_body((pid, 1)), headers={"Authorization": "Bearer nope"})
    assert resp.status_code == 401


def test_bearer_tokens_map_to_surfaces(client, make_product, monkeypatch):
    pid = make_product()
    monkeypatch.setitem(gateway.ROLE_TOKENS, "kiosk", {"kiosk-token-1"})
    monkeypatch.setitem(gateway.ROLE_TOKENS, "kitchen", {"kitchen-token-1"})
    resp = client.post("/orders", json=_order_body((pid, 1)), headers={"Authorization": "Bearer kiosk-token-1"})
    assert resp.status_code == 201, resp.text
    resp = client.get("/kitchen/tickets", headers={"Authorization": "Bearer kitchen-token-1"})
    assert resp.status_code == 200


def test_kiosk_order_to_ready_across_surfaces(client, make_product):
    espresso = make_product("Espresso", 250, stock=10)
    croissant = make_product("Croissant", 220, stock=10)

    resp = client.post("/orders", json=_order_body((espresso, 2), (croissant, 1)), headers=KIOSK)
    assert resp.status_code == 201, resp.text
    order = resp.json()
    oid = order["id"]
    assert order["status"] == "pending"
    assert order["payment_status"] == "pending"
    assert order["total_cents"] == 792
    assert order["order_number"].startswith("CMD-")

    # unpaid: not on the kitchen display yet
    assert client.get("/kitchen/tickets", headers=KITCHEN).json() == []

    resp = client.post(f"/admin/orders/{oid}/payment", json={"status": "paid", "method": "cash"}, headers=ADMIN)
    assert resp.status_code == 200, resp.text
    tickets = client.get("/kitchen/tickets", headers=KITCHEN).json()
    assert [t["id"] for t in tickets] == [oid]
    assert [i["kitchen_status"] for i in tickets[0]["items"]] == ["queued", "queued"]

    for item in tickets[0]["items"]:
        resp = client.post(f"/kitchen/orders/{oid}/items/{item['id']}/status", json={"status": "done"}, headers=KITCHEN)
        assert resp.status_code == 200, resp.text
    assert resp.json()["status"] == "ready"
    assert client.get("/kitchen/tickets", headers=KITCHEN).json() == []

    resp = client.post(f"/kitchen/orders/{oid}/status", json={"status": "served"}, headers=KITCHEN)
    assert resp.status_code == 200
    assert resp.json()["served_at"]

    by_id = client.get(f"/orders/{oid}", headers=KIOSK).json()
    by_number = client.get(f"/orders/by-number/{order['order_number']}", headers=KIOSK).json()
    assert by_id["status"] == by_number["status"] == "served"


def test_unauthorized_writes_never_reach_the_store(client, make_product, cafe_engine):
    pid = make_product(stock=5)
    resp = client.post("/orders", json=_order_body((pid, 1)), headers=KITCHEN)
    assert resp.status_code == 403
    assert resp.json()["error"] == "forbidden"
    assert _orders_in_store(cafe_engine) == 0

    oid = client.post("/orders", json=_order_body((pid, 1)), headers=KIOSK).json()["id"]
    assert client.post(f"/admin/orders/{oid}/cancel", headers=KIOSK).status_code == 403
    assert client.post(f"/admin/orders/{oid}/cancel", headers=KITCHEN).status_code == 403
    resp = client.post(f"/kitchen/orders/{oid}/status", json={"status": "cancelled"}, headers=KITCHEN)
    assert resp.status_code == 403
    assert client.post(f"/kitchen/orders/{oid}/status", json={"status": "preparing"}, headers=ADMIN).status_code == 403
    assert client.put("/admin/settings/table_number_enabled", json={"value": True}, headers=KITCHEN).status_code == 403
    assert client.get("/kitchen/tickets", headers=KIOSK).status_code == 403
    assert client.get(f"/orders/{oid}", headers=KIOSK).json()["status"] == "pending"


def test_admin_cancel_restores_stock_and_leaves_the_queue(client, make_product, cafe_engine):
    pid = make_product(stock=4)
    oid = client.post("/orders", json=_order_body((pid, 3)), headers=KIOSK).json()["id"]
    client.post(f"/kitchen/orders/{oid}/status", json={"status": "preparing"}, headers=KITCHEN)
    assert [t["id"] for t in client.get("/kitchen/tickets", headers=KITCHEN).json()] == [oid]

    resp = client.post(f"/admin/orders/{oid}/cancel", json={"reason": "wrong order"}, headers=ADMIN)
    assert resp.status_code == 200, resp.text
    assert resp.json()["status"] == "cancelled"
    assert resp.json()["cancel_reason"] == "wrong order"
    assert client.get("/kitchen/tickets", headers=KITCHEN).json() == []
    with Session(cafe_engine) as s:
        assert s.get(Product, pid).stock == 4


def test_out_of_stock_is_a_renderable_reason(client, make_product):
    pid = make_product("Orange juice", 400, stock=1)
    resp = client.post("/orders", json=_order_body((pid, 2)), headers=KIOSK)
    assert resp.status_code == 409
    body = resp.json()
    assert body["error"] == "insufficient_stock"
    assert body["detail"] == "only 1 left of Orange juice"
    assert body["retryable"] is False
    assert body["context"] == {"product_id": pid, "requested": 2, "available": 1}


def test_invalid_transition_names_the_reason(client, make_product):
    pid = make_product()
    oid = client.post("/orders", json=_order_body((pid, 1)), headers=KIOSK).json()["id"]
    client.post(f"/kitchen/orders/{oid}/status", json={"status": "preparing"}, headers=KITCHEN)
    resp = client.post(f"/kitchen/orders/{oid}/status", json={"status": "ready"}, headers=KITCHEN)
    assert resp.status_code == 409
    body = resp.json()
    assert body["error"] == "invalid_transition"
    assert "payment is pending" in body["detail"]
    assert body["context"]["current"] == "preparing"

    resp = client.post("/kitchen/orders/nope/status", json={"status": "preparing"}, headers=KITCHEN)
    assert resp.status_code == 404


def test_table_toggle_applies_to_kiosk_orders(client, make_product):
    pid = make_product()
    resp = client.put("/admin/settings/table_number_enabled", json={"value": True}, headers=ADMIN)
    assert resp.status_code == 200, resp.text
    assert resp.json()["type"] == "boolean"
    assert client.get("/settings/table_number_enabled").json()["value"] is True

    resp = client.post("/orders", json=_order_body((pid, 1), orderType="dine-in"), headers=KIOSK)
    assert resp.status_code == 400
    assert resp.json()["error"] == "invalid_input"
    resp = client.post("/orders", json=_order_body((pid, 1), orderType="dine-in", tableNumber=7), headers=KIOSK)
    assert resp.status_code == 201
    assert resp.json()["table_number"] == 7

    settings = client.get("/admin/settings", headers=ADMIN).json()
    assert {"table_number_enabled", "tax_rate_pct"} <= {d["key"] for d in settings}


def test_empty_basket_is_invalid_input(client):
    resp = client.post("/orders", json=_order_body(), headers=KIOSK)
    assert resp.status_code == 400
    assert resp.json()["detail"] == "order has no items"


def test_idempotency_key_header(client, make_product):
    pid = make_product(stock=5)
    headers = {**KIOSK, "Idempotency-Key": "kiosk-2-0001"}
    first = client.post("/orders", json=_order_body((pid, 1)), headers=headers)
    again = client.post("/orders", json=_order_body((pid, 1)), headers=headers)
    assert first.status_code == again.status_code == 201
    assert first.json()["id"] == again.json()["id"]
    clash = client.post("/orders", json=_order_body((pid, 2)), headers=headers)
    assert clash.status_code == 409
    assert clash.json()["error"] == "idempotency_conflict"


def test_admin_aggregate_and_summary(client, make_product):
    pid = make_product("Espresso", 200, stock=10)
    a = client.post("/orders", json=_order_body((pid, 1)), headers=KIOSK).json()["id"]
    b = client.post("/orders", json=_order_body((pid, 1)), headers=KIOSK).json()["id"]
    client.post(f"/admin/orders/{a}/payment", json={"status": "completed"}, headers=ADMIN)
    client.post(f"/admin/orders/{b}/cancel", headers=ADMIN)

    page = client.get("/admin/orders", params={"limit": 1}, headers=ADMIN).json()
    assert page["total"] == 2
    assert page["limit"] == 1
    assert len(page["items"]) == 1

    summary = client.get("/admin/orders/summary", headers=ADMIN).json()
    assert summary["counts"]["pending"] == 1
    assert summary["counts"]["cancelled"] == 1
    assert summary["paid_revenue_cents"] == 220
    assert client.get("/admin/orders/summary", headers=KITCHEN).status_code == 403


def test_catalog_and_inventory_admin(client):
    resp = client.post(
        "/admin/products",
        json={"name": "Brownie", "price_cents": 300, "stock": 2, "min_stock": 3, "category": "pastry"},
        headers=ADMIN,
    )
    assert resp.status_code == 201, resp.text
    product = resp.json()
    assert product["availability"] == "low"
    pid = product["id"]

    assert [p["id"] for p in client.get("/admin/inventory/low-stock", headers=ADMIN).json()] == [pid]
    resp = client.post(f"/admin/products/{pid}/stock", json={"delta": 10}, headers=ADMIN)
    assert resp.json()["stock"] == 12
    assert resp.json()["availability"] == "available"
    resp = client.post(f"/admin/products/{pid}/stock", json={"delta": -20}, headers=ADMIN)
    assert resp.status_code == 400

    assert [p["name"] for p in client.get("/products").json()] == ["Brownie"]
    assert client.delete(f"/admin/products/{pid}", headers=ADMIN).json() == {"ok": True, "id": pid}
    assert client.get("/products").json() == []
    assert client.post("/admin/products", json={"name": "X", "price_cents": 1}, headers=KIOSK).status_code == 403


def test_transient_failures_are_retryable_responses(client, make_product, monkeypatch):
    pid = make_product()

    def _busy(*args, **kwargs):
        raise StoreUnavailable("store is busy or unreachable")

    monkeypatch.setattr(gateway.orders, "create_order", _busy)
    resp = client.post("/orders", json=_order_body((pid, 1)), headers=KIOSK)
    assert resp.status_code == 503
    assert resp.json()["retryable"] is True
    assert resp.headers["Retry-After"] == "1"


def test_unhandled_errors_are_scrubbed_in_prod(cafe_engine, settings_service, monkeypatch):
    monkeypatch.setenv("ENV", "prod")

    def _broken(s):
        raise RuntimeError("db password is hunter2")

    monkeypatch.setattr(gateway.inventory, "list_catalog", _broken)

    def _session():
        with Session(cafe_engine) as s:
            yield s

    gateway.app.dependency_overrides[gateway.get_session] = _session
    try:
        client = TestClient(gateway.app, raise_server_exceptions=False)
        resp = client.get("/products", headers={"X-Request-ID": "req-123"})
    finally:
        gateway.app.dependency_overrides.clear()
    assert resp.status_code == 500
    body = resp.json()
    assert body["detail"] == "internal error"
    assert body["request_id"] == "req-123"
