"""End-to-end tests over HTTP with an in-memory engine and a fake clock."""

import pytest
from fastapi.testclient import TestClient

from delivery_dispatch.config import DispatchSettings
from delivery_dispatch.main import create_app

pytestmark = pytest.mark.integration

ORIGIN = (-3.1120367, -60.0348224)


@pytest.fixture()
def client(engine):
    app = create_app(engine=engine, settings=DispatchSettings(), start_ticker=False)
    with TestClient(app) as c:
        yield c


def _post_order(client, north_km=0.0, address="Rua A, 100"):
    lat, lng = ORIGIN[0] + north_km / 111.0, ORIGIN[1]
    resp = client.post("/orders", json={"address": address, "lat": lat, "lng": lng})
    assert resp.status_code == 201, resp.text
    return resp.json()


def _available_courier(client, name, phone):
    courier = client.post("/couriers", json={"name": name, "phone": phone}).json()
    resp = client.post(f"/couriers/{courier['courier_id']}/available")
    assert resp.status_code == 200
    return resp.json()


def test_health(client):
    assert client.get("/health").json()["ok"] is True


def test_full_delivery_flow(client):
    a = _post_order(client, 0.0)
    b = _post_order(client, 1.0)
    assert a["sequence"] == 1 and a["delivery_price"] == 5.0

    routes = client.get("/routes").json()
    assert len(routes) == 1
    route = routes[0]
    assert route["order_ids"] == [a["order_id"], b["order_id"]]

    courier = _available_courier(client, "Ana", "+55 92 9111-0000")
    suggestion = client.get(f"/routes/{route['route_id']}/suggest-courier").json()
    assert suggestion["reason"] == "never served today"

    assigned = client.post(f"/routes/{route['route_id']}/assign/auto").json()
    assert assigned["courier"]["courier_id"] == courier["courier_id"]
    assert assigned["route"]["status"] == "ASSIGNED"

    current = client.get(f"/couriers/{courier['courier_id']}/current-route")
    assert current.json()["route_id"] == route["route_id"]

    resp = client.post(f"/routes/{route['route_id']}/start", json={"courier_id": courier["courier_id"]})
    assert resp.json()["status"] == "IN_PROGRESS"

    for oid in route["order_ids"]:
        resp = client.post(f"/orders/{oid}/delivered", json={"courier_id": courier["courier_id"]})
        assert resp.json()["status"] == "DELIVERED"

    assert client.get(f"/routes/{route['route_id']}").json()["status"] == "DONE"
    assert client.get(f"/couriers/{courier['courier_id']}/current-route").status_code == 404
    history = client.get(f"/couriers/{courier['courier_id']}/history").json()["history"]
    assert [r["route_id"] for r in history] == [route["route_id"]]

    report = client.get("/reports/orders").json()
    assert report["totals"]["delivered_count"] == 2


def test_dispatch_errors_render_kind_and_status(client):
    _post_order(client, 0.0)
    _post_order(client, 1.0)
    route = client.get("/routes").json()[0]
    courier = _available_courier(client, "Ana", "+55 92 9111-0000")
    other = _available_courier(client, "Bia", "+55 92 9111-0001")
    client.post(f"/routes/{route['route_id']}/assign", json={"courier_id": courier["courier_id"]})

    resp = client.post(f"/routes/{route['route_id']}/start", json={"courier_id": other["courier_id"]})
    assert resp.status_code == 403
    assert resp.json()["error"] == "Forbidden"

    resp = client.post(f"/couriers/{courier['courier_id']}/offline")
    assert resp.status_code == 409
    assert resp.json()["error"] == "ActiveRouteExists"

    resp = client.delete(f"/routes/{route['route_id']}")
    assert resp.status_code == 409
    assert resp.json()["transition"] == "ASSIGNED->deleted"

    assert client.delete(f"/routes/{route['route_id']}", params={"force": "true"}).status_code == 204
    assert client.get(f"/routes/{route['route_id']}").status_code == 404
    assert {o["status"] for o in client.get("/orders").json()} == {"PENDING"}


def test_manual_route_errors(client):
    assert client.post("/routes/manual", json={"order_ids": []}).json()["error"] == "EmptySelection"
    resp = client.post("/routes/manual", json={"order_ids": ["missing"]})
    assert resp.status_code == 404


def test_invalid_order_body(client):
    resp = client.post("/orders", json={"address": "Rua A", "lat": 123.0, "lng": 0.0})
    assert resp.status_code == 422


def test_routing_config_update(client):
    resp = client.put("/routing-config", json={"max_batch": 3})
    assert resp.status_code == 200
    assert resp.json()["max_batch"] == 3
    assert client.get("/routing-config").json()["max_batch"] == 3

    resp = client.put("/routing-config", json={"min_batch": 4})
    assert resp.status_code == 422


def test_manual_tick(client, clock):
    order = _post_order(client, 0.0)
    assert client.post("/dispatch/tick").json()["outcome"] == "insufficient_volume"

    clock.advance(minutes=25)
    body = client.post("/dispatch/tick").json()
    assert body["skipped"] is False
    assert body["outcome"] == "batched"
    assert body["routes"][0]["order_ids"] == [order["order_id"]]


def test_order_and_courier_admin(client):
    a = _post_order(client, 0.0)
    b = _post_order(client, 1.0)
    route = client.get("/routes").json()[0]
    courier = _available_courier(client, "Ana", "+55 92 9111-0000")
    client.post(f"/routes/{route['route_id']}/assign", json={"courier_id": courier["courier_id"]})

    resp = client.put(f"/orders/{a['order_id']}", json={"address": "Rua Nova, 5"})
    assert resp.json()["address"] == "Rua Nova, 5"

    assert client.delete(f"/orders/{a['order_id']}").status_code == 409
    assert client.delete(f"/couriers/{courier['courier_id']}").json()["error"] == "ActiveRouteExists"

    for oid in (a["order_id"], b["order_id"]):
        assert client.delete(f"/orders/{oid}", params={"force": "true"}).status_code == 204
    assert client.get(f"/routes/{route['route_id']}").json()["status"] == "DONE"

    resp = client.put(f"/couriers/{courier['courier_id']}", json={"name": "Ana Paula"})
    assert resp.json()["name"] == "Ana Paula"
    assert client.delete(f"/couriers/{courier['courier_id']}").status_code == 204
    assert client.get("/couriers").json() == []
