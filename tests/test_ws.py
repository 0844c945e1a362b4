import pytest
from fastapi.testclient import TestClient
from starlette.websockets import WebSocketDisconnect

from agrimarket import main
from agrimarket.auth_utils import create_access_token


@pytest.fixture
def ws_client(market_app, monkeypatch):
    async def no_init_db():
        pass

    # tables already exist in the test database
    monkeypatch.setattr(main, "init_db", no_init_db)
    with TestClient(market_app) as client:
        yield client


def sign_up(client, email, role, full_name):
    response = client.post("/api/register", json={
        "fullName": full_name, "email": email, "password": "secret123", "role": role,
    })
    assert response.status_code == 201, response.text
    return response.json()["accessToken"]


def auth(token):
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def accounts(ws_client):
    buyer = sign_up(ws_client, "bea@market.io", "buyer", "Bea Buyer")
    farmer = sign_up(ws_client, "fern@greenacre.farm", "farmer", "Green Acre")
    response = ws_client.post("/api/products", headers=auth(farmer), json={
        "name": "Heirloom Tomatoes", "price": 5.0, "stock": 10,
    })
    product = response.json()
    ws_client.post("/api/cart/items", headers=auth(buyer), json={"productId": product["id"], "quantity": 2})
    return buyer, farmer, product


def test_feed_rejects_invalid_token(ws_client):
    with pytest.raises(WebSocketDisconnect) as excinfo:
        with ws_client.websocket_connect("/ws/orders?token=not-a-token"):
            pass
    assert excinfo.value.code == 1008


def test_feed_rejects_unknown_user(ws_client):
    token = create_access_token({"sub": "ghost@market.io", "id": "ghost", "role": "buyer"})
    with pytest.raises(WebSocketDisconnect) as excinfo:
        with ws_client.websocket_connect(f"/ws/orders?token={token}"):
            pass
    assert excinfo.value.code == 1008


def test_buyer_feed_pushes_after_checkout(ws_client, accounts):
    buyer, _, product = accounts

    with ws_client.websocket_connect(f"/ws/orders?token={buyer}") as ws:
        assert ws.receive_json() == []

        response = ws_client.post("/api/checkout", headers=auth(buyer), json={})
        assert response.status_code == 201
        order_id = response.json()["orderId"]

        [order] = ws.receive_json()
        assert order["id"] == order_id
        assert order["status"] == "Pending"
        assert order["total"] == 10.0
        assert [(i["productId"], i["quantity"]) for i in order["items"]] == [(product["id"], 2)]


def test_farmer_and_buyer_feeds_follow_status_change(ws_client, accounts):
    buyer, farmer, _ = accounts

    with ws_client.websocket_connect(f"/ws/orders?token={farmer}") as farmer_ws, \
            ws_client.websocket_connect(f"/ws/orders?token={buyer}") as buyer_ws:
        assert farmer_ws.receive_json() == []
        assert buyer_ws.receive_json() == []

        order_id = ws_client.post("/api/checkout", headers=auth(buyer), json={}).json()["orderId"]
        assert [o["id"] for o in farmer_ws.receive_json()] == [order_id]
        assert [o["id"] for o in buyer_ws.receive_json()] == [order_id]

        response = ws_client.patch(f"/api/orders/{order_id}/status", headers=auth(farmer), json={"status": "Delivered"})
        assert response.status_code == 200

        assert [o["status"] for o in farmer_ws.receive_json()] == ["Delivered"]
        assert [o["status"] for o in buyer_ws.receive_json()] == ["Delivered"]


def test_closed_socket_stops_receiving(ws_client, market_app, accounts):
    buyer, _, _ = accounts

    with ws_client.websocket_connect(f"/ws/orders?token={buyer}") as ws:
        assert ws.receive_json() == []
    feed = market_app.state.feed
    ws_client.post("/api/checkout", headers=auth(buyer), json={})

    assert len(feed) == 0
