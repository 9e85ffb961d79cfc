"""HTTP surface: routing, envelopes and business-code to status mapping."""
import json

import httpx
import pytest
import pytest_asyncio

from api.dependencies import get_order_financials_service
from domain.order.entity import OnlineTransactionStatus, OrderStatus
from main import app
from tests.support import build_event, build_order, pending_tx


@pytest_asyncio.fixture
async def client(service):
    app.dependency_overrides[get_order_financials_service] = lambda: service
    transport = httpx.ASGITransport(app=app, client=("185.71.76.1", 443))
    async with httpx.AsyncClient(transport=transport, base_url="http://testserver") as c:
        yield c
    app.dependency_overrides.clear()


@pytest.mark.asyncio
async def test_health_and_root(client):
    health = await client.get("/health")
    assert health.status_code == 200
    assert health.json()["data"] == {"status": "healthy"}
    assert "X-Request-ID" in health.headers

    root = await client.get("/")
    assert root.json()["message"] == "Welcome"


@pytest.mark.asyncio
async def test_get_order_uses_camel_case_read_model(client, store):
    store.put(build_order(total="10000", events=(build_event("2500"),)))

    resp = await client.get("/api/v1/orders/order-1")

    assert resp.status_code == 200
    data = resp.json()["data"]
    assert data["currentStatus"] == "confirmed"
    assert data["financials"]["state"] == "partially_paid"
    assert data["financials"]["netPaid"] == 2500.0
    assert data["financials"]["eventHistory"][0]["method"] == "cash"


@pytest.mark.asyncio
async def test_missing_order_is_404(client):
    resp = await client.get("/api/v1/orders/ghost")
    assert resp.status_code == 404
    body = resp.json()
    assert body["data"] is None
    assert body["error"]["type"]


@pytest.mark.asyncio
async def test_record_event_records_actor_from_header(client, store):
    store.put(build_order(total="10000"))

    resp = await client.post(
        "/api/v1/orders/order-1/financials/events",
        json={"transaction_type": "payment", "method": "cash", "amount": "10000"},
        headers={"X-Actor-Name": "bob"},
    )

    assert resp.status_code == 200
    assert resp.json()["data"]["financials"]["state"] == "paid"
    [event] = store.orders["order-1"].financials.event_history
    assert event.actor.name == "bob"


@pytest.mark.asyncio
async def test_overpayment_is_422(client, store):
    store.put(build_order(total="10000"))

    resp = await client.post(
        "/api/v1/orders/order-1/financials/events",
        json={"transaction_type": "payment", "method": "cash", "amount": "20000"},
    )

    assert resp.status_code == 422
    assert store.orders["order-1"].financials.event_history == ()


@pytest.mark.asyncio
async def test_malformed_command_is_422(client, store):
    store.put(build_order())

    resp = await client.post(
        "/api/v1/orders/order-1/financials/events",
        json={"transaction_type": "payment", "method": "cash", "amount": "-5"},
    )

    assert resp.status_code == 422
    assert resp.json()["error"]["type"] == "ValidationError"


@pytest.mark.asyncio
async def test_void_without_body(client, store):
    cash = build_event("500")
    store.put(build_order(events=(cash,)))

    resp = await client.post(f"/api/v1/orders/order-1/financials/events/{cash.id}/void")

    assert resp.status_code == 200
    assert resp.json()["data"]["financials"]["eventHistory"][0]["voided"] is True


@pytest.mark.asyncio
async def test_status_change_and_illegal_skip(client, store):
    store.put(build_order())

    ok = await client.post("/api/v1/orders/order-1/status", json={"action": "next"})
    assert ok.status_code == 200
    assert ok.json()["data"]["currentStatus"] == "processing"

    skip = await client.post(
        "/api/v1/orders/order-1/status",
        json={"action": "next", "target_status": "completed"},
    )
    assert skip.status_code == 422
    assert store.orders["order-1"].current_status == OrderStatus.PROCESSING


@pytest.mark.asyncio
async def test_online_payment_conflicts_with_pending_transaction(client, store, adapter):
    store.put(build_order(online_tx=pending_tx("pay-0")))

    resp = await client.post(
        "/api/v1/orders/order-1/financials/online-payment",
        json={"provider": "yookassa", "amount": "1000"},
    )

    assert resp.status_code == 409
    assert adapter.created == []


@pytest.mark.asyncio
async def test_online_payment_returns_confirmation_url(client, store):
    store.put(build_order())

    resp = await client.post(
        "/api/v1/orders/order-1/financials/online-payment",
        json={"amount": "1000"},
    )

    assert resp.status_code == 200
    assert resp.json()["data"] == {
        "orderId": "order-1",
        "paymentId": "pay-1",
        "confirmationUrl": "https://pay.example/confirm",
    }
    assert store.orders["order-1"].online_transaction.status == OnlineTransactionStatus.PROCESSING


@pytest.mark.asyncio
async def test_webhook_is_acknowledged_and_applied(client, store):
    store.put(build_order(online_tx=pending_tx("pay-1", status=OnlineTransactionStatus.PROCESSING)))
    body = {"transaction": {
        "transaction_type": "payment",
        "transaction_id": "pay-1",
        "amount": "10000",
        "finished": True,
        "order_id": "order-1",
    }}

    resp = await client.post("/api/v1/payments/webhooks/yookassa", content=json.dumps(body))

    assert resp.status_code == 200
    assert resp.json()["data"] == {"accepted": True, "reason": None}
    assert store.orders["order-1"].net_paid == 10000


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "path, payload, reason",
    [
        ("/api/v1/payments/webhooks/stripe", b"{}", "unknown_provider"),
        ("/api/v1/payments/webhooks/yookassa", b"not-json", "unparseable"),
        ("/api/v1/payments/webhooks/yookassa", b'{"type": "notification", "event": "payout.succeeded"}', "unrecognized"),
    ],
)
async def test_rejected_webhooks_still_get_200(client, path, payload, reason):
    resp = await client.post(path, content=payload)

    assert resp.status_code == 200
    assert resp.json()["data"] == {"accepted": False, "reason": reason}
    assert resp.json()["message"] == "ignored"
