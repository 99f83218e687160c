import pytest
from fastapi.testclient import TestClient

from api.dependencies import (
    get_order_service,
    get_payment_request_service,
    get_reconciliation_service,
    get_settlement_service,
    get_task_dispatcher,
)
from application.services.order_service import OrderService
from application.services.payment_request_service import PaymentRequestService
from application.services.reconciliation_service import ReconciliationService
from application.services.settlement_service import SettlementService
from core.settings import payment_settings
from main import app
from tests.billing.fakes import (
    FakeDirectory,
    FakeGatewayChannel,
    FixedClock,
    InMemoryStore,
    channel_factory,
    uow_factory,
)


STUDENT = {"X-User-Id": "s1", "X-User-Role": "student"}
ADMIN = {"X-User-Id": "admin-1", "X-User-Role": "admin"}


class RecordingDispatcher:
    def __init__(self):
        self.callbacks = []

    def enqueue_callback(self, channel, raw):
        self.callbacks.append((channel, raw))
        return "task-1"


@pytest.fixture
def store():
    return InMemoryStore()


@pytest.fixture
def dispatcher():
    return RecordingDispatcher()


@pytest.fixture
def client(store, dispatcher):
    directory = FakeDirectory()
    directory.add_branch("b1", "Hanoi")
    directory.add_student("s1", percent=20)
    directory.add_student("s2")
    directory.add_class("c1", 1_000_000, subject="Math", student_ids=["s1", "s2"])
    clock = FixedClock()
    uow = uow_factory(store)
    settlement = SettlementService(uow, directory, channel_factory(), retry_attempts=1, clock=clock)

    app.dependency_overrides[get_order_service] = lambda: OrderService(uow, directory, clock=clock)
    app.dependency_overrides[get_payment_request_service] = lambda: PaymentRequestService(uow, directory, clock=clock)
    app.dependency_overrides[get_settlement_service] = lambda: settlement
    app.dependency_overrides[get_reconciliation_service] = lambda: ReconciliationService(uow, directory, settlement)
    app.dependency_overrides[get_task_dispatcher] = lambda: dispatcher
    try:
        yield TestClient(app)
    finally:
        app.dependency_overrides.clear()


def _checkout(client):
    order = client.post("/api/v1/orders", json={"class_ids": ["c1"]}, headers=STUDENT).json()["data"]
    payment = client.post(
        "/api/v1/payments", json={"request_ids": order["request_ids"], "method": "gateway_x"}, headers=STUDENT
    ).json()["data"]
    return order, payment


def test_health(client):
    assert client.get("/health").status_code == 200


def test_identity_header_is_required(client):
    resp = client.get("/api/v1/orders")
    assert resp.status_code == 401
    assert resp.json()["error"]["type"] == "Unauthorized"


def test_checkout_and_callback_flow(client):
    order, payment = _checkout(client)
    assert order["final_amount"] == 800_000
    assert payment["status"] == "created"
    assert payment["redirect_url"]

    raw = FakeGatewayChannel.callback(payment["payment_id"])
    first = client.post("/api/v1/payments/callbacks/gateway_x", json=raw)
    second = client.get("/api/v1/payments/callbacks/gateway_x", params=raw)

    assert first.status_code == 200
    assert first.json()["message"] == "Callback processed"
    assert first.json()["data"]["paid_order_ids"] == [order["id"]]
    assert second.json()["message"] == "Duplicate callback ignored"
    assert second.json()["data"]["duplicate"] is True
    fetched = client.get(f"/api/v1/orders/{order['id']}", headers=STUDENT).json()["data"]
    assert fetched["status"] == "paid"


def test_cancel_paid_order_conflicts(client):
    order, payment = _checkout(client)
    client.post("/api/v1/payments/callbacks/gateway_x", json=FakeGatewayChannel.callback(payment["payment_id"]))

    resp = client.post(f"/api/v1/orders/{order['id']}/cancel", json={"reason": "oops"}, headers=STUDENT)

    assert resp.status_code == 409
    body = resp.json()
    assert body["error"]["type"] == "AlreadySettled"
    assert body["error"]["details"]["current"]["status"] == "paid"


def test_bad_signature_is_rejected(client):
    _, payment = _checkout(client)

    resp = client.post(
        "/api/v1/payments/callbacks/gateway_x", json={"payment_id": payment["payment_id"], "sig": "forged"}
    )

    assert resp.status_code == 400
    assert resp.json()["error"]["type"] == "InvalidSignature"


def test_transient_failure_queues_callback(client, store, dispatcher):
    _, payment = _checkout(client)
    store.fail_commits = 5
    raw = FakeGatewayChannel.callback(payment["payment_id"])

    resp = client.post("/api/v1/payments/callbacks/gateway_x", json=raw)

    assert resp.status_code == 200
    assert resp.json()["data"] == {"queued": True, "task_id": "task-1"}
    assert dispatcher.callbacks == [("gateway_x", raw)]


def test_callback_ip_allowlist(client, monkeypatch):
    monkeypatch.setattr(payment_settings.webhook, "ip_allowlist", ["203.0.113.0/24"])

    resp = client.post("/api/v1/payments/callbacks/gateway_x", json={})

    assert resp.status_code == 403


def test_cash_cannot_be_confirmed_through_callback_route(client, store):
    order = client.post("/api/v1/orders", json={"class_ids": ["c1"]}, headers=STUDENT).json()["data"]
    payment = client.post(
        "/api/v1/payments", json={"request_ids": order["request_ids"], "method": "cash"}, headers=STUDENT
    ).json()["data"]

    resp = client.post(
        "/api/v1/payments/callbacks/cash", json={"payment_id": payment["payment_id"], "confirmed_by": "anyone"}
    )

    assert resp.status_code == 403
    assert resp.json()["error"]["type"] == "Forbidden"
    assert client.post("/api/v1/payments/callbacks/CASH", json={}).status_code == 403
    fetched = client.get(f"/api/v1/orders/{order['id']}", headers=STUDENT).json()["data"]
    assert fetched["status"] == "pending_payment"
    assert store.payments[payment["payment_id"]].status.value == "pending"


def test_students_cannot_act_for_others(client):
    resp = client.post("/api/v1/orders", json={"class_ids": ["c1"], "student_id": "s2"}, headers=STUDENT)
    assert resp.status_code == 403

    on_behalf = client.post("/api/v1/orders", json={"class_ids": ["c1"], "student_id": "s2"}, headers=ADMIN)
    assert on_behalf.status_code == 200
    assert on_behalf.json()["data"]["student_id"] == "s2"


def test_validation_errors(client):
    resp = client.post("/api/v1/orders", json={"class_ids": []}, headers=STUDENT)
    assert resp.status_code == 422
    assert resp.json()["error"]["type"] == "EmptySelection"

    missing = client.get("/api/v1/payments/nope", headers=STUDENT)
    assert missing.status_code == 404


def test_admin_routes(client):
    assert client.post("/api/v1/admin/reconciliation", headers=STUDENT).status_code == 403

    campaign = client.post(
        "/api/v1/admin/campaigns", json={"class_id": "c1", "title": "Exam fee", "amount": 100_000}, headers=ADMIN
    )
    assert campaign.status_code == 200
    campaign_id = campaign.json()["data"]["id"]
    assert campaign.json()["data"]["total_students"] == 2

    lines = client.get("/api/v1/payment-requests", headers=STUDENT).json()["data"]
    assert [line["final_amount"] for line in lines] == [80_000]
    payment = client.post(
        "/api/v1/payments", json={"request_ids": [lines[0]["id"]], "method": "cash"}, headers=STUDENT
    ).json()["data"]
    assert payment["status"] == "pending"

    confirmed = client.post(f"/api/v1/admin/payments/{payment['payment_id']}/confirm-cash", json={}, headers=ADMIN)
    assert confirmed.json()["data"]["status"] == "success"

    summary = client.get(f"/api/v1/admin/campaigns/{campaign_id}/summary", headers=ADMIN).json()["data"]
    assert summary["paid_count"] == 1
    assert summary["total_collected"] == 80_000

    report = client.post("/api/v1/admin/reconciliation", headers=ADMIN)
    assert report.status_code == 200
    assert report.json()["data"]["expired"] == 0

    trail = client.get(f"/api/v1/payments/{payment['payment_id']}/transactions", headers=ADMIN).json()["data"]
    assert [t["type"] for t in trail] == ["create", "cash_confirm"]
