import asyncio

import pytest

from core.settings import payment_settings
from domain.billing.entity import Payment, PaymentMethod, PaymentRequest, PaymentStatus, RequestStatus
from infrastructure.external.payments.gateway_x import sign
from infrastructure.tasks.config.beat import CELERY_BEAT_SCHEDULE
from infrastructure.tasks.tasks import billing as billing_tasks
from infrastructure.tasks.utils.dispatcher import TaskDispatcher
from tests.billing.fakes import FakeDirectory, InMemoryStore, uow_factory


@pytest.fixture
def store(monkeypatch):
    store = InMemoryStore()
    directory = FakeDirectory()
    directory.add_branch("b1", "Hanoi")
    directory.add_student("s1")

    def _run(fn):
        return asyncio.run(fn(directory, uow_factory(store)))

    monkeypatch.setattr(billing_tasks, "_run_with_services", _run)

    store.requests["r1"] = PaymentRequest(
        id="r1",
        student_id="s1",
        class_id="c1",
        class_name="Algebra",
        class_subject="Math",
        title="Tuition",
        base_amount=250_000,
        scholarship_percent=0,
        scholarship_type=None,
        discount_amount=0,
        final_amount=250_000,
    )
    store.payments["p1"] = Payment(
        id="p1",
        request_ids=["r1"],
        student_id="s1",
        paid_by="s1",
        method=PaymentMethod.GATEWAY_X,
        amount=250_000,
        branch_name="Hanoi",
        subject_name="Math",
    )
    return store


def _signed(**overrides):
    params = {
        "vnp_TxnRef": "p1",
        "vnp_Amount": "25000000",
        "vnp_ResponseCode": "00",
        "vnp_TransactionStatus": "00",
        "vnp_TransactionNo": "88",
    }
    params.update(overrides)
    params["vnp_SecureHash"] = sign(params, payment_settings.gateway_x.hash_secret)
    return params


def test_deferred_callback_is_applied(store):
    result = billing_tasks.apply_callback.apply(args=("gateway_x", _signed())).get()

    assert result["applied"] is True
    assert result["status"] == "success"
    assert result["paid_request_ids"] == ["r1"]
    assert store.payments["p1"].status == PaymentStatus.SUCCESS
    assert store.requests["r1"].status == RequestStatus.PAID


def test_deferred_callback_replay_is_duplicate(store):
    billing_tasks.apply_callback.apply(args=("gateway_x", _signed())).get()
    again = billing_tasks.apply_callback.apply(args=("gateway_x", _signed())).get()

    assert again["duplicate"] is True
    assert again["paid_request_ids"] == ["r1"]


def test_unrecoverable_callback_is_rejected_not_retried(store):
    raw = _signed()
    raw["vnp_Amount"] = "1"

    result = billing_tasks.apply_callback.apply(args=("gateway_x", raw)).get()

    assert result["rejected"] is True
    assert store.payments["p1"].status == PaymentStatus.CREATED


def test_reconciliation_task_returns_report(store):
    store.payments["p1"].subject_name = None

    report = billing_tasks.run_reconciliation.apply().get()

    assert report["repaired"] == 1
    assert store.payments["p1"].subject_name == "Math"


def test_dispatcher_runs_eagerly_in_tests(store):
    task_id = TaskDispatcher().enqueue_callback("gateway_x", _signed())

    assert task_id
    assert store.payments["p1"].status == PaymentStatus.SUCCESS


def test_reconciliation_is_scheduled():
    entry = CELERY_BEAT_SCHEDULE["billing-reconciliation"]
    assert entry["task"] == "billing.run_reconciliation"
