from datetime import timedelta

import pytest

from application.services.reconciliation_service import UNKNOWN_BRANCH, ReconciliationService
from application.services.settlement_service import SettlementService
from domain.billing.entity import (
    Payment,
    PaymentMethod,
    PaymentRequest,
    PaymentStatus,
    RequestStatus,
)
from tests.billing.fakes import FakeDirectory, FixedClock, InMemoryStore, channel_factory, uow_factory


def _request(rid, class_id, subject, *, amount=100_000, student_id="s1"):
    return PaymentRequest(
        id=rid,
        student_id=student_id,
        class_id=class_id,
        class_name=f"Class {class_id}",
        class_subject=subject,
        title="Tuition",
        base_amount=amount,
        scholarship_percent=0,
        scholarship_type=None,
        discount_amount=0,
        final_amount=amount,
    )


def _payment(pid, request_ids, *, created_at, status=PaymentStatus.SUCCESS, branch_name=None, subject_name=None):
    return Payment(
        id=pid,
        request_ids=request_ids,
        student_id="s1",
        paid_by="s1",
        method=PaymentMethod.GATEWAY_X,
        amount=100_000 * len(request_ids),
        status=status,
        branch_name=branch_name,
        subject_name=subject_name,
        created_at=created_at,
    )


@pytest.fixture
def clock():
    return FixedClock()


@pytest.fixture
def store():
    return InMemoryStore()


@pytest.fixture
def directory():
    d = FakeDirectory()
    d.add_branch("b1", "Hanoi")
    d.add_student("s1")
    d.add_class("math", 100_000, subject="Algebra")
    d.add_class("phys", 100_000, subject="Physics")
    return d


@pytest.fixture
def reconciliation(store, directory, clock):
    settlement = SettlementService(
        uow_factory(store),
        directory,
        channel_factory(),
        expiry_window=timedelta(minutes=30),
        retry_attempts=1,
        clock=clock,
    )
    return ReconciliationService(uow_factory(store), directory, settlement, batch_size=50)


def _seed(store, *requests, payments=()):
    for req in requests:
        store.requests[req.id] = req
    for payment in payments:
        store.payments[payment.id] = payment


@pytest.mark.asyncio
async def test_subject_name_comes_from_request_snapshots(store, reconciliation, clock):
    # live class says "Algebra" but the request snapshot wins
    _seed(
        store,
        _request("r1", "math", "Math", amount=100_000),
        _request("r2", "phys", "Physics", amount=100_000),
        payments=[_payment("p1", ["r1", "r2"], created_at=clock.now, branch_name="Hanoi")],
    )
    store.requests["r1"].status = RequestStatus.PAID
    store.requests["r2"].status = RequestStatus.PAID
    store.settlements.update({"r1": "p1", "r2": "p1"})

    report = await reconciliation.run_reconciliation()

    assert store.payments["p1"].subject_name == "Math, Physics"
    assert report.repaired == 1
    assert report.scanned == 1


@pytest.mark.asyncio
async def test_missing_branch_resolved_or_unknown(store, directory, reconciliation, clock):
    directory.add_student("s9", branch_id=None)
    orphan = _payment("p2", ["r3"], created_at=clock.now, subject_name="Math")
    orphan.student_id = "s9"
    _seed(
        store,
        _request("r1", "math", "Math"),
        _request("r3", "math", "Math"),
        payments=[_payment("p1", ["r1"], created_at=clock.now, subject_name="Math"), orphan],
    )
    store.settlements.update({"r1": "p1", "r3": "p2"})

    await reconciliation.run_reconciliation()

    assert store.payments["p1"].branch_name == "Hanoi"
    assert store.payments["p2"].branch_name == UNKNOWN_BRANCH


@pytest.mark.asyncio
async def test_request_snapshot_backfilled_from_directory(store, reconciliation):
    req = _request("r1", "phys", None)
    req.class_name = None
    _seed(store, req)

    report = await reconciliation.run_reconciliation()

    assert store.requests["r1"].class_subject == "Physics"
    assert store.requests["r1"].class_name == "Class phys"
    assert report.requests_repaired == 1


@pytest.mark.asyncio
async def test_directory_failure_skips_record_and_continues(store, directory, reconciliation, clock):
    _seed(
        store,
        _request("r1", "math", None),
        payments=[_payment("p1", ["r1"], created_at=clock.now)],
    )
    store.settlements["r1"] = "p1"
    directory.down = True

    report = await reconciliation.run_reconciliation()

    assert report.skipped == 1
    assert report.repaired == 0
    assert store.payments["p1"].branch_name is None


@pytest.mark.asyncio
async def test_expires_stuck_and_repairs_orphans(store, reconciliation, clock):
    _seed(
        store,
        _request("r1", "math", "Math"),
        _request("r2", "phys", "Physics"),
        payments=[
            _payment("stuck", ["r1"], created_at=clock.now, status=PaymentStatus.CREATED, branch_name="Hanoi", subject_name="Math"),
            _payment("orphan", ["r2"], created_at=clock.now, branch_name="Hanoi", subject_name="Physics"),
        ],
    )
    clock.advance(hours=1)

    report = await reconciliation.run_reconciliation()

    assert report.expired == 1
    assert report.orphans_repaired == 1
    assert store.payments["stuck"].status == PaymentStatus.FAILED
    assert store.requests["r1"].status == RequestStatus.PENDING
    assert store.requests["r2"].status == RequestStatus.PAID
    assert store.settlements == {"r2": "orphan"}


@pytest.mark.asyncio
async def test_second_pass_changes_nothing(store, reconciliation, clock):
    _seed(
        store,
        _request("r1", "math", "Math"),
        payments=[_payment("p1", ["r1"], created_at=clock.now)],
    )
    clock.advance(hours=1)

    first = await reconciliation.run_reconciliation()
    snapshot = (dict(store.payments), dict(store.requests), dict(store.settlements))
    second = await reconciliation.run_reconciliation()

    assert first.repaired == 1 and first.orphans_repaired == 1
    assert second.repaired == second.expired == second.orphans_repaired == 0
    assert (dict(store.payments), dict(store.requests), dict(store.settlements)) == snapshot
