"""Billing flows against the SQLAlchemy repositories on in-memory SQLite."""
from datetime import timedelta
from functools import partial

import pytest
import pytest_asyncio
from sqlalchemy.exc import OperationalError
from sqlalchemy.ext.asyncio import async_sessionmaker

from application.services.order_service import OrderService
from application.services.payment_request_service import PaymentRequestService
from application.services.reconciliation_service import ReconciliationService
from application.services.settlement_service import SettlementService
from application.dtos.billing import CreateClassPaymentRequest
from domain.billing.entity import OrderStatus, PaymentStatus, RequestStatus
from domain.billing.exceptions import AlreadySettledException
from domain.common.exceptions import TransientStoreException
from infrastructure.database import build_engine, create_tables
from infrastructure.unit_of_work import SQLAlchemyUnitOfWork
from tests.billing.fakes import FakeDirectory, FakeGatewayChannel, FixedClock, channel_factory


@pytest_asyncio.fixture
async def sessions():
    engine = build_engine("sqlite+aiosqlite:///:memory:")
    await create_tables(engine)
    try:
        yield async_sessionmaker(bind=engine, expire_on_commit=False)
    finally:
        await engine.dispose()


@pytest.fixture
def directory():
    d = FakeDirectory()
    d.add_branch("b1", "Hanoi")
    d.add_student("s1", percent=20)
    d.add_student("s2")
    d.add_class("c1", 1_000_000, subject="Math", student_ids=["s1", "s2"])
    d.add_class("c2", 500_000, subject="Physics")
    return d


@pytest.fixture
def clock():
    return FixedClock()


@pytest.fixture
def services(sessions, directory, clock):
    uow = partial(SQLAlchemyUnitOfWork, sessions)
    settlement = SettlementService(
        uow, directory, channel_factory(), expiry_window=timedelta(minutes=30), retry_attempts=2, clock=clock
    )
    return {
        "uow": uow,
        "orders": OrderService(uow, directory, clock=clock),
        "requests": PaymentRequestService(uow, directory, clock=clock),
        "settlement": settlement,
        "reconciliation": ReconciliationService(uow, directory, settlement),
    }


@pytest.mark.asyncio
async def test_order_round_trip(services):
    order = await services["orders"].create_order("s1", ["c1", "c2"], note="spring term")

    stored = await services["orders"].get_order(order.id)
    lines = await services["orders"].list_order_requests(order.id)

    assert stored.final_amount == 1_200_000
    assert stored.note == "spring term"
    assert [item.class_id for item in stored.items] == ["c1", "c2"]
    assert stored.request_ids == order.request_ids
    assert {line.final_amount for line in lines} == {800_000, 400_000}


@pytest.mark.asyncio
async def test_gateway_settlement_is_idempotent(services):
    orders, settlement = services["orders"], services["settlement"]
    order = await orders.create_order("s1", ["c1", "c2"])
    initiation = await settlement.initiate_payment(order.request_ids, "gateway_x", "s1")
    raw = FakeGatewayChannel.callback(initiation.payment_id, ref="TXN-9", amount=1_200_000)

    first = await settlement.handle_gateway_callback("gateway_x", raw)
    second = await settlement.handle_gateway_callback("gateway_x", raw)

    assert first.applied and second.duplicate
    assert sorted(second.paid_request_ids) == sorted(order.request_ids)
    assert second.paid_order_ids == [order.id]
    payment = await settlement.get_payment(initiation.payment_id)
    assert payment.status == "success"
    assert payment.external_ref == "TXN-9"
    assert payment.request_ids == order.request_ids
    assert (await orders.get_order(order.id)).status == OrderStatus.PAID
    async with services["uow"](readonly=True) as uow:
        ledger = await uow.payment_repository.settled_by(order.request_ids)
        requests = await uow.payment_request_repository.get_many(order.request_ids)
    assert set(ledger.values()) == {initiation.payment_id}
    assert all(r.status == RequestStatus.PAID and r.payment_id == initiation.payment_id for r in requests)
    trail = await settlement.list_payment_transactions(initiation.payment_id)
    assert [t.type for t in trail].count("callback") == 2


@pytest.mark.asyncio
async def test_cancel_after_settlement_is_rejected(services):
    orders, settlement = services["orders"], services["settlement"]
    order = await orders.create_order("s1", ["c1"])
    initiation = await settlement.initiate_payment(order.request_ids, "cash", "s1")
    await settlement.confirm_cash_payment(initiation.payment_id, "admin-1")

    with pytest.raises(AlreadySettledException):
        await orders.cancel_order(order.id)

    assert (await orders.get_order(order.id)).status == OrderStatus.PAID


@pytest.mark.asyncio
async def test_cancel_cascades_to_open_payment(services):
    orders, settlement = services["orders"], services["settlement"]
    order = await orders.create_order("s1", ["c1"])
    initiation = await settlement.initiate_payment(order.request_ids, "gateway_x", "s1")

    await orders.cancel_order(order.id, reason="dropped")

    assert (await settlement.get_payment(initiation.payment_id)).status == "cancelled"
    late = await settlement.handle_gateway_callback("gateway_x", FakeGatewayChannel.callback(initiation.payment_id))
    assert late.duplicate and late.status == "cancelled"


@pytest.mark.asyncio
async def test_campaign_stats_and_reconciliation(services, clock):
    requests, settlement = services["requests"], services["settlement"]
    campaign = await requests.create_class_payment_request(
        CreateClassPaymentRequest(class_id="c1", title="Exam fee", amount=200_000), created_by="admin-1"
    )
    s2_line = (await requests.list_student_requests("s2"))[0]
    paid = await settlement.initiate_payment([s2_line.id], "gateway_x", "s2")
    await settlement.handle_gateway_callback("gateway_x", FakeGatewayChannel.callback(paid.payment_id))
    stale = await settlement.initiate_payment([(await requests.list_student_requests("s1"))[0].id], "cash", "s1")
    clock.advance(hours=2)

    report = await services["reconciliation"].run_reconciliation()

    summary = await requests.get_campaign_summary(campaign.id)
    assert summary.campaign.paid_count == 1
    assert summary.campaign.total_collected == 200_000
    assert summary.pending_count == 1
    assert report.expired == 1
    assert (await settlement.get_payment(stale.payment_id)).status == PaymentStatus.FAILED.value


@pytest.mark.asyncio
async def test_operational_errors_become_transient(sessions):
    with pytest.raises(TransientStoreException):
        async with SQLAlchemyUnitOfWork(sessions):
            raise OperationalError("UPDATE payments", {}, Exception("database is locked"))
