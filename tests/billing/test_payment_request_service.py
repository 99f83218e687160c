from datetime import timedelta

import pytest

from application.dtos.billing import CreateClassPaymentRequest
from application.services.payment_request_service import PaymentRequestService
from application.services.settlement_service import SettlementService
from domain.billing.entity import CampaignStatus, PaymentStatus, RequestStatus
from domain.billing.exceptions import CampaignNotFoundException, ClassNotFoundException, PaymentRequestNotFoundException
from domain.common.exceptions import DomainValidationException
from tests.billing.fakes import (
    FakeDirectory,
    FakeGatewayChannel,
    FixedClock,
    InMemoryStore,
    channel_factory,
    uow_factory,
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
    d.add_student("s2", percent=50, type="sibling")
    d.add_student("s3", percent=100)
    d.add_class("c1", 400_000, subject="Chemistry", student_ids=["s1", "s2", "s3", "ghost"])
    d.add_class("empty", 100_000)
    return d


@pytest.fixture
def service(store, directory, clock):
    return PaymentRequestService(uow_factory(store), directory, clock=clock)


@pytest.fixture
def settlement(store, directory, clock):
    return SettlementService(uow_factory(store), directory, channel_factory(), clock=clock, retry_attempts=1)


def _cmd(**kwargs):
    return CreateClassPaymentRequest(class_id=kwargs.pop("class_id", "c1"), title="Lab fee", **kwargs)


@pytest.mark.asyncio
async def test_campaign_fans_out_one_request_per_student(store, service):
    campaign = await service.create_class_payment_request(_cmd(), created_by="admin-1")

    requests = [r for r in store.requests.values() if r.class_payment_request_id == campaign.id]
    by_student = {r.student_id: r for r in requests}
    assert set(by_student) == {"s1", "s2", "s3"}
    assert campaign.total_students == 3
    assert campaign.paid_count == 1
    assert by_student["s1"].final_amount == 400_000
    assert by_student["s2"].final_amount == 200_000
    assert by_student["s2"].scholarship_type == "sibling"
    assert by_student["s3"].status == RequestStatus.PAID
    assert all(r.class_subject == "Chemistry" for r in requests)


@pytest.mark.asyncio
async def test_campaign_amount_override(store, service):
    campaign = await service.create_class_payment_request(_cmd(amount=90_000), created_by="admin-1")

    assert campaign.amount == 90_000
    assert {r.base_amount for r in store.requests.values()} == {90_000}


@pytest.mark.asyncio
async def test_campaign_validation(service):
    with pytest.raises(ClassNotFoundException):
        await service.create_class_payment_request(_cmd(class_id="nope"), created_by="admin-1")
    with pytest.raises(DomainValidationException):
        await service.create_class_payment_request(_cmd(class_id="empty"), created_by="admin-1")


@pytest.mark.asyncio
async def test_payment_refreshes_campaign_stats(store, service, settlement):
    campaign = await service.create_class_payment_request(_cmd(), created_by="admin-1")
    s1_request = next(r for r in store.requests.values() if r.student_id == "s1")

    initiation = await settlement.initiate_payment([s1_request.id], "gateway_x", "s1")
    await settlement.handle_gateway_callback("gateway_x", FakeGatewayChannel.callback(initiation.payment_id))

    stored = store.campaigns[campaign.id]
    assert stored.paid_count == 2
    assert stored.total_collected == 400_000


@pytest.mark.asyncio
async def test_summary_derives_overdue(store, service, clock):
    campaign = await service.create_class_payment_request(_cmd(due_date=clock.now + timedelta(days=1)), created_by="admin-1")
    clock.advance(days=2)

    summary = await service.get_campaign_summary(campaign.id)

    assert summary.paid_count == 1
    assert summary.overdue_count == 2
    assert summary.pending_count == 0
    assert summary.total_outstanding == 600_000
    overdue = await service.list_student_requests("s1", RequestStatus.OVERDUE)
    assert [r.status for r in overdue] == ["overdue"]
    assert await service.list_student_requests("s1", RequestStatus.PENDING) == []


@pytest.mark.asyncio
async def test_cancel_campaign_cancels_pending_and_open_payments(store, service, settlement):
    campaign = await service.create_class_payment_request(_cmd(), created_by="admin-1")
    s1_request = next(r for r in store.requests.values() if r.student_id == "s1")
    initiation = await settlement.initiate_payment([s1_request.id], "gateway_x", "s1")

    cancelled = await service.cancel_class_payment_request(campaign.id)

    assert cancelled.status == CampaignStatus.CANCELLED
    assert store.payments[initiation.payment_id].status == PaymentStatus.CANCELLED
    statuses = {r.student_id: r.status for r in store.requests.values()}
    assert statuses == {"s1": RequestStatus.CANCELLED, "s2": RequestStatus.CANCELLED, "s3": RequestStatus.PAID}
    again = await service.cancel_class_payment_request(campaign.id)
    assert again.status == CampaignStatus.CANCELLED


@pytest.mark.asyncio
async def test_reads(store, service):
    campaign = await service.create_class_payment_request(_cmd(), created_by="admin-1")
    request_id = next(iter(store.requests))

    assert [c.id for c in await service.list_class_payment_requests("c1")] == [campaign.id]
    assert (await service.get_request(request_id)).id == request_id
    with pytest.raises(PaymentRequestNotFoundException):
        await service.get_request("missing")
    with pytest.raises(CampaignNotFoundException):
        await service.get_campaign_summary("missing")
