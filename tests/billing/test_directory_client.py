import httpx
import pytest

from domain.billing.exceptions import DirectoryUnavailableException
from infrastructure.external.api_clients.directory import HttpStudentDirectory


def _directory(handler, **kwargs):
    return HttpStudentDirectory(
        base_url="http://directory.test/api/",
        max_retries=kwargs.pop("max_retries", 1),
        retry_delay=0.001,
        auth_token="tok",
        transport=httpx.MockTransport(handler),
        **kwargs,
    )


@pytest.mark.asyncio
async def test_reads_student_and_unwraps_envelope():
    seen = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(
            200,
            json={"code": 0, "data": {"id": "s1", "name": "An", "branch_id": "b1", "scholarship_percent": 30}},
        )

    async with _directory(handler) as directory:
        student = await directory.get_student("s1")

    assert student.branch_id == "b1"
    assert student.scholarship_percent == 30
    assert str(seen[0].url) == "http://directory.test/api/students/s1"
    assert seen[0].headers["Authorization"] == "Bearer tok"


@pytest.mark.asyncio
async def test_reads_plain_class_payload():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={"id": "c1", "name": "Algebra A", "subject": "Math", "fee": 300000})

    async with _directory(handler) as directory:
        info = await directory.get_class("c1")

    assert info.subject == "Math"
    assert info.fee == 300_000


@pytest.mark.asyncio
async def test_not_found_is_none():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(404, json={"message": "no such branch"})

    async with _directory(handler) as directory:
        assert await directory.get_branch("b404") is None


@pytest.mark.asyncio
async def test_server_errors_are_retried_then_reported_unavailable():
    calls = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request)
        return httpx.Response(503, json={"message": "maintenance"})

    async with _directory(handler, max_retries=2) as directory:
        with pytest.raises(DirectoryUnavailableException):
            await directory.get_student("s1")

    assert len(calls) == 3


@pytest.mark.asyncio
async def test_transient_error_recovers():
    calls = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request)
        if len(calls) == 1:
            raise httpx.ConnectError("refused", request=request)
        return httpx.Response(200, json={"id": "b1", "name": "Hanoi"})

    async with _directory(handler) as directory:
        branch = await directory.get_branch("b1")

    assert branch.name == "Hanoi"
    assert len(calls) == 2


@pytest.mark.asyncio
async def test_invalid_payload_is_unavailable():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={"unexpected": True})

    async with _directory(handler) as directory:
        with pytest.raises(DirectoryUnavailableException):
            await directory.get_class("c1")
