"""
只读 REST 客户端基类

GET 请求复用同一个 httpx.AsyncClient；超时、网络错误与 429/5xx 用 tenacity 指数退避重试，
重试耗尽后抛 APIError，404 抛 NotFoundError 交由子类决定语义。
"""
import time
from typing import Any, Optional

import httpx
from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt, wait_exponential

from core.logging_config import get_logger


logger = get_logger(__name__)

RETRY_STATUS_CODES = frozenset({429, 500, 502, 503, 504})


class APIError(Exception):
    def __init__(self, message: str, status_code: Optional[int] = None):
        self.message = message
        self.status_code = status_code
        super().__init__(message if status_code is None else f"{message} | Status: {status_code}")


class NotFoundError(APIError):
    pass


class _Retryable(APIError):
    """可重试的响应（429/5xx），仅在重试循环内部使用"""


def _error_message(response: httpx.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        body = None
    if isinstance(body, dict):
        for key in ("message", "error", "detail"):
            if body.get(key):
                return str(body[key])
    return f"API request failed with status {response.status_code}"


class BaseAPIClient:
    def __init__(
        self,
        base_url: str,
        timeout: float = 5.0,
        max_retries: int = 2,
        retry_delay: float = 0.2,
        auth_token: Optional[str] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """
        Args:
            base_url: 服务根地址，endpoint 拼在其后
            max_retries: 首次请求之外的重试次数
            retry_delay: 指数退避基数（秒）
            transport: 测试时注入 httpx.MockTransport
        """
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.max_retries = max_retries
        self.retry_delay = retry_delay
        self.headers = {"Accept": "application/json", "User-Agent": "Tuition-Settlement/1.0"}
        if auth_token:
            self.headers["Authorization"] = f"Bearer {auth_token}"
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    @property
    def client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                timeout=httpx.Timeout(self.timeout),
                headers=self.headers,
                transport=self._transport,
            )
        return self._client

    async def close(self):
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()

    async def _get_once(self, url: str, params: Optional[dict]) -> httpx.Response:
        started = time.perf_counter()
        response = await self.client.get(url, params=params)
        logger.debug(
            "api_request",
            url=url,
            status_code=response.status_code,
            elapsed_ms=round((time.perf_counter() - started) * 1000, 1),
        )
        if response.status_code in RETRY_STATUS_CODES:
            raise _Retryable(_error_message(response), response.status_code)
        if response.status_code == 404:
            raise NotFoundError(_error_message(response), 404)
        if response.status_code >= 400:
            raise APIError(_error_message(response), response.status_code)
        return response

    async def get_json(self, endpoint: str, params: Optional[dict] = None) -> Any:
        """
        Raises:
            NotFoundError: 404
            APIError: 其它错误，或重试耗尽
        """
        url = f"{self.base_url}/{endpoint.lstrip('/')}"
        retrying = AsyncRetrying(
            reraise=True,
            stop=stop_after_attempt(self.max_retries + 1),
            wait=wait_exponential(multiplier=self.retry_delay, min=self.retry_delay, max=self.retry_delay * 8),
            retry=retry_if_exception_type((httpx.TimeoutException, httpx.NetworkError, _Retryable)),
            before_sleep=lambda state: logger.warning(
                "api_request_retry",
                url=url,
                attempt=state.attempt_number,
                error=str(state.outcome.exception()),
            ),
        )
        try:
            async for attempt in retrying:
                with attempt:
                    response = await self._get_once(url, params)
        except _Retryable as exc:
            raise APIError(exc.message, exc.status_code) from exc
        except httpx.TimeoutException as exc:
            raise APIError(f"Request timeout after {self.timeout}s") from exc
        except httpx.HTTPError as exc:
            raise APIError(f"Network error: {exc}") from exc
        try:
            return response.json()
        except ValueError as exc:
            raise APIError("Response is not valid JSON", response.status_code) from exc
