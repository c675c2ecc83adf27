"""
协作方 REST 客户端基类

订单服务等内部 HTTP 协作方共用：
- 超时与 Bearer 认证头
- 429/5xx 与网络错误按指数退避重试（tenacity）
- 非 2xx 响应转换为 APIError 体系，调用方只需捕获关心的子类
"""
import json
import time
from dataclasses import dataclass
from typing import Any, Dict, Optional

import httpx
import structlog
from tenacity import (
    AsyncRetrying,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from core.logging_config import get_logger

logger = get_logger(__name__)


@dataclass
class APIResponse:
    """协作方响应"""
    status_code: int
    data: Any
    raw_content: bytes
    elapsed_ms: float
    request_id: Optional[str] = None

    def json(self) -> Any:
        if self.data is not None:
            return self.data
        return json.loads(self.raw_content) if self.raw_content else None


class APIError(Exception):
    """协作方调用失败"""

    def __init__(self, message: str, status_code: Optional[int] = None, request_id: Optional[str] = None):
        self.message = message
        self.status_code = status_code
        self.request_id = request_id
        super().__init__(message)

    def __str__(self):
        if self.status_code:
            return f"{self.message} (status={self.status_code}, request_id={self.request_id})"
        return self.message


class AuthenticationError(APIError):
    """令牌无效或无权限（401/403）"""


class NotFoundError(APIError):
    """资源不存在（404）"""


class TransientAPIError(APIError):
    """可重试：429 与 5xx"""


_TRANSIENT_STATUS = {429, 500, 502, 503, 504}


def _error_for(response: APIResponse) -> APIError:
    message = f"request failed with status {response.status_code}"
    if isinstance(response.data, dict):
        message = str(response.data.get("message") or response.data.get("detail") or message)
    if response.status_code in (401, 403):
        cls = AuthenticationError
    elif response.status_code == 404:
        cls = NotFoundError
    elif response.status_code in _TRANSIENT_STATUS:
        cls = TransientAPIError
    else:
        cls = APIError
    return cls(message, status_code=response.status_code, request_id=response.request_id)


class BaseAPIClient:
    """
    协作方客户端基类

    子类只实现业务端点；传入 transport 可在测试中替换网络层。
    """

    def __init__(
        self,
        base_url: str,
        *,
        timeout: float = 5.0,
        max_retries: int = 2,
        retry_delay: float = 0.3,
        auth_token: Optional[str] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.max_retries = max_retries
        self.retry_delay = retry_delay
        self._transport = transport
        self.default_headers = {
            "Accept": "application/json",
            "User-Agent": "order-payments/1.0",
        }
        if auth_token:
            self.default_headers["Authorization"] = f"Bearer {auth_token}"
        self._client: Optional[httpx.AsyncClient] = None

    @property
    def client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=httpx.Timeout(self.timeout), transport=self._transport)
        return self._client

    async def close(self):
        if self._client:
            await self._client.aclose()
            self._client = None

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()

    async def _send_once(self, method: str, url: str, **kwargs) -> APIResponse:
        headers = dict(self.default_headers)
        # 透传当前请求的追踪 ID
        request_id = structlog.contextvars.get_contextvars().get("request_id")
        if request_id:
            headers["X-Request-ID"] = request_id
        started = time.perf_counter()
        response = await self.client.request(method, url, headers=headers, **kwargs)
        data = None
        if "application/json" in response.headers.get("content-type", ""):
            try:
                data = response.json()
            except ValueError:
                data = None
        api_response = APIResponse(
            status_code=response.status_code,
            data=data,
            raw_content=response.content,
            elapsed_ms=(time.perf_counter() - started) * 1000,
            request_id=response.headers.get("x-request-id"),
        )
        if api_response.status_code >= 400:
            raise _error_for(api_response)
        return api_response

    async def _request(
        self,
        method: str,
        endpoint: str,
        *,
        params: Optional[Dict[str, Any]] = None,
        json_data: Optional[Dict[str, Any]] = None,
    ) -> APIResponse:
        """发送请求；重试耗尽后抛出最后一次的错误"""
        url = f"{self.base_url}/{endpoint.lstrip('/')}"
        try:
            async for attempt in AsyncRetrying(
                reraise=True,
                stop=stop_after_attempt(self.max_retries + 1),
                wait=wait_exponential(multiplier=self.retry_delay, min=self.retry_delay, max=self.retry_delay * 8),
                retry=retry_if_exception_type((httpx.TimeoutException, httpx.NetworkError, TransientAPIError)),
            ):
                with attempt:
                    if attempt.retry_state.attempt_number > 1:
                        logger.warning("api_request_retry", method=method, url=url, attempt=attempt.retry_state.attempt_number)
                    response = await self._send_once(method, url, params=params, json=json_data)
        except httpx.TimeoutException as exc:
            raise TransientAPIError(f"request to {url} timed out after {self.timeout}s") from exc
        except httpx.HTTPError as exc:
            raise TransientAPIError(f"network error calling {url}: {type(exc).__name__}") from exc
        logger.debug("api_request", method=method, url=url, status_code=response.status_code, elapsed_ms=round(response.elapsed_ms, 1))
        return response

    async def get(self, endpoint: str, **kwargs) -> APIResponse:
        return await self._request("GET", endpoint, **kwargs)

    async def patch(self, endpoint: str, **kwargs) -> APIResponse:
        return await self._request("PATCH", endpoint, **kwargs)
