"""
REST API客户端基类

提供通用的HTTP请求功能，包括：
- 自动重试（仅幂等请求）
- 错误处理
- 请求/响应日志
- Bearer 认证
"""
from typing import Dict, Any, Optional, Union, Type, TypeVar
from dataclasses import dataclass
from enum import Enum
from time import perf_counter

import httpx
from pydantic import BaseModel
from tenacity import (
    AsyncRetrying,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from core.logging_config import get_logger

logger = get_logger(__name__)

T = TypeVar('T', bound=BaseModel)


class HTTPMethod(Enum):
    """HTTP方法枚举"""
    GET = "GET"
    POST = "POST"
    PUT = "PUT"
    PATCH = "PATCH"
    DELETE = "DELETE"


IDEMPOTENT_METHODS = {"GET", "PUT", "DELETE"}
RETRY_STATUS_CODES = {429, 502, 503, 504}


@dataclass
class APIResponse:
    """API响应封装"""
    status_code: int
    headers: Dict[str, str]
    data: Any
    elapsed_ms: float
    request_id: Optional[str] = None

    @property
    def is_error(self) -> bool:
        return self.status_code >= 400

    def json(self) -> Any:
        return self.data


class APIError(Exception):
    """API错误基类"""
    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        response: Optional[APIResponse] = None,
    ):
        self.message = message
        self.status_code = status_code
        self.response = response
        self.request_id = response.request_id if response else None
        super().__init__(self.message)

    def __str__(self):
        parts = [self.message]
        if self.status_code:
            parts.append(f"Status: {self.status_code}")
        if self.request_id:
            parts.append(f"Request ID: {self.request_id}")
        return " | ".join(parts)


class AuthenticationError(APIError):
    """认证错误"""


class NotFoundError(APIError):
    """资源未找到错误"""


class ServerError(APIError):
    """服务器错误"""


class RetryableAPIError(APIError):
    """可重试的API错误"""


class BaseAPIClient:
    """
    REST API客户端基类

    子类继承并实现具体的API调用
    """

    def __init__(
        self,
        base_url: str,
        timeout: float = 30.0,
        max_retries: int = 2,
        retry_delay: float = 0.5,
        headers: Optional[Dict[str, str]] = None,
        auth_token: Optional[str] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = base_url.rstrip('/')
        self.timeout = timeout
        self.max_retries = max_retries
        self.retry_delay = retry_delay
        self._transport = transport

        self.default_headers = {
            "Content-Type": "application/json",
            "Accept": "application/json",
            "User-Agent": "beverage-storefront-client/1.0",
        }
        if headers:
            self.default_headers.update(headers)
        if auth_token:
            self.set_auth_token(auth_token)

        self._client: Optional[httpx.AsyncClient] = None

    def set_auth_token(self, token: str, header_name: str = "Authorization", prefix: str = "Bearer"):
        """设置认证令牌"""
        self.default_headers[header_name] = f"{prefix} {token}" if prefix else token

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                base_url=self.base_url,
                timeout=httpx.Timeout(self.timeout),
                transport=self._transport,
            )
        return self._client

    async def close(self):
        """关闭HTTP客户端"""
        if self._client:
            await self._client.aclose()
            self._client = None

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()

    def _raise_for_error(self, response: APIResponse):
        """按状态码抛出对应异常"""
        error_map = {
            401: AuthenticationError,
            403: AuthenticationError,
            404: NotFoundError,
        }
        error_class = error_map.get(response.status_code)
        if error_class is None:
            error_class = ServerError if response.status_code >= 500 else APIError

        error_message = f"API request failed with status {response.status_code}"
        if isinstance(response.data, dict):
            error_message = (
                response.data.get("message")
                or response.data.get("error")
                or response.data.get("detail")
                or error_message
            )
        raise error_class(message=str(error_message), status_code=response.status_code, response=response)

    async def _request(
        self,
        method: Union[str, HTTPMethod],
        endpoint: str,
        params: Optional[Dict[str, Any]] = None,
        json_data: Optional[Union[Dict[str, Any], BaseModel]] = None,
        headers: Optional[Dict[str, str]] = None,
        retry: Optional[bool] = None,
    ) -> APIResponse:
        """
        发送HTTP请求

        Args:
            retry: 是否重试；默认仅对幂等方法重试
        """
        if isinstance(method, HTTPMethod):
            method = method.value
        if retry is None:
            retry = method in IDEMPOTENT_METHODS
        if isinstance(json_data, BaseModel):
            json_data = json_data.model_dump(exclude_unset=True)

        request_headers = {**self.default_headers, **(headers or {})}
        path = "/" + endpoint.lstrip("/")

        async def _send_once() -> APIResponse:
            start = perf_counter()
            response = await self._get_client().request(
                method, path, params=params, json=json_data, headers=request_headers
            )
            try:
                data = response.json()
            except ValueError:
                data = None
            api_response = APIResponse(
                status_code=response.status_code,
                headers=dict(response.headers),
                data=data,
                elapsed_ms=(perf_counter() - start) * 1000,
                request_id=response.headers.get("x-request-id"),
            )
            logger.debug(
                "api_client_response",
                method=method,
                path=path,
                status_code=api_response.status_code,
                elapsed_ms=round(api_response.elapsed_ms, 2),
            )
            if retry and api_response.status_code in RETRY_STATUS_CODES:
                raise RetryableAPIError(
                    message=f"Transient API error with status {api_response.status_code}",
                    status_code=api_response.status_code,
                    response=api_response,
                )
            if api_response.is_error:
                self._raise_for_error(api_response)
            return api_response

        retrying = AsyncRetrying(
            reraise=True,
            stop=stop_after_attempt((self.max_retries if retry else 0) + 1),
            wait=wait_exponential(multiplier=self.retry_delay, max=self.retry_delay * 8),
            retry=retry_if_exception_type((httpx.TimeoutException, httpx.NetworkError, RetryableAPIError)),
        )

        try:
            async for attempt in retrying:
                with attempt:
                    return await _send_once()
        except httpx.TimeoutException as exc:
            raise APIError(f"Request timeout after {self.timeout}s") from exc
        except httpx.NetworkError as exc:
            raise APIError(f"Network error: {exc}") from exc
        except RetryableAPIError as exc:
            self._raise_for_error(exc.response)

    async def get(self, endpoint: str, **kwargs) -> APIResponse:
        return await self._request(HTTPMethod.GET, endpoint, **kwargs)

    async def post(self, endpoint: str, **kwargs) -> APIResponse:
        return await self._request(HTTPMethod.POST, endpoint, **kwargs)

    async def get_typed(self, endpoint: str, response_model: Type[T], **kwargs) -> T:
        """发送GET请求并返回类型化响应"""
        response = await self.get(endpoint, **kwargs)
        return response_model.model_validate(response.json())

    async def post_typed(self, endpoint: str, response_model: Type[T], **kwargs) -> T:
        """发送POST请求并返回类型化响应"""
        response = await self.post(endpoint, **kwargs)
        return response_model.model_validate(response.json())
