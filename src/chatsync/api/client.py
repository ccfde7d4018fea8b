"""
Resilient request client for the remote API.

Every exchange runs through:
1. outbound interceptors (credential injection, extra headers)
2. the HTTP call via httpx
3. inbound interceptors on the raw response
4. envelope parsing and error normalization
5. error interceptors, once retries are exhausted

Transient failures (connectivity, timeout, 5xx) are retried with
exponential backoff; 4xx-class failures never are.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field, replace
from typing import TYPE_CHECKING, Any

import httpx
from pydantic import ValidationError as PydanticValidationError

from chatsync.api.models import ApiResponse, HttpMethod
from chatsync.errors import (
    ApiError,
    ApiErrorCode,
    NetworkError,
    ProtocolError,
    error_from_code,
    error_from_status,
)

if TYPE_CHECKING:
    from chatsync.config import ApiConfig

logger = logging.getLogger(__name__)


@dataclass
class RequestOptions:
    """Per-call overrides. None means "use the client default"."""

    timeout_seconds: float | None = None
    max_retries: int | None = None
    retry_delay_seconds: float | None = None
    extra_headers: dict[str, str] = field(default_factory=dict)
    query_params: dict[str, Any] = field(default_factory=dict)


@dataclass
class RequestContext:
    """The request as seen by interceptors."""

    method: HttpMethod
    path: str
    body: Any = None
    headers: dict[str, str] = field(default_factory=dict)
    params: dict[str, Any] = field(default_factory=dict)
    timeout_seconds: float = 30.0
    attempt: int = 1


RequestInterceptor = Callable[[RequestContext], "RequestContext | Awaitable[RequestContext]"]
ResponseInterceptor = Callable[[httpx.Response], "httpx.Response | Awaitable[httpx.Response]"]
ErrorInterceptor = Callable[[ApiError, RequestContext], "ApiError | Awaitable[ApiError]"]


async def _maybe_await(value: Any) -> Any:
    if inspect.isawaitable(value):
        return await value
    return value


class RequestClient:
    """
    Stateless request/response client.

    The only state kept across calls is the interceptor chain, registered
    through the add_*_interceptor methods.
    """

    def __init__(
        self,
        config: ApiConfig | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        if config is None:
            from chatsync.config import ApiConfig

            config = ApiConfig()
        self.config = config
        self._sleep = sleep
        self._client = httpx.AsyncClient(
            base_url=config.base_url,
            transport=transport,
            headers={"Content-Type": "application/json", "Accept": "application/json"},
        )
        self._request_interceptors: list[RequestInterceptor] = []
        self._response_interceptors: list[ResponseInterceptor] = []
        self._error_interceptors: list[ErrorInterceptor] = []

    def add_request_interceptor(self, interceptor: RequestInterceptor) -> None:
        self._request_interceptors.append(interceptor)

    def add_response_interceptor(self, interceptor: ResponseInterceptor) -> None:
        self._response_interceptors.append(interceptor)

    def add_error_interceptor(self, interceptor: ErrorInterceptor) -> None:
        self._error_interceptors.append(interceptor)

    async def close(self) -> None:
        await self._client.aclose()

    async def __aenter__(self) -> RequestClient:
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.close()

    def retry_delay(self, attempt: int, base_delay: float | None = None) -> float:
        """Backoff before retry number `attempt` (1-based): base * 2^(attempt-1), capped."""
        base = self.config.retry_delay_seconds if base_delay is None else base_delay
        return min(base * (2 ** (attempt - 1)), self.config.max_retry_delay_seconds)

    async def execute(
        self,
        method: HttpMethod | str,
        path: str,
        body: Any = None,
        options: RequestOptions | None = None,
    ) -> ApiResponse:
        """
        Issue a request with retries.

        Returns:
            The parsed success envelope.

        Raises:
            ApiError: The last normalized error once retries are exhausted,
                or immediately for non-retryable failures.
        """
        options = options or RequestOptions()
        method = HttpMethod(method.upper() if isinstance(method, str) else method)
        max_retries = self.config.max_retries if options.max_retries is None else options.max_retries
        timeout = self.config.timeout_seconds if options.timeout_seconds is None else options.timeout_seconds

        base_context = RequestContext(
            method=method,
            path=path,
            body=body,
            headers=dict(options.extra_headers),
            params={k: v for k, v in options.query_params.items() if v is not None},
            timeout_seconds=timeout,
        )

        started = time.monotonic()
        attempt = 0
        while True:
            attempt += 1
            context = replace(base_context, headers=dict(base_context.headers), attempt=attempt)
            try:
                for interceptor in self._request_interceptors:
                    context = await _maybe_await(interceptor(context))

                logger.debug("%s %s attempt %d/%d", method.value, path, attempt, max_retries + 1)
                response = await self._send(context)

                for response_interceptor in self._response_interceptors:
                    response = await _maybe_await(response_interceptor(response))

                result = self._parse_response(response)
                logger.debug(
                    "%s %s -> %d in %.0fms (%d attempts)",
                    method.value,
                    path,
                    response.status_code,
                    (time.monotonic() - started) * 1000,
                    attempt,
                )
                return result
            except ApiError as error:
                last_error = error

            logger.warning("%s %s attempt %d failed: %s", method.value, path, attempt, last_error.message)
            if attempt <= max_retries and last_error.retryable:
                delay = self.retry_delay(attempt, options.retry_delay_seconds)
                logger.info("Retrying %s %s in %.2fs", method.value, path, delay)
                await self._sleep(delay)
                continue
            break

        error = last_error
        for error_interceptor in self._error_interceptors:
            error = await _maybe_await(error_interceptor(error, context))
        raise error

    async def _send(self, context: RequestContext) -> httpx.Response:
        """Perform the HTTP exchange, mapping transport failures to NetworkError."""
        try:
            return await self._client.request(
                context.method.value,
                context.path,
                json=context.body,
                params=context.params or None,
                headers=context.headers,
                timeout=context.timeout_seconds,
            )
        except httpx.TimeoutException as e:
            raise NetworkError(
                "Request timed out",
                code=ApiErrorCode.TIMEOUT_ERROR,
            ) from e
        except httpx.TransportError as e:
            raise NetworkError(f"Network connection failed: {e}") from e

    def _parse_response(self, response: httpx.Response) -> ApiResponse:
        """Turn an HTTP response into a success envelope or raise the normalized error."""
        payload: Any = None
        if response.content:
            try:
                payload = response.json()
            except ValueError:
                payload = None

        if response.is_error:
            envelope_error = payload.get("error") if isinstance(payload, dict) else None
            if isinstance(envelope_error, dict):
                raise self._error_from_envelope(envelope_error, response.status_code)
            raise error_from_status(response.status_code)

        if not isinstance(payload, dict):
            raise ProtocolError(
                "Invalid response format",
                status_code=response.status_code,
            )

        try:
            envelope = ApiResponse.model_validate(payload)
        except PydanticValidationError as e:
            raise ProtocolError(
                "Response envelope is malformed",
                details=[err["msg"] for err in e.errors()],
                status_code=response.status_code,
            ) from e

        if not envelope.success:
            error = envelope.error.model_dump(by_alias=True) if envelope.error else {}
            raise self._error_from_envelope(error, response.status_code)

        return envelope

    @staticmethod
    def _error_from_envelope(error: dict[str, Any], status_code: int) -> ApiError:
        code = error.get("code")
        kwargs = {
            "details": error.get("details") or [],
            "request_id": error.get("requestId"),
            "timestamp": error.get("timestamp"),
        }
        if not code:
            return error_from_status(status_code, error.get("message"), **kwargs)
        return error_from_code(code, error.get("message"), status_code=status_code, **kwargs)

    # Convenience wrappers

    async def get(self, path: str, options: RequestOptions | None = None) -> ApiResponse:
        return await self.execute(HttpMethod.GET, path, options=options)

    async def post(self, path: str, body: Any = None, options: RequestOptions | None = None) -> ApiResponse:
        return await self.execute(HttpMethod.POST, path, body, options)

    async def put(self, path: str, body: Any = None, options: RequestOptions | None = None) -> ApiResponse:
        return await self.execute(HttpMethod.PUT, path, body, options)

    async def patch(self, path: str, body: Any = None, options: RequestOptions | None = None) -> ApiResponse:
        return await self.execute(HttpMethod.PATCH, path, body, options)

    async def delete(self, path: str, options: RequestOptions | None = None) -> ApiResponse:
        return await self.execute(HttpMethod.DELETE, path, options=options)
