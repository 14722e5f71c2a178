"""HTTP execution of request attempts.

Performs one signed HTTP call per execution and classifies the outcome
into a Response:
- 2xx: success
- non-2xx: E_HTTP with the status, headers and (truncated) body
- no response in time: E_TIMEOUT
- DNS, refused, reset, TLS: E_CONNECTION
- malformed URL or forbidden destination: E_INVALID_TARGET, nothing is sent
"""

from __future__ import annotations

import asyncio
import ipaddress
import socket
import time
from collections.abc import Awaitable, Callable
from datetime import datetime
from typing import Any

import httpx

from hook0.config import WorkerSettings
from hook0.logging import get_logger
from hook0.models import Event, RequestAttempt, Response, ResponseError, Subscription, utc_now

from .signature import sign

logger = get_logger(__name__)

Resolver = Callable[[str, int | None], Awaitable[list[str]]]

EVENT_ID_HEADER = "Hook0-Event-Id"
EVENT_TYPE_HEADER = "Hook0-Event-Type"
ALLOWED_SCHEMES = frozenset({"http", "https"})


class InvalidTarget(Exception):
    """The target URL cannot or must not be called."""


async def resolve_host(host: str, port: int | None) -> list[str]:
    """Resolve a host name to the IP addresses a connection could use."""
    loop = asyncio.get_running_loop()
    infos = await loop.getaddrinfo(host, port, type=socket.SOCK_STREAM)
    return [str(info[4][0]) for info in infos]


class DeliveryClient:
    """Executes request attempts over HTTP.

    One client (and its connection pool) is shared by all units of a worker.

    Example:
        ```python
        async with DeliveryClient(settings.worker) as client:
            response = await client.execute(attempt, event, subscription)
        ```
    """

    def __init__(
        self,
        settings: WorkerSettings | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
        resolver: Resolver | None = None,
    ) -> None:
        """Initialize the delivery client.

        Args:
            settings: Worker settings (timeouts, signature, target check).
            transport: Optional httpx transport, e.g. httpx.MockTransport in tests.
            resolver: Host resolver used by the target IP check.
        """
        self._settings = settings or WorkerSettings()
        self._transport = transport
        self._resolver = resolver or resolve_host
        self._client: httpx.AsyncClient | None = None
        if self._settings.disable_target_ip_check:
            logger.warning("Target IP check is disabled: private addresses can be called")

    @property
    def client(self) -> httpx.AsyncClient:
        """Get the HTTP client, creating it on first use."""
        if self._client is None:
            self._client = httpx.AsyncClient(
                timeout=httpx.Timeout(
                    self._settings.timeout_seconds,
                    connect=self._settings.connect_timeout_seconds,
                ),
                transport=self._transport,
                follow_redirects=False,
            )
        return self._client

    async def close(self) -> None:
        """Close the HTTP connection pool."""
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    async def __aenter__(self) -> DeliveryClient:
        """Async context manager entry."""
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        """Async context manager exit."""
        await self.close()

    async def check_target(self, url: str) -> None:
        """Validate a target URL before calling it.

        Raises:
            InvalidTarget: If the URL is malformed, not http(s), has no host,
                or resolves to a non-global address while the IP check is on.
            OSError: If the host cannot be resolved.
        """
        try:
            parsed = httpx.URL(url)
        except httpx.InvalidURL as e:
            raise InvalidTarget(f"malformed URL: {e}") from e
        if parsed.scheme not in ALLOWED_SCHEMES:
            raise InvalidTarget(f"unsupported scheme {parsed.scheme!r}")
        if not parsed.host:
            raise InvalidTarget("URL has no host")

        if self._settings.disable_target_ip_check:
            return

        try:
            addresses = [str(ipaddress.ip_address(parsed.host))]
        except ValueError:
            addresses = await self._resolver(parsed.host, parsed.port)

        for address in addresses:
            if not ipaddress.ip_address(address.split("%", 1)[0]).is_global:
                raise InvalidTarget(f"{parsed.host} resolves to non-global address {address}")

    def build_headers(
        self,
        event: Event,
        subscription: Subscription,
        timestamp: int,
    ) -> httpx.Headers:
        """Build the outbound headers, signature included."""
        headers = httpx.Headers(subscription.target.headers)
        headers["Content-Type"] = event.payload_content_type
        headers[EVENT_ID_HEADER] = str(event.event_id)
        headers[EVENT_TYPE_HEADER] = event.event_type

        signed = {
            name.lower(): headers[name]
            for name in self._settings.signed_headers
            if name in headers
        }
        headers[self._settings.signature_header_name] = sign(
            event.payload, timestamp, subscription.secret, signed
        )
        return headers

    async def execute(
        self,
        attempt: RequestAttempt,
        event: Event,
        subscription: Subscription,
        now: datetime | None = None,
    ) -> Response:
        """Perform one delivery of an attempt and record the outcome.

        Never raises for delivery failures: they are returned as a Response
        carrying the failure category.

        Args:
            attempt: Attempt being executed.
            event: Event to deliver.
            subscription: Subscription holding the target and secret.
            now: Signature time (defaults to the current time).
        """
        now = now or utc_now()
        target = subscription.target
        start = time.perf_counter()

        def result(error: ResponseError | None, **fields: Any) -> Response:
            return Response(
                request_attempt_id=attempt.request_attempt_id,
                application_id=attempt.application_id,
                response_error_name=error,
                elapsed_time_ms=int((time.perf_counter() - start) * 1000),
                **fields,
            )

        log = logger.bind(
            request_attempt_id=str(attempt.request_attempt_id),
            subscription_id=str(subscription.subscription_id),
            target=target.url,
        )

        try:
            await self.check_target(target.url)
        except InvalidTarget as e:
            log.warning("Invalid target", reason=str(e))
            return result(ResponseError.INVALID_TARGET)
        except OSError as e:
            log.info("Target resolution failed", error=str(e))
            return result(ResponseError.CONNECTION)

        headers = self.build_headers(event, subscription, int(now.timestamp()))
        try:
            async with asyncio.timeout(self._settings.timeout_seconds):
                async with self.client.stream(
                    target.method,
                    target.url,
                    content=event.payload,
                    headers=headers,
                ) as http_response:
                    body = await self._read_body(http_response)
        except (TimeoutError, httpx.TimeoutException):
            log.info("Delivery timed out")
            return result(ResponseError.TIMEOUT)
        except (httpx.InvalidURL, httpx.UnsupportedProtocol) as e:
            log.warning("Invalid target", reason=str(e))
            return result(ResponseError.INVALID_TARGET)
        except httpx.RequestError as e:
            log.info("Delivery connection failed", error=str(e))
            return result(ResponseError.CONNECTION)

        fields = {
            "http_code": http_response.status_code,
            "headers": dict(http_response.headers.items()),
            "body": body.decode("utf-8", errors="replace"),
        }
        if http_response.is_success:
            log.info("Webhook delivered", http_code=http_response.status_code)
            return result(None, **fields)

        log.info("Webhook rejected", http_code=http_response.status_code)
        return result(ResponseError.HTTP, **fields)

    async def _read_body(self, http_response: httpx.Response) -> bytes:
        """Read the response body up to max_response_body_bytes.

        The rest of the body is never downloaded: leaving the stream
        context closes the connection.
        """
        limit = self._settings.max_response_body_bytes
        body = bytearray()
        async for chunk in http_response.aiter_bytes():
            body += chunk[: limit - len(body)]
            if len(body) >= limit:
                break
        return bytes(body)
