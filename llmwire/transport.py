"""
HTTP transport and cancellation.

The transport only sends requests and hands back bodies or byte streams;
pooling, TLS and DNS are left to httpx.
"""
import asyncio
import contextlib
import json
import logging
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Awaitable, Dict, Optional, TypeVar

import httpx

from .errors import RequestCancelled, TransportError
from .types import ProviderFormat

logger = logging.getLogger(__name__)

T = TypeVar("T")

_END = object()


class CancelToken:
    """
    Cancellation handle owned by one logical send.

    Transport reads race against the token, so cancelling stops them at the
    next chunk boundary.
    """

    def __init__(self):
        self._event = asyncio.Event()
        self._timer: Optional[asyncio.TimerHandle] = None

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self) -> None:
        self._event.set()
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

    def cancel_after(self, seconds: float) -> None:
        """Wall-clock timeout: cancel the token after ``seconds``."""
        loop = asyncio.get_running_loop()
        if self._timer is not None:
            self._timer.cancel()
        self._timer = loop.call_later(seconds, self.cancel)

    def clear_timeout(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

    async def wait(self) -> None:
        await self._event.wait()

    def raise_if_cancelled(self) -> None:
        if self.cancelled:
            raise RequestCancelled("Request cancelled")


async def race_cancel(awaitable: Awaitable[T], cancel: Optional[CancelToken]) -> T:
    """
    Await ``awaitable`` unless ``cancel`` fires first.

    Raises:
        RequestCancelled: If the token was or becomes cancelled.
    """
    if cancel is None:
        return await awaitable
    task = asyncio.ensure_future(awaitable)
    if cancel.cancelled:
        task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await task
        raise RequestCancelled("Request cancelled")

    waiter = asyncio.ensure_future(cancel.wait())
    try:
        done, _ = await asyncio.wait({task, waiter}, return_when=asyncio.FIRST_COMPLETED)
    finally:
        waiter.cancel()
    if task in done:
        return task.result()

    task.cancel()
    with contextlib.suppress(asyncio.CancelledError):
        await task
    raise RequestCancelled("Request cancelled")


@dataclass
class WireRequest:
    """A transport-ready provider request built by an adapter."""
    url: str
    body: Dict[str, Any]
    headers: Dict[str, str] = field(default_factory=dict)
    params: Dict[str, str] = field(default_factory=dict)
    stream: bool = False
    format: ProviderFormat = ProviderFormat.OPENAI
    method: str = "POST"


@dataclass
class TransportResponse:
    """A complete (non-streaming) HTTP response."""
    status_code: int
    text: str
    headers: Dict[str, str] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return 200 <= self.status_code < 300

    def json(self) -> Any:
        """Parsed body, or None when the body is not JSON."""
        try:
            return json.loads(self.text) if self.text else None
        except json.JSONDecodeError:
            return None


class StreamResponse:
    """An open streaming HTTP response."""

    def __init__(self, response: httpx.Response, cancel: Optional[CancelToken] = None):
        self._response = response
        self._cancel = cancel
        self.status_code = response.status_code
        self.headers = dict(response.headers)

    @property
    def ok(self) -> bool:
        return 200 <= self.status_code < 300

    async def read(self) -> TransportResponse:
        """Read the whole body, typically to inspect an error response."""
        try:
            body = await race_cancel(self._response.aread(), self._cancel)
        except httpx.HTTPError as exc:
            raise TransportError(f"Failed to read response body: {exc}") from exc
        return TransportResponse(
            status_code=self.status_code,
            text=body.decode("utf-8", errors="replace"),
            headers=self.headers,
        )

    async def iter_bytes(self) -> AsyncIterator[bytes]:
        """Body chunks as they arrive; each read races the cancel token."""
        iterator = self._response.aiter_bytes().__aiter__()

        async def next_chunk():
            try:
                return await iterator.__anext__()
            except StopAsyncIteration:
                return _END

        while True:
            try:
                chunk = await race_cancel(next_chunk(), self._cancel)
            except httpx.HTTPError as exc:
                raise TransportError(f"Stream interrupted: {exc}") from exc
            if chunk is _END:
                return
            yield chunk


class HttpTransport:
    """
    httpx-based transport.

    Args:
        client (httpx.AsyncClient, optional): Client to use. One is created
            lazily (and closed by :meth:`aclose`) when omitted.
        timeout (float, optional): Connect/read timeout of the created client.
    """

    def __init__(
        self,
        client: Optional[httpx.AsyncClient] = None,
        *,
        timeout: Optional[float] = 120.0,
    ):
        self._client = client
        self._owns_client = client is None
        self.timeout = timeout

    @property
    def client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=httpx.Timeout(self.timeout), follow_redirects=True)
        return self._client

    async def aclose(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None

    async def __aenter__(self) -> "HttpTransport":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()

    def _build(self, request: WireRequest) -> httpx.Request:
        return self.client.build_request(
            request.method,
            request.url,
            json=request.body,
            headers=request.headers,
            params=request.params or None,
        )

    async def send(self, request: WireRequest, cancel: Optional[CancelToken] = None) -> TransportResponse:
        """
        Send a request and read the whole response.

        Raises:
            TransportError: On network, DNS or timeout failures.
            RequestCancelled: If ``cancel`` fires first.
        """
        logger.debug("POST %s (format=%s)", request.url, request.format.value)
        try:
            response = await race_cancel(self.client.send(self._build(request)), cancel)
        except httpx.TimeoutException as exc:
            raise TransportError(f"Request timed out: {exc}") from exc
        except httpx.HTTPError as exc:
            raise TransportError(f"Request failed: {exc}") from exc
        return TransportResponse(
            status_code=response.status_code,
            text=response.text,
            headers=dict(response.headers),
        )

    @contextlib.asynccontextmanager
    async def open_stream(
        self,
        request: WireRequest,
        cancel: Optional[CancelToken] = None,
    ) -> AsyncIterator[StreamResponse]:
        """
        Open a streaming response; the connection is released on exit.

        Raises:
            TransportError: On network, DNS or timeout failures.
            RequestCancelled: If ``cancel`` fires first.
        """
        logger.debug("POST %s (stream, format=%s)", request.url, request.format.value)
        try:
            response = await race_cancel(self.client.send(self._build(request), stream=True), cancel)
        except httpx.TimeoutException as exc:
            raise TransportError(f"Request timed out: {exc}") from exc
        except httpx.HTTPError as exc:
            raise TransportError(f"Request failed: {exc}") from exc
        try:
            yield StreamResponse(response, cancel)
        finally:
            await response.aclose()
