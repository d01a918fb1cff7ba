"""
convostream - HTTP Transport

Single HTTP exchanges against the Messages API:
- Fixed protocol headers on every call
- Non-2xx responses mapped to the TransportError taxonomy
- Connections released on every exit path
- Streaming variant yielding response lines for the SSE decoder
"""

import time
import uuid
from contextlib import asynccontextmanager
from typing import AsyncIterator, Dict, Optional

import httpx

from .config import ClientConfig
from .errors import ConnectionError, TimeoutError, TransportError
from .logs import get_logger
from .tracing import inject_trace_headers
from .version import __version__


logger = get_logger(__name__)


class Transport:
    """
    HTTP transport for the Messages API.

    Holds one sync and one async httpx client, both created lazily.
    Pass pre-built clients (e.g. with httpx.MockTransport) for testing.

    Args:
        config: Client configuration (API key, version, timeout)
        client: Optional sync httpx client
        async_client: Optional async httpx client
    """

    def __init__(
        self,
        config: ClientConfig,
        client: Optional[httpx.Client] = None,
        async_client: Optional[httpx.AsyncClient] = None,
    ):
        self.config = config
        self._client = client
        self._async_client = async_client

    def _get_client(self) -> httpx.Client:
        if self._client is None or self._client.is_closed:
            self._client = httpx.Client(timeout=self.config.timeout)
        return self._client

    def _get_async_client(self) -> httpx.AsyncClient:
        if self._async_client is None or self._async_client.is_closed:
            self._async_client = httpx.AsyncClient(timeout=self.config.timeout)
        return self._async_client

    def build_headers(self, headers: Optional[Dict[str, str]] = None) -> Dict[str, str]:
        """Merge caller headers under the fixed protocol headers."""
        merged = dict(headers or {})
        merged.update(self.config.headers)
        merged.setdefault("user-agent", f"convostream-python/{__version__}")
        merged.setdefault("x-request-id", f"req_{uuid.uuid4().hex[:12]}")
        return inject_trace_headers(merged)

    def post(self, url: str, body: bytes, headers: Optional[Dict[str, str]] = None) -> bytes:
        """
        POST a request body and return the response body.

        Raises:
            TransportError: Non-2xx status (subclass chosen by status code)
            TimeoutError: Request timed out
            ConnectionError: Network failure
        """
        merged = self.build_headers(headers)
        request_id = merged["x-request-id"]
        logger.info("POST %s", url, request_id=request_id, body_bytes=len(body))

        start_time = time.time()
        try:
            response = self._get_client().post(url, content=body, headers=merged)
        except httpx.TimeoutException as e:
            raise TimeoutError(f"Request timed out: {e}", url=url) from e
        except httpx.RequestError as e:
            raise ConnectionError(f"Request failed: {e}", url=url) from e

        try:
            latency_ms = (time.time() - start_time) * 1000
            self._log_response(request_id, response.status_code, latency_ms)
            if not response.is_success:
                raise TransportError.from_response(
                    response.status_code, response.content, url, dict(response.headers)
                )
            return response.content
        finally:
            response.close()

    @asynccontextmanager
    async def open_stream(
        self,
        url: str,
        body: bytes,
        headers: Optional[Dict[str, str]] = None
    ) -> AsyncIterator[AsyncIterator[str]]:
        """
        Open a streaming POST and yield an iterator over response lines.

        The connection is closed when the context exits, whether normally,
        by exception, or by task cancellation. Network failures while
        reading lines inside the context are mapped the same way as
        failures while connecting.

        Raises:
            TransportError: Non-2xx status (body is read first)
            TimeoutError: Request timed out
            ConnectionError: Network failure, before or during the stream
        """
        merged = self.build_headers(headers)
        merged["accept"] = "text/event-stream"
        request_id = merged["x-request-id"]
        logger.info("POST %s (stream)", url, request_id=request_id, body_bytes=len(body))

        start_time = time.time()
        client = self._get_async_client()
        try:
            async with client.stream("POST", url, content=body, headers=merged) as response:
                latency_ms = (time.time() - start_time) * 1000
                self._log_response(request_id, response.status_code, latency_ms)
                if not response.is_success:
                    payload = await response.aread()
                    raise TransportError.from_response(
                        response.status_code, payload, url, dict(response.headers)
                    )
                yield response.aiter_lines()
        except httpx.TimeoutException as e:
            raise TimeoutError(f"Stream timed out: {e}", url=url) from e
        except httpx.RequestError as e:
            raise ConnectionError(f"Stream connection failed: {e}", url=url) from e

    def _log_response(self, request_id: str, status: int, latency_ms: float) -> None:
        if status < 400:
            logger.info(
                "Response: status=%d, latency=%.0fms", status, latency_ms,
                request_id=request_id,
            )
        else:
            logger.warning(
                "Response: status=%d, latency=%.0fms", status, latency_ms,
                request_id=request_id,
            )

    def close(self) -> None:
        """Close the sync HTTP client."""
        if self._client is not None and not self._client.is_closed:
            self._client.close()

    async def aclose(self) -> None:
        """Close both HTTP clients."""
        self.close()
        if self._async_client is not None and not self._async_client.is_closed:
            await self._async_client.aclose()
