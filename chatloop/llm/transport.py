"""
HTTP transport for provider calls.

``ProviderTransport.stream`` issues a ``ProviderRequest`` with httpx,
retries transient failures before any data has been handed out, and yields
the raw ``data:`` payloads of the Server-Sent-Events response.  Concurrency
per model is bounded by a ``RequestThrottler``.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import re
from typing import AsyncIterator

import httpx

from chatloop.errors import ProviderHttpError
from chatloop.llm.providers.base import ProviderRequest

logger = logging.getLogger(__name__)

_SECRET_HEADERS = {"authorization", "x-api-key", "api-key", "x-goog-api-key"}
_SECRET_QUERY = re.compile(r"([?&](?:key|api_key|apikey|token)=)[^&]+", re.IGNORECASE)


def redact_headers(headers: dict[str, str]) -> dict[str, str]:
    return {
        k: ("***" if k.lower() in _SECRET_HEADERS else v) for k, v in headers.items()
    }


def mask_url(url: str) -> str:
    return _SECRET_QUERY.sub(r"\1***", url)


class RequestThrottler:
    """Per-model semaphore bounding concurrent provider calls."""

    def __init__(self, max_concurrent: int = 5) -> None:
        self.max_concurrent = max_concurrent
        self._semaphores: dict[str, asyncio.Semaphore] = {}

    def _semaphore(self, key: str) -> asyncio.Semaphore:
        sem = self._semaphores.get(key)
        if sem is None:
            sem = self._semaphores[key] = asyncio.Semaphore(self.max_concurrent)
        return sem

    @contextlib.asynccontextmanager
    async def slot(self, key: str) -> AsyncIterator[None]:
        async with self._semaphore(key):
            yield


async def iter_sse_data(response: httpx.Response) -> AsyncIterator[str]:
    """
    Yield the ``data`` field of each Server-Sent Event in *response*.

    Multi-line data fields are joined with ``\\n``.  Comment lines and other
    fields (``event:``, ``id:``, ``retry:``) are ignored.  An event that is
    not followed by a blank line is still flushed at end of stream.
    """
    data_lines: list[str] = []
    async for line in response.aiter_lines():
        line = line.rstrip("\r")
        if not line:
            if data_lines:
                yield "\n".join(data_lines)
                data_lines = []
            continue
        if line.startswith(":"):
            continue
        field, _, value = line.partition(":")
        if value.startswith(" "):
            value = value[1:]
        if field == "data":
            data_lines.append(value)
    if data_lines:
        yield "\n".join(data_lines)


def _retryable(status: int) -> bool:
    return status == 429 or status >= 500


class ProviderTransport:
    """
    Streams provider responses over HTTP.

    Parameters
    ----------
    client:
        Optional shared ``httpx.AsyncClient``.  When omitted a client is
        created (and closed) per request.
    throttler:
        Concurrency limiter; a default one is created when omitted.
    max_retries:
        Retries on 429/5xx and transport errors.  Only attempted before the
        first payload has been yielded.
    timeout:
        httpx timeout for connect and read operations.  The wall-clock
        deadline of a whole call is enforced by the session controller.
    """

    def __init__(
        self,
        client: httpx.AsyncClient | None = None,
        throttler: RequestThrottler | None = None,
        max_retries: int = 2,
        timeout: float = 300.0,
        retry_backoff: float = 0.5,
    ) -> None:
        self._client = client
        self.throttler = throttler or RequestThrottler()
        self.max_retries = max_retries
        self.timeout = timeout
        self.retry_backoff = retry_backoff

    @contextlib.asynccontextmanager
    async def _client_ctx(self) -> AsyncIterator[httpx.AsyncClient]:
        if self._client is not None:
            yield self._client
        else:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                yield client

    async def stream(
        self,
        request: ProviderRequest,
        model_id: str,
        provider: str = "",
    ) -> AsyncIterator[str]:
        """
        Yield SSE data payloads for *request*.

        Raises ``ProviderHttpError`` on a non-2xx response once retries are
        exhausted.  Closing the generator closes the HTTP response.
        """
        logger.debug(
            "%s %s headers=%s",
            request.method,
            mask_url(request.url),
            redact_headers(request.headers),
        )
        async with self.throttler.slot(model_id), self._client_ctx() as client:
            started = False
            for attempt in range(1 + self.max_retries):
                try:
                    async with client.stream(
                        request.method,
                        request.url,
                        json=request.body,
                        headers=request.headers,
                    ) as response:
                        if response.status_code >= 400:
                            raw = await response.aread()
                            body = raw.decode("utf-8", errors="replace")
                            if _retryable(response.status_code) and attempt < self.max_retries:
                                logger.info(
                                    "HTTP %d from %s, retrying (%d/%d)",
                                    response.status_code,
                                    provider or model_id,
                                    attempt + 1,
                                    self.max_retries,
                                )
                                await asyncio.sleep(self.retry_backoff * 2**attempt)
                                continue
                            raise ProviderHttpError.from_response(
                                response.status_code, provider or model_id, body
                            )

                        async for data in iter_sse_data(response):
                            started = True
                            yield data
                        return
                except httpx.TransportError as exc:
                    if started or attempt >= self.max_retries:
                        raise
                    logger.info(
                        "Transport error talking to %s (%s), retrying (%d/%d)",
                        provider or model_id,
                        exc,
                        attempt + 1,
                        self.max_retries,
                    )
                    await asyncio.sleep(self.retry_backoff * 2**attempt)
