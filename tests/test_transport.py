"""Tests for the httpx-based provider transport."""

import asyncio

import httpx
import pytest

from chatloop.errors import ProviderHttpError
from chatloop.llm.providers.base import ProviderRequest
from chatloop.llm.transport import (
    ProviderTransport,
    RequestThrottler,
    iter_sse_data,
    mask_url,
    redact_headers,
)

URL = "https://llm.test/v1/chat/completions"


def _sse(*payloads: str) -> bytes:
    return "".join(f"data: {p}\n\n" for p in payloads).encode()


def _transport(handler, **kwargs) -> ProviderTransport:
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    kwargs.setdefault("retry_backoff", 0)
    return ProviderTransport(client=client, **kwargs)


async def _collect(transport, request=None):
    request = request or ProviderRequest(url=URL, body={"model": "m"})
    return [d async for d in transport.stream(request, "m", "openai-compat")]


class TestIterSseData:
    async def test_fields_and_comments(self):
        body = (
            b": keep-alive\n"
            b"event: message\n"
            b"id: 7\n"
            b"data: {\"a\": 1}\n"
            b"\n"
            b"data:no-space\n"
            b"\n"
            b"data: line one\n"
            b"data: line two\n"
            b"\n"
            b"data: [DONE]"
        )
        response = httpx.Response(200, content=body)
        out = [d async for d in iter_sse_data(response)]
        assert out == ['{"a": 1}', "no-space", "line one\nline two", "[DONE]"]

    async def test_crlf_lines(self):
        response = httpx.Response(200, content=b"data: x\r\n\r\ndata: y\r\n\r\n")
        assert [d async for d in iter_sse_data(response)] == ["x", "y"]


class TestProviderTransport:
    async def test_streams_payloads(self):
        seen = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(200, content=_sse('{"x": 1}', "[DONE]"))

        transport = _transport(handler)
        request = ProviderRequest(
            url=URL, headers={"Authorization": "Bearer sk-1"}, body={"model": "m", "stream": True}
        )

        assert await _collect(transport, request) == ['{"x": 1}', "[DONE]"]
        assert seen[0].method == "POST"
        assert seen[0].headers["authorization"] == "Bearer sk-1"
        assert b'"stream": true' in seen[0].content or b'"stream":true' in seen[0].content

    async def test_retries_transient_status(self):
        attempts = []

        def handler(request):
            attempts.append(1)
            if len(attempts) == 1:
                return httpx.Response(503, text="busy")
            return httpx.Response(200, content=_sse("ok"))

        assert await _collect(_transport(handler, max_retries=2)) == ["ok"]
        assert len(attempts) == 2

    async def test_gives_up_after_max_retries(self):
        attempts = []

        def handler(request):
            attempts.append(1)
            return httpx.Response(500, json={"error": {"message": "upstream exploded"}})

        with pytest.raises(ProviderHttpError) as exc_info:
            await _collect(_transport(handler, max_retries=2))

        assert len(attempts) == 3
        assert exc_info.value.status == 500
        assert exc_info.value.code == "service_error"
        assert exc_info.value.vendor_message == "upstream exploded"

    async def test_client_errors_are_not_retried(self):
        attempts = []

        def handler(request):
            attempts.append(1)
            return httpx.Response(401, json={"error": {"message": "Incorrect API key"}})

        with pytest.raises(ProviderHttpError) as exc_info:
            await _collect(_transport(handler))

        assert len(attempts) == 1
        assert exc_info.value.code == "authentication_failed"
        assert exc_info.value.provider == "openai-compat"

    async def test_transport_error_retried(self):
        attempts = []

        def handler(request):
            attempts.append(1)
            if len(attempts) < 3:
                raise httpx.ConnectError("refused", request=request)
            return httpx.Response(200, content=_sse("finally"))

        assert await _collect(_transport(handler, max_retries=2)) == ["finally"]

    async def test_transport_error_exhausted(self):
        def handler(request):
            raise httpx.ConnectError("refused", request=request)

        with pytest.raises(httpx.ConnectError):
            await _collect(_transport(handler, max_retries=1))

    async def test_closing_early_is_clean(self):
        def handler(request):
            return httpx.Response(200, content=_sse("a", "b", "c"))

        stream = _transport(handler).stream(ProviderRequest(url=URL), "m")
        assert await stream.__anext__() == "a"
        await stream.aclose()


class TestRequestThrottler:
    async def test_limits_concurrency_per_key(self):
        throttler = RequestThrottler(max_concurrent=2)
        active = 0
        peak = 0

        async def job(key):
            nonlocal active, peak
            async with throttler.slot(key):
                active += 1
                peak = max(peak, active)
                await asyncio.sleep(0.01)
                active -= 1

        await asyncio.gather(*(job("model-a") for _ in range(5)))
        assert peak == 2

    async def test_keys_are_independent(self):
        throttler = RequestThrottler(max_concurrent=1)
        async with throttler.slot("a"):
            await asyncio.wait_for(self._enter(throttler, "b"), timeout=0.5)

    @staticmethod
    async def _enter(throttler, key):
        async with throttler.slot(key):
            return True


class TestRedaction:
    def test_redact_headers(self):
        out = redact_headers({"Authorization": "Bearer x", "X-Api-Key": "k", "Accept": "*/*"})
        assert out == {"Authorization": "***", "X-Api-Key": "***", "Accept": "*/*"}

    def test_mask_url(self):
        assert mask_url("https://h/v1?key=secret&alt=sse") == "https://h/v1?key=***&alt=sse"
