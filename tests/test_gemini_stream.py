import json

import httpx
import pytest

from conftest import make_settings
from mcqstream.core.errors import ErrorKind, ServiceError
from mcqstream.schemas import Material
from mcqstream.services.gemini_stream import GeminiStreamClient


def sse_record(text: str) -> bytes:
    payload = {"candidates": [{"content": {"parts": [{"text": text}]}}]}
    return f"data: {json.dumps(payload)}\n\n".encode("utf-8")


class TrackingStream(httpx.AsyncByteStream):
    def __init__(self, chunks):
        self.chunks = chunks
        self.pulled = 0
        self.closed = False

    async def __aiter__(self):
        for chunk in self.chunks:
            self.pulled += 1
            yield chunk

    async def aclose(self):
        self.closed = True


def make_client(handler, **overrides):
    overrides.setdefault("GOOGLE_API_KEY", "test-key")
    http = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return http, GeminiStreamClient(http, make_settings(**overrides))


async def test_streams_lines_and_sends_expected_request():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["request"] = request
        return httpx.Response(200, content=sse_record("one\ntw") + sse_record("o\n"))

    http, client = make_client(handler, GEMINI_MODEL="gemini-test")
    async with http:
        async with client.open_stream("PROMPT", Material(text="cells")) as lines:
            result = [line async for line in lines]

    assert result == ["one", "two"]
    request = seen["request"]
    assert request.url.path.endswith("/models/gemini-test:streamGenerateContent")
    assert request.url.params["alt"] == "sse"
    assert request.headers["x-goog-api-key"] == "test-key"
    body = json.loads(request.content)
    assert body["contents"][0]["parts"] == [{"text": "PROMPT"}, {"text": "STUDY MATERIAL:\ncells"}]


async def test_error_status_raises_transport_with_body():
    def handler(request):
        return httpx.Response(429, text="RESOURCE_EXHAUSTED")

    http, client = make_client(handler)
    async with http:
        with pytest.raises(ServiceError) as info:
            async with client.open_stream("p", Material(text="t")) as lines:
                await lines.__anext__()

    assert info.value.kind is ErrorKind.TRANSPORT
    assert "429" in info.value.detail
    assert "RESOURCE_EXHAUSTED" in info.value.detail


async def test_empty_body_raises_transport():
    def handler(request):
        return httpx.Response(200, content=b"")

    http, client = make_client(handler)
    async with http:
        with pytest.raises(ServiceError) as info:
            async with client.open_stream("p", Material(text="t")) as lines:
                _ = [line async for line in lines]

    assert info.value.kind is ErrorKind.TRANSPORT


async def test_connection_error_raises_transport():
    def handler(request):
        raise httpx.ConnectError("refused", request=request)

    http, client = make_client(handler)
    async with http:
        with pytest.raises(ServiceError) as info:
            async with client.open_stream("p", Material(text="t")) as lines:
                await lines.__anext__()

    assert info.value.kind is ErrorKind.TRANSPORT


async def test_early_close_releases_connection():
    stream = TrackingStream([sse_record("first\n"), sse_record("second\n"), sse_record("third\n")])

    def handler(request):
        return httpx.Response(200, stream=stream)

    http, client = make_client(handler)
    async with http:
        async with client.open_stream("p", Material(text="t")) as lines:
            assert await lines.__anext__() == "first"

    assert stream.closed
    assert stream.pulled == 1


async def test_connection_is_not_opened_until_first_pull():
    calls = []

    def handler(request):
        calls.append(request)
        return httpx.Response(200, content=sse_record("x\n"))

    http, client = make_client(handler)
    async with http:
        lines = client.open_stream("p", Material(text="t"))
        assert calls == []
        await lines.aclose()
        await lines.aclose()
    assert calls == []


def test_missing_api_key_is_a_transport_error():
    client = GeminiStreamClient(httpx.AsyncClient(), make_settings(GOOGLE_API_KEY=None))
    with pytest.raises(ServiceError) as info:
        client.open_stream("p", Material(text="t"))
    assert info.value.kind is ErrorKind.TRANSPORT


def test_file_material_is_sent_inline():
    client = GeminiStreamClient(httpx.AsyncClient(), make_settings(GEMINI_MAX_OUTPUT_TOKENS=1234))
    body = client.build_body("p", Material(file_data="JVBERi0=", mime_type="application/pdf"))

    assert body["contents"][0]["parts"][1] == {
        "inlineData": {"mimeType": "application/pdf", "data": "JVBERi0="}
    }
    assert body["generationConfig"]["maxOutputTokens"] == 1234


class FailingBody(httpx.AsyncByteStream):
    def __init__(self):
        self.closed = False

    async def __aiter__(self):
        raise httpx.ReadError("connection reset")
        yield b""  # pragma: no cover

    async def aclose(self):
        self.closed = True


async def test_unreadable_error_body_is_still_a_transport_error():
    body = FailingBody()

    def handler(request):
        return httpx.Response(503, stream=body)

    http, client = make_client(handler)
    async with http:
        with pytest.raises(ServiceError) as info:
            async with client.open_stream("p", Material(text="t")) as lines:
                await lines.__anext__()

    assert info.value.kind is ErrorKind.TRANSPORT
    assert "503" in info.value.detail
    assert info.value.retryable
    assert body.closed


@pytest.mark.parametrize("status, retryable", [(400, False), (403, False), (429, True), (500, True), (503, True)])
async def test_error_status_marks_transient_failures_retryable(status, retryable):
    http, client = make_client(lambda request: httpx.Response(status, text="nope"))
    async with http:
        with pytest.raises(ServiceError) as info:
            async with client.open_stream("p", Material(text="t")) as lines:
                await lines.__anext__()
    assert info.value.retryable is retryable
