"""
mcqstream — Gemini Streaming Transport
=======================================
Opens one streamGenerateContent request per generation and exposes the
generated text as a lazy sequence of logical lines.

  bytes ─► incremental UTF-8 decode ─► `data: {...}` SSE records
        ─► candidates[*].content.parts[*].text fragments
        ─► pending text buffer ─► complete lines

Memory is bounded by one partial SSE record plus one partial output line;
the full response is never materialized.
"""

import codecs
import json
import logging
from collections import deque
from typing import Any, Deque, Dict, List, Optional

import httpx

from mcqstream.core.config import Settings
from mcqstream.core.errors import ErrorKind, ServiceError
from mcqstream.schemas import Material

logger = logging.getLogger(__name__)

DATA_PREFIX = "data:"
END_SENTINEL = "[DONE]"


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
# LINE REASSEMBLY
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━

def _text_fragments(record: Any) -> List[str]:
    fragments = []
    if not isinstance(record, dict):
        return fragments
    for candidate in record.get("candidates") or []:
        content = candidate.get("content") if isinstance(candidate, dict) else None
        parts = content.get("parts") if isinstance(content, dict) else None
        for part in parts or []:
            text = part.get("text") if isinstance(part, dict) else None
            if isinstance(text, str):
                fragments.append(text)
    return fragments


class SSELineAssembler:
    """
    Push-side state machine: feed() raw chunks, get back the output lines
    they completed. finish() flushes whatever remains at end of stream.
    The result is independent of where chunk boundaries fall.
    """

    def __init__(self) -> None:
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._sse_buffer = ""
        self._text_buffer = ""

    def feed(self, chunk: bytes) -> List[str]:
        self._sse_buffer += self._decoder.decode(chunk)
        lines: List[str] = []
        while "\n" in self._sse_buffer:
            raw_line, self._sse_buffer = self._sse_buffer.split("\n", 1)
            lines.extend(self._consume_record(raw_line))
        return lines

    def finish(self) -> List[str]:
        self._sse_buffer += self._decoder.decode(b"", final=True)
        lines: List[str] = []
        if self._sse_buffer:
            lines.extend(self._consume_record(self._sse_buffer))
            self._sse_buffer = ""
        tail = self._text_buffer.strip()
        self._text_buffer = ""
        if tail:
            lines.append(tail)
        return lines

    def _consume_record(self, raw_line: str) -> List[str]:
        line = raw_line.strip()
        if not line.startswith(DATA_PREFIX):
            return []
        payload = line[len(DATA_PREFIX):].strip()
        if not payload or payload == END_SENTINEL:
            return []
        try:
            record = json.loads(payload)
        except json.JSONDecodeError:
            logger.debug(f"[STREAM] Skipping malformed SSE record: {payload[:120]!r}")
            return []

        self._text_buffer += "".join(_text_fragments(record))
        lines = []
        while "\n" in self._text_buffer:
            segment, self._text_buffer = self._text_buffer.split("\n", 1)
            segment = segment.strip()
            if segment:
                lines.append(segment)
        return lines


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
# PULL-BASED LINE STREAM
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━

class GeminiLineStream:
    """
    Single-use async iterator of output lines over one streaming request.

    The connection opens on the first pull and is released by aclose(),
    which runs on normal completion, on error, and when the consumer leaves
    early (use as `async with`).
    """

    def __init__(self, client: httpx.AsyncClient, request: httpx.Request):
        self._client = client
        self._request = request
        self._assembler = SSELineAssembler()
        self._pending: Deque[str] = deque()
        self._response: Optional[httpx.Response] = None
        self._chunks = None
        self._bytes_received = 0
        self._finished = False
        self._closed = False

    async def __aenter__(self) -> "GeminiLineStream":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.aclose()

    def __aiter__(self) -> "GeminiLineStream":
        return self

    async def __anext__(self) -> str:
        while not self._pending:
            if self._finished or self._closed:
                raise StopAsyncIteration
            await self._pull()
        return self._pending.popleft()

    async def aclose(self) -> None:
        if self._closed:
            return
        self._closed = True
        if self._response is not None:
            await self._response.aclose()

    # ── internals ────────────────────────────────────────────────────────────

    async def _open(self) -> None:
        try:
            self._response = await self._client.send(self._request, stream=True)
        except httpx.HTTPError as e:
            await self.aclose()
            raise ServiceError(ErrorKind.TRANSPORT, f"Gemini request failed: {e}", retryable=True) from e

        if not self._response.is_success:
            status = self._response.status_code
            try:
                body = (await self._response.aread()).decode("utf-8", errors="replace")
            except httpx.HTTPError as e:
                body = f"<unreadable body: {e}>"
            finally:
                await self.aclose()
            logger.error(f"[STREAM] ✗ Gemini returned {status}: {body[:500]}")
            raise ServiceError(
                ErrorKind.TRANSPORT,
                f"Gemini API failed ({status}): {body}",
                retryable=status == 429 or status >= 500,
            )

        self._chunks = self._response.aiter_bytes()
        logger.info("[STREAM] ✓ Gemini stream opened")

    async def _pull(self) -> None:
        if self._response is None:
            await self._open()
        try:
            chunk = await self._chunks.__anext__()
        except StopAsyncIteration:
            self._finished = True
            self._pending.extend(self._assembler.finish())
            await self.aclose()
            if not self._bytes_received:
                raise ServiceError(ErrorKind.TRANSPORT, "Gemini returned an empty response body", retryable=True)
            return
        except httpx.HTTPError as e:
            await self.aclose()
            raise ServiceError(ErrorKind.TRANSPORT, f"Gemini stream interrupted: {e}", retryable=True) from e

        self._bytes_received += len(chunk)
        self._pending.extend(self._assembler.feed(chunk))


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
# CLIENT
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━

class GeminiStreamClient:
    """Builds streamGenerateContent requests over a shared httpx client."""

    def __init__(self, http_client: httpx.AsyncClient, settings: Settings):
        self._http = http_client
        self._settings = settings

    def _url(self) -> str:
        base = self._settings.GEMINI_BASE_URL.rstrip("/")
        return f"{base}/models/{self._settings.GEMINI_MODEL}:streamGenerateContent"

    def build_body(self, prompt: str, material: Material) -> Dict[str, Any]:
        parts: List[Dict[str, Any]] = [{"text": prompt}]
        if material.is_file:
            parts.append({"inlineData": {"mimeType": material.mime_type, "data": material.file_data}})
        else:
            parts.append({"text": f"STUDY MATERIAL:\n{material.text or ''}"})
        return {
            "contents": [{"role": "user", "parts": parts}],
            "generationConfig": {
                "maxOutputTokens": self._settings.GEMINI_MAX_OUTPUT_TOKENS,
                "temperature": self._settings.GEMINI_TEMPERATURE,
            },
        }

    def open_stream(self, prompt: str, material: Material) -> GeminiLineStream:
        if not self._settings.GOOGLE_API_KEY:
            raise ServiceError(ErrorKind.TRANSPORT, "Google API Key missing")

        logger.info(f"[STREAM] Calling Gemini ({self._settings.GEMINI_MODEL})...")
        request = self._http.build_request(
            "POST",
            self._url(),
            params={"alt": "sse"},
            headers={"x-goog-api-key": self._settings.GOOGLE_API_KEY},
            json=self.build_body(prompt, material),
        )
        return GeminiLineStream(self._http, request)
