"""
mcqstream — MCQ Sources
========================
A source turns one Material into an async stream of MCQ records.

  - GeminiStreamSource:  compact NDJSON prompt over the streaming transport,
                         records surface as soon as their line completes
  - GroqBlockSource:     labeled-block prompt on Llama (Groq), bounded by stop
                         markers, retried until enough distinct questions exist

The orchestrator walks its source list in order and fails over on
transport errors.
"""

import logging
from contextlib import aclosing
from typing import AsyncIterator, List, Optional, Set

import groq
from groq import AsyncGroq

from mcqstream.core.config import Settings
from mcqstream.core.errors import ErrorKind, ServiceError
from mcqstream.schemas import MCQ, Material
from mcqstream.services.extractor import extract_compact_records, parse_labeled_blocks
from mcqstream.services.file_service import extract_text_from_material
from mcqstream.services.gemini_stream import GeminiStreamClient
from mcqstream.services.prompts import build_compact_prompt, build_stop_markers, build_verbose_prompt
from mcqstream.services.text_normalizer import normalize

logger = logging.getLogger(__name__)


class MCQSource:
    """One model backend. `generate` is an async generator of MCQ records."""

    name = "source"
    max_attempts = 1

    def generate(self, material: Material, count: int) -> AsyncIterator[MCQ]:
        raise NotImplementedError


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
# GEMINI (STREAMED)
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━

class GeminiStreamSource(MCQSource):
    name = "Gemini"

    def __init__(self, client: GeminiStreamClient, max_attempts: int = 1):
        self._client = client
        self.max_attempts = max(1, max_attempts)

    async def generate(self, material: Material, count: int) -> AsyncIterator[MCQ]:
        prompt = build_compact_prompt(count)
        async with self._client.open_stream(prompt, material) as lines:
            async with aclosing(extract_compact_records(lines)) as records:
                async for mcq in records:
                    yield mcq


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
# GROQ (LABELED BLOCKS)
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━

class GroqBlockSource(MCQSource):
    """
    Llama cannot read inline files, so files are reduced to text first.
    Each attempt asks only for the questions still missing; duplicates
    (case-insensitive question text) are dropped across attempts.
    """

    name = "Groq"

    def __init__(self, client: AsyncGroq, settings: Settings):
        self._client = client
        self._settings = settings

    async def _complete(self, prompt: str, stop: List[str]) -> str:
        logger.info(f"[GROQ] Calling Groq ({self._settings.GROQ_MODEL})...")
        try:
            completion = await self._client.chat.completions.create(
                model=self._settings.GROQ_MODEL,
                messages=[{"role": "user", "content": prompt}],
                temperature=self._settings.GROQ_TEMPERATURE,
                top_p=self._settings.GROQ_TOP_P,
                max_tokens=self._settings.GROQ_MAX_TOKENS,
                stop=stop,
            )
        except groq.APIError as e:
            raise ServiceError(ErrorKind.TRANSPORT, f"Groq API failed: {e}") from e
        logger.info("[GROQ] ✓ Groq call succeeded")
        return completion.choices[0].message.content or ""

    async def generate(self, material: Material, count: int) -> AsyncIterator[MCQ]:
        text = normalize(await extract_text_from_material(material), self._settings.MAX_INPUT_CHARS)
        if not text:
            raise ServiceError(ErrorKind.EMPTY_GENERATION, "No text to generate from")

        seen: Set[str] = set()
        last_error: Optional[ServiceError] = None

        for attempt in range(1, self._settings.GROQ_MAX_ATTEMPTS + 1):
            remaining = count - len(seen)
            if remaining <= 0:
                return
            try:
                raw = await self._complete(
                    build_verbose_prompt(text, remaining),
                    build_stop_markers(remaining),
                )
                batch = parse_labeled_blocks(raw, expected=remaining)
            except ServiceError as e:
                last_error = e
                logger.warning(
                    f"[GROQ] Attempt {attempt}/{self._settings.GROQ_MAX_ATTEMPTS} failed: {str(e)[:200]}"
                )
                continue

            for mcq in batch:
                key = mcq.question.strip().lower()
                if key in seen:
                    continue
                seen.add(key)
                yield mcq

        if not seen:
            raise last_error or ServiceError(ErrorKind.EMPTY_GENERATION, "Groq produced no MCQs")
        if len(seen) < count:
            logger.info(f"[GROQ] Stopped at {len(seen)}/{count} distinct MCQs")
