"""
mcqstream — Generation Orchestrator
====================================
One request, two phases:

  prepare()  Validating → GlobalGate → AuthGate → UserGate → CacheCheck
             Raises ServiceError; nothing has been streamed yet, so the
             HTTP layer answers with a plain error status.

  stream()   meta → mcq* → (done | error)
             Charges quota once on a cache miss, walks the sources with
             failover, stops at the requested count, caches on success.
"""

import asyncio
import logging
from contextlib import aclosing
from dataclasses import dataclass
from typing import AsyncIterator, Dict, List, Optional, Sequence, Tuple

from mcqstream.core.config import Settings
from mcqstream.core.errors import ErrorKind, ServiceError, friendly_message
from mcqstream.schemas import (
    MCQ,
    DoneFrame,
    ErrorFrame,
    Frame,
    GenerateRequest,
    Material,
    MCQFrame,
    MetaFrame,
)
from mcqstream.services.cache import ResponseCache, fingerprint
from mcqstream.services.file_service import decode_file_data
from mcqstream.services.identity import IdentityProvider, Principal
from mcqstream.services.quota import QuotaGovernor
from mcqstream.services.sources import MCQSource
from mcqstream.services.text_normalizer import normalize
from mcqstream.services.usage_store import Tier

logger = logging.getLogger(__name__)


def resolve_target_count(requested: Optional[int], default: int = 20, maximum: int = 40) -> int:
    """Absent → default; otherwise clamped to [1, maximum]."""
    if requested is None:
        return default
    return max(1, min(requested, maximum))


@dataclass(frozen=True)
class GenerationPlan:
    """Everything stream() needs, fixed once all gates have passed."""
    principal: Principal
    tier: Tier
    material: Material
    count: int
    fingerprint: str
    cached: Optional[Tuple[MCQ, ...]] = None


class MCQGenerationService:

    def __init__(
        self,
        settings: Settings,
        quota: QuotaGovernor,
        cache: ResponseCache,
        identity: IdentityProvider,
        sources: Sequence[MCQSource],
    ):
        self.settings = settings
        self.quota = quota
        self.cache = cache
        self.identity = identity
        self.sources = list(sources)
        self._in_flight: Dict[str, asyncio.Event] = {}

    # ── Validation ───────────────────────────────────────────────────────────

    def _resolve_material(self, request: GenerateRequest) -> Material:
        if request.file_data:
            if not request.mime_type:
                raise ServiceError(ErrorKind.VALIDATION, "mime_type is required when file_data is sent.")
            content = decode_file_data(request.file_data)
            if not content:
                raise ServiceError(ErrorKind.VALIDATION, "Uploaded file is empty.")
            max_bytes = self.settings.MAX_FILE_SIZE_MB * 1024 * 1024
            if len(content) > max_bytes:
                raise ServiceError(
                    ErrorKind.VALIDATION,
                    f"File too large ({len(content) / (1024 * 1024):.1f} MB). "
                    f"Maximum is {self.settings.MAX_FILE_SIZE_MB} MB.",
                )
            return Material(file_data=request.file_data, mime_type=request.mime_type.lower())

        text = normalize(request.text_content or "", self.settings.MAX_INPUT_CHARS)
        if not text:
            raise ServiceError(ErrorKind.VALIDATION, "Provide study material as text or a file.")
        return Material(text=text)

    # ── Phase 1: gates ───────────────────────────────────────────────────────

    async def prepare(self, request: GenerateRequest, token: Optional[str]) -> GenerationPlan:
        material = self._resolve_material(request)
        count = resolve_target_count(
            request.target_count,
            self.settings.DEFAULT_TARGET_COUNT,
            self.settings.MAX_TARGET_COUNT,
        )

        self.quota.check_global()
        principal = await self.identity.authenticate(token)
        tier = await self.quota.check_user(principal.user_id)

        key = fingerprint(material, count)
        cached = self.cache.get(key)
        if cached is not None:
            logger.info(f"[GENERATE] Cache hit {key[:12]} for {principal.user_id}")

        return GenerationPlan(
            principal=principal,
            tier=tier,
            material=material,
            count=count,
            fingerprint=key,
            cached=cached,
        )

    # ── Phase 2: stream ──────────────────────────────────────────────────────

    async def _await_in_flight(self, key: str) -> Optional[Tuple[MCQ, ...]]:
        """Wait out an identical generation already running, then re-check the cache."""
        while True:
            event = self._in_flight.get(key)
            if event is None:
                return self.cache.get(key)
            logger.info(f"[GENERATE] Waiting on in-flight generation {key[:12]}")
            await event.wait()
            cached = self.cache.get(key)
            if cached is not None:
                return cached

    async def stream(self, plan: GenerationPlan) -> AsyncIterator[Frame]:
        cached = plan.cached if plan.cached is not None else await self._await_in_flight(plan.fingerprint)

        if cached is not None:
            mcqs = cached[:plan.count]
            yield MetaFrame(total=len(mcqs), cached=True)
            for mcq in mcqs:
                yield MCQFrame(data=mcq)
            yield DoneFrame(count=len(mcqs), cached=True, requested=plan.count)
            return

        done = asyncio.Event()
        self._in_flight[plan.fingerprint] = done
        try:
            yield MetaFrame(total=plan.count, cached=False)
            async for frame in self._generate_frames(plan):
                yield frame
        finally:
            self._in_flight.pop(plan.fingerprint, None)
            done.set()

    async def _generate_frames(self, plan: GenerationPlan) -> AsyncIterator[Frame]:
        development = self.settings.is_development
        produced: List[MCQ] = []
        try:
            await self.quota.charge(plan.principal.user_id, plan.tier)
            async with aclosing(self._generate(plan)) as records:
                async for mcq in records:
                    produced.append(mcq)
                    yield MCQFrame(data=mcq)
            if not produced:
                raise ServiceError(ErrorKind.EMPTY_GENERATION, "Sources finished without a record")
        except ServiceError as e:
            logger.error(f"[GENERATE] ✗ {e.kind.value} after {len(produced)} MCQ(s): {e.detail}")
            yield ErrorFrame(message=friendly_message(e, development))
            return
        except Exception as e:
            logger.error(f"[GENERATE] ✗ Unexpected failure: {e}", exc_info=True)
            yield ErrorFrame(message=friendly_message(e, development))
            return

        self.cache.put(plan.fingerprint, produced)
        logger.info(
            f"[GENERATE] ✓ {len(produced)}/{plan.count} MCQs for {plan.principal.user_id} "
            f"({plan.tier.value})"
        )
        yield DoneFrame(count=len(produced), cached=False, requested=plan.count)

    async def _generate(self, plan: GenerationPlan) -> AsyncIterator[MCQ]:
        """
        Walk the sources in order. A transport failure before the first record
        is retried with linear backoff while it is transient and the source has
        attempts left, then fails over to the next source.
        """
        last_error: Optional[ServiceError] = None
        for source in self.sources:
            for attempt in range(1, source.max_attempts + 1):
                produced = 0
                try:
                    async with aclosing(source.generate(plan.material, plan.count)) as records:
                        async for mcq in records:
                            produced += 1
                            yield mcq
                            if produced >= plan.count:
                                logger.info(f"[GENERATE] Reached {plan.count} MCQs, closing {source.name} stream")
                                return
                    return
                except ServiceError as e:
                    if e.kind is not ErrorKind.TRANSPORT or produced:
                        raise
                    last_error = e
                    if not e.retryable or attempt == source.max_attempts:
                        break
                    delay = self.settings.RETRY_BACKOFF_SECONDS * attempt
                    logger.warning(
                        f"[GENERATE] {source.name} attempt {attempt}/{source.max_attempts} failed: "
                        f"{str(e)[:200]}. Retrying in {delay:.1f}s..."
                    )
                    await asyncio.sleep(delay)
            logger.warning(f"[GENERATE] {source.name} failed: {str(last_error)[:200]}. Trying next...")

        raise last_error or ServiceError(ErrorKind.TRANSPORT, "No MCQ source is configured")
