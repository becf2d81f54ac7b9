import logging
from typing import AsyncIterator, Optional

from fastapi import APIRouter, Depends, Header, Request
from fastapi.responses import JSONResponse, StreamingResponse

from mcqstream.core.errors import QuotaExceededError, ServiceError, friendly_message, http_status
from mcqstream.schemas import ErrorResponse, GenerateRequest
from mcqstream.services.identity import bearer_token
from mcqstream.services.orchestrator import GenerationPlan, MCQGenerationService

logger = logging.getLogger(__name__)

router = APIRouter()

NDJSON_MEDIA_TYPE = "application/x-ndjson"


def get_generation_service(request: Request) -> MCQGenerationService:
    return request.app.state.generation_service


def _error_response(error: ServiceError, development: bool) -> JSONResponse:
    body = ErrorResponse(
        status="error",
        message=friendly_message(error, development),
        detail=error.detail if development else None,
    )
    headers = {}
    if isinstance(error, QuotaExceededError):
        retry_after = error.seconds_until_reset()
        body.retry_after = retry_after
        headers["Retry-After"] = str(retry_after)
    return JSONResponse(status_code=http_status(error.kind), content=body.model_dump(), headers=headers)


async def _ndjson(service: MCQGenerationService, plan: GenerationPlan) -> AsyncIterator[str]:
    """One JSON frame per line."""
    async for frame in service.stream(plan):
        yield frame.model_dump_json() + "\n"


@router.post("/mcqs/stream", tags=["Generation"], summary="Stream MCQs generated from study material")
async def stream_mcqs(
    body: GenerateRequest,
    authorization: Optional[str] = Header(default=None),
    service: MCQGenerationService = Depends(get_generation_service),
):
    """
    Gates run before the response starts, so rejections come back as a
    regular error status. Once the stream is open, failures arrive as an
    `error` frame instead.
    """
    try:
        plan = await service.prepare(body, bearer_token(authorization))
    except ServiceError as e:
        logger.warning(f"[MCQS] Rejected ({e.kind.value}): {e.detail}")
        return _error_response(e, service.settings.is_development)

    return StreamingResponse(
        _ndjson(service, plan),
        media_type=NDJSON_MEDIA_TYPE,
        headers={
            "Cache-Control": "no-cache",
            "Connection": "keep-alive",
            "X-Accel-Buffering": "no",
        },
    )
