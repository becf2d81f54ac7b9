"""
mcqstream — Unified Pydantic Schemas
=====================================
Wire contract for the NDJSON generation stream.
Pre-stream rejections are wrapped in ErrorResponse; the stream itself is a
sequence of frames: one MetaFrame, zero or more MCQFrame, then exactly one
DoneFrame or ErrorFrame.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import List, Literal, Optional, Union
from pydantic import BaseModel, ConfigDict, Field


# ── MCQ Record ───────────────────────────────────────────────────────────────

class MCQ(BaseModel):
    """A multiple-choice question with exactly 4 options and a 0-based answer index."""
    model_config = ConfigDict(frozen=True)

    question: str = Field(..., min_length=1)
    options: List[str] = Field(..., min_length=4, max_length=4)
    answer_index: int = Field(..., ge=0, le=3)


# ── Material ─────────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class Material:
    """What the model reads: normalized text, or a base64 file with its MIME type."""
    text: Optional[str] = None
    file_data: Optional[str] = None
    mime_type: Optional[str] = None

    @property
    def is_file(self) -> bool:
        return self.file_data is not None


# ── Inbound Request ──────────────────────────────────────────────────────────

class GenerateRequest(BaseModel):
    """Request body for streamed MCQ generation."""
    file_data: Optional[str] = Field(default=None, description="Base64-encoded PDF or image")
    mime_type: Optional[str] = Field(default=None, description="Required when file_data is sent")
    text_content: Optional[str] = Field(default=None, description="Raw study material")
    content_type: Optional[str] = Field(default=None, description="Client hint, e.g. 'text'")
    target_count: Optional[int] = Field(default=None, description="Clamped to [1, MAX_TARGET_COUNT]")


# ── Outbound Stream Frames ───────────────────────────────────────────────────

class MetaFrame(BaseModel):
    type: Literal["meta"] = "meta"
    total: int
    cached: bool


class MCQFrame(BaseModel):
    type: Literal["mcq"] = "mcq"
    data: MCQ


class DoneFrame(BaseModel):
    type: Literal["done"] = "done"
    count: int
    cached: bool = False
    requested: Optional[int] = None


class ErrorFrame(BaseModel):
    type: Literal["error"] = "error"
    message: str


Frame = Union[MetaFrame, MCQFrame, DoneFrame, ErrorFrame]


# ── Error Envelope ───────────────────────────────────────────────────────────

class ErrorResponse(BaseModel):
    """Standard error envelope for rejections raised before the stream opens."""
    status: str = "error"
    message: str
    detail: Optional[str] = None
    retry_after: Optional[int] = None
