"""
mcqstream — Record Extractor
=============================
Turns raw model output into canonical MCQ records.

  - Compact path:  one JSON object per streamed line, decoded through a
                   union-of-shapes decoder ({q,o,a} or {question,options,answer_index})
  - Labeled path:  Q<k>: / A:..D: / Answer: blocks over the full completion

Bad candidates are dropped one at a time. Extraction as a whole fails only
when a complete pass yields nothing usable.
"""

import json
import logging
import re
from typing import Any, AsyncIterable, AsyncIterator, List, Optional, Sequence, Tuple

from mcqstream.core.errors import ErrorKind, ServiceError
from mcqstream.schemas import MCQ
from mcqstream.services.prompts import OPTION_LABELS

logger = logging.getLogger(__name__)

# Tried in order; the first shape whose question and options keys are present wins.
RECORD_SHAPES: Sequence[Tuple[str, str, str]] = (
    ("q", "o", "a"),
    ("question", "options", "answer_index"),
)

_BLOCK_PATTERN = re.compile(r"Q\d+:.*?(?=Q\d+:|\Z)", re.DOTALL)
_QUESTION_LABEL = re.compile(r"^Q\d+:\s*", re.IGNORECASE)
_ANSWER_LINE = re.compile(r"^Answer[:)]", re.IGNORECASE)
_ANSWER_TOKEN = re.compile(r"Answer[:)]\s*\(?([A-D0-3])", re.IGNORECASE)
_JSON_ARRAY = re.compile(r"\[\s*\{.*\}\s*\]", re.DOTALL)


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
# UNION-OF-SHAPES DECODER
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━

def _coerce_answer_index(value: Any) -> int:
    """Answer index in [0, 3]; anything missing or unusable becomes 0."""
    if isinstance(value, bool):
        return 0
    if isinstance(value, int):
        return value if 0 <= value <= 3 else 0
    if isinstance(value, float) and value.is_integer():
        return _coerce_answer_index(int(value))
    if isinstance(value, str):
        token = value.strip().upper()
        if token in OPTION_LABELS:
            return OPTION_LABELS.index(token)
        if token.isdigit():
            return _coerce_answer_index(int(token))
    return 0


def _coerce_options(value: Any) -> Optional[List[str]]:
    if not isinstance(value, list) or len(value) != len(OPTION_LABELS):
        return None
    options = []
    for item in value:
        if isinstance(item, bool) or not isinstance(item, (str, int, float)):
            return None
        text = str(item).strip()
        if not text:
            return None
        options.append(text)
    return options


def decode_record(obj: Any) -> Optional[MCQ]:
    """Normalize one decoded JSON value into an MCQ, or None if it is not a usable record."""
    if not isinstance(obj, dict):
        return None

    for question_key, options_key, answer_key in RECORD_SHAPES:
        if question_key not in obj or options_key not in obj:
            continue
        question = obj[question_key]
        if not isinstance(question, str) or not question.strip():
            return None
        options = _coerce_options(obj[options_key])
        if options is None:
            return None
        return MCQ(
            question=question.strip(),
            options=options,
            answer_index=_coerce_answer_index(obj.get(answer_key)),
        )
    return None


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
# COMPACT (NDJSON) PATH
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━

def parse_compact_line(line: str) -> Optional[MCQ]:
    """
    Decode one streamed line. Tolerates the usual single-line noise: a stray
    array bracket or trailing comma around the object. Returns None otherwise.
    """
    cleaned = (line or "").strip()
    if not cleaned or cleaned.startswith("```"):
        return None

    cleaned = cleaned.lstrip("[").rstrip("],").strip()
    if not (cleaned.startswith("{") and cleaned.endswith("}")):
        return None

    try:
        obj = json.loads(cleaned)
    except json.JSONDecodeError:
        return None
    return decode_record(obj)


async def extract_compact_records(lines: AsyncIterable[str]) -> AsyncIterator[MCQ]:
    """
    Yield every valid record from a line stream, in order.
    Raises EMPTY_GENERATION if the stream ends without a single valid record.
    """
    produced = 0
    skipped = 0
    async for line in lines:
        mcq = parse_compact_line(line)
        if mcq is None:
            if line.strip():
                skipped += 1
                logger.debug(f"[EXTRACT] Skipping malformed line: {line[:120]!r}")
            continue
        produced += 1
        yield mcq

    if skipped:
        logger.info(f"[EXTRACT] Dropped {skipped} malformed line(s)")
    if not produced:
        raise ServiceError(ErrorKind.EMPTY_GENERATION, "Stream ended without a valid MCQ line")


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
# LABELED BLOCK PATH
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━

def _parse_block(block: str) -> Optional[MCQ]:
    lines = [line.strip() for line in block.split("\n")]
    lines = [line for line in lines if line]
    if not lines:
        return None

    question = _QUESTION_LABEL.sub("", lines[0]).strip()
    if not question:
        return None

    options = []
    for label in OPTION_LABELS:
        option_line = next(
            (line for line in lines if line.startswith(f"{label}:") or line.startswith(f"{label})")),
            None,
        )
        if option_line is None:
            return None
        text = option_line[len(label) + 1:].strip()
        if not text:
            return None
        options.append(text)

    answer_line = next((line for line in lines if _ANSWER_LINE.match(line)), None)
    if answer_line is None:
        return None
    match = _ANSWER_TOKEN.search(answer_line)
    if not match:
        return None

    token = match.group(1).upper()
    answer_index = OPTION_LABELS.index(token) if token in OPTION_LABELS else int(token)
    if not 0 <= answer_index <= 3:
        return None

    return MCQ(question=question, options=options, answer_index=answer_index)


def _parse_json_array_fallback(raw: str) -> List[MCQ]:
    try:
        parsed = json.loads(raw)
    except json.JSONDecodeError:
        match = _JSON_ARRAY.search(raw)
        if not match:
            return []
        try:
            parsed = json.loads(match.group(0))
        except json.JSONDecodeError:
            return []

    if not isinstance(parsed, list):
        return []
    records = (decode_record(item) for item in parsed)
    return [mcq for mcq in records if mcq is not None]


def parse_labeled_blocks(raw: str, expected: int = 5) -> List[MCQ]:
    """
    Parse a full labeled-block completion.
    Raises EMPTY_GENERATION when no block (and no JSON-array fallback) is usable.
    """
    normalized = (raw or "").replace("\r\n", "\n").replace("\r", "\n").strip()

    mcqs = []
    for block in _BLOCK_PATTERN.findall(normalized):
        mcq = _parse_block(block)
        if mcq is not None:
            mcqs.append(mcq)

    if not mcqs and "[" in normalized and "{" in normalized:
        mcqs = _parse_json_array_fallback(normalized)
        if mcqs:
            logger.info(f"[EXTRACT] Recovered {len(mcqs)} MCQ(s) from a JSON array fallback")

    if not mcqs:
        raise ServiceError(ErrorKind.EMPTY_GENERATION, "No labeled MCQ block could be parsed")

    if expected and len(mcqs) > expected:
        return mcqs[:expected]
    return mcqs
