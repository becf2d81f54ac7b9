"""
mcqstream — Prompt Builders
============================
Two output grammars:
  1. Compact NDJSON: one {"q","o","a"} object per line (streamed cloud path)
  2. Labeled blocks: Q<k>: / A:..D: / Answer: <letter> (Llama path)
"""

from typing import List

OPTION_LABELS = ("A", "B", "C", "D")

END_MARKER = "--- END ---"

# ── Shared Rules ──────────────────────────────────────────────────────────────

_NO_META_REFERENCES = (
    'Never use words like "text", "document", "passage", "material", '
    '"according to", "mentioned" or "stated" in a question.'
)


# ── Compact (NDJSON) ─────────────────────────────────────────────────────────

def build_compact_prompt(count: int) -> str:
    """Instruction for exactly `count` standalone JSON objects, one per line."""
    return "\n".join([
        "You are an expert MCQ generator.",
        f"Write exactly {count} multiple-choice questions that test understanding "
        "of the concepts, facts and ideas in the attached study material.",
        "OUTPUT FORMAT (strict):",
        f"- Emit exactly {count} lines. Each line is ONE standalone JSON object:",
        '  {"q":"question","o":["option 1","option 2","option 3","option 4"],"a":0}',
        '- "o" has EXACTLY 4 strings. "a" is the 0-based index (0-3) of the correct option.',
        "- Do NOT wrap the objects in an array. Do NOT number the lines.",
        "- No markdown, no code fences, no commentary before or after.",
        "RULES:",
        "- Questions must be answerable from knowledge and comprehension alone.",
        f"- {_NO_META_REFERENCES}",
        "- Do not ask about images, figures, page layout or where information is found.",
    ])


# ── Labeled Blocks ───────────────────────────────────────────────────────────

def build_verbose_prompt(material: str, count: int = 5) -> str:
    """Instruction for `count` labeled Q/A/B/C/D/Answer blocks followed by the material."""
    return "\n".join([
        "You are a tutor who writes knowledge-check MCQs.",
        f"Write {count} multiple-choice questions from the STUDY MATERIAL below.",
        "Rules:",
        "1. Test understanding of the concepts, not wording.",
        "2. Each question must have exactly 4 answer options.",
        "3. Options should be short (less than 60 chars).",
        '4. Mark the correct option with "Answer: <letter>".',
        f"5. {_NO_META_REFERENCES}",
        "6. Use this exact format:",
        "Q1: <question>",
        *[f"{label}: option" for label in OPTION_LABELS],
        "Answer: A",
        f"Repeat for Q2..Q{count}, then write {END_MARKER}",
        "STUDY MATERIAL:",
        (material or "").strip(),
    ])


def build_stop_markers(count: int) -> List[str]:
    """Stop sequences that cut generation right after block number `count`."""
    next_index = count + 1
    return [f"Q{next_index}:", f"Question {next_index}", END_MARKER]
