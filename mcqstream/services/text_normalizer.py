import re

DEFAULT_MAX_CHARS = 3000
HEAD_SHARE = 0.6
ELLIPSIS = " ... "

_WHITESPACE = re.compile(r"\s+")


def normalize(text: str, max_chars: int = DEFAULT_MAX_CHARS) -> str:
    """
    Collapse whitespace and bound the material to `max_chars`.

    Oversized input keeps the first 60% and the last 40% of the budget so the
    document's opening and closing context both reach the prompt.
    """
    cleaned = _WHITESPACE.sub(" ", text or "").strip()
    if len(cleaned) <= max_chars:
        return cleaned

    head_len = int(max_chars * HEAD_SHARE)
    tail_len = max_chars - head_len
    head = cleaned[:head_len].rstrip()
    tail = cleaned[-tail_len:].lstrip() if tail_len > 0 else ""
    return f"{head}{ELLIPSIS}{tail}"
