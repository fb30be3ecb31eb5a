from __future__ import annotations

import re

# Lines where the task claims it cannot push or asks the user to push.
PUSH_NARRATION_PATTERNS = (
    re.compile(r"^.*not (?:allowed|permitted) to run `?git push`?.*$", re.IGNORECASE | re.MULTILINE),
    re.compile(r"^.*(?:cannot|can't|can not) run `?git push`?.*$", re.IGNORECASE | re.MULTILINE),
    re.compile(r"^.*please push.*$", re.IGNORECASE | re.MULTILINE),
    re.compile(r"^.*push `?main`? when you can.*$", re.IGNORECASE | re.MULTILINE),
    re.compile(r"^.*push (?:it |this |the changes |the branch )?manually.*$", re.IGNORECASE | re.MULTILINE),
)
BLANK_RUN = re.compile(r"\n{3,}")
CODE_FENCE = "```"
ERROR_PREFIX = "❌ Error:\n"


def sanitize_push_narration(text: str | None) -> str:
    out = str(text or "")
    for pattern in PUSH_NARRATION_PATTERNS:
        out = pattern.sub("", out)
    return BLANK_RUN.sub("\n\n", out).strip()


def strip_code_fences(text: str | None) -> str:
    return str(text or "").replace(CODE_FENCE, "")


def _last_break(text: str, separator: str, max_len: int) -> int:
    # Index of the last separator starting at or before max_len.
    return text.rfind(separator, 0, max_len + len(separator))


def chunk_text(text: str | None, max_len: int) -> list[str]:
    if max_len <= 0:
        raise ValueError("max_len must be positive")
    chunks: list[str] = []
    remaining = str(text or "").strip()
    half = max_len // 2

    while len(remaining) > max_len:
        cut = _last_break(remaining, "\n\n", max_len)
        if cut < half:
            cut = _last_break(remaining, "\n", max_len)
        if cut < half:
            cut = _last_break(remaining, " ", max_len)
        if cut <= 0:
            cut = max_len

        chunks.append(remaining[:cut].strip())
        remaining = remaining[cut:].strip()

    if remaining:
        chunks.append(remaining)
    return chunks


def format_error(message: object, limit: int) -> str:
    return ERROR_PREFIX + str(message)[:limit]
