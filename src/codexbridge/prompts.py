from __future__ import annotations

from pathlib import Path

PUSH_POLICY = """
You may:
- Modify files inside this repo.
- Stage changes.
- Create exactly one commit with a clear commit message.

You MUST NOT:
- Run git push
- Clone the repo elsewhere
- Use .git-codex or any alternate git-dir/work-tree

After committing, summarize:
- Files changed
- Commit message
- Git commands used.
- Note that the Telegram bot handles the final push step.
"""

DEFAULT_POLICY = """
You may:
- Modify files inside this repo.
- Run tests or read files.

You MUST NOT:
- Run git commit
- Run git push

After changes, summarize:
- Files modified
- Suggested commit message
- Next steps.
"""

RESPONSE_STYLE = """
Response style requirements:
- Write for Telegram chat (not terminal).
- Use short sections and bullets where helpful.
- Do NOT wrap the full answer in triple-backtick code fences.
- Be concise and natural.
"""


def build_instruction(
    repo_dir: Path,
    *,
    push: bool,
    history_context: str,
    request: str,
    image_path: Path | None = None,
) -> str:
    policy = PUSH_POLICY if push else DEFAULT_POLICY
    screenshot = (
        f"User attached a screenshot at: {image_path}" if image_path else "No screenshot attached."
    )
    sections = [
        f"You are working ONLY inside:\n{repo_dir}",
        policy.strip(),
        RESPONSE_STYLE.strip(),
        f"Screenshot input:\n{screenshot}",
        f"Conversation context from this Telegram chat:\n{history_context}",
        "User request:\n"
        + (request or "(no caption text provided; use the screenshot context)"),
    ]
    return "\n\n".join(sections).strip()


def history_entry(request: str, *, push: bool, image_path: Path | None = None) -> str:
    lines = [f"/confirmpush {request}" if push else (request or "(image-only message)")]
    if image_path:
        lines.append(f"[screenshot: {image_path}]")
    return "\n".join(line for line in lines if line)
