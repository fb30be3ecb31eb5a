import pytest

from codexbridge.output import chunk_text, format_error, sanitize_push_narration, strip_code_fences


def test_chunk_text_splits_long_text_into_bounded_chunks() -> None:
    text = "alpha beta gamma delta epsilon zeta eta theta iota kappa lambda"

    chunks = chunk_text(text, 20)

    assert len(chunks) > 1
    assert all(len(chunk) <= 20 for chunk in chunks)
    assert " ".join(chunks) == text


def test_chunk_text_prefers_paragraph_breaks() -> None:
    text = "first paragraph here\n\nsecond paragraph is longer than the first"

    chunks = chunk_text(text, 30)

    assert chunks[0] == "first paragraph here"
    assert all(len(chunk) <= 30 for chunk in chunks)


def test_chunk_text_ignores_breaks_before_half_window() -> None:
    text = "ab\n\n" + "x" * 10 + " " + "y" * 10

    chunks = chunk_text(text, 20)

    # The paragraph break at index 2 is below half of the window, so the space wins.
    assert chunks[0] == "ab\n\n" + "x" * 10


def test_chunk_text_hard_cuts_unbroken_text() -> None:
    chunks = chunk_text("z" * 45, 20)

    assert chunks == ["z" * 20, "z" * 20, "z" * 5]


def test_chunk_text_short_and_empty_inputs() -> None:
    assert chunk_text("  hello  ", 20) == ["hello"]
    assert chunk_text("", 20) == []
    assert chunk_text(None, 20) == []


def test_chunk_text_rejects_non_positive_window() -> None:
    with pytest.raises(ValueError):
        chunk_text("text", 0)


def test_sanitize_push_narration_removes_manual_push_instructions() -> None:
    text = "\nChanges done.\nI’m not allowed to run git push here.\nplease push main when you can\n"

    assert sanitize_push_narration(text) == "Changes done."


@pytest.mark.parametrize(
    "line",
    [
        "I cannot run `git push` in this sandbox.",
        "Note: I can't run git push from here.",
        "I'm not permitted to run git push.",
        "Please push the branch yourself.",
        "You will need to push it manually.",
        "Push `main` when you can.",
    ],
)
def test_sanitize_push_narration_drops_each_known_phrase(line: str) -> None:
    text = f"Committed abc123.\n{line}\nFiles changed: app.py"

    assert sanitize_push_narration(text) == "Committed abc123.\n\nFiles changed: app.py"


def test_sanitize_push_narration_keeps_unrelated_lines_and_collapses_blanks() -> None:
    text = "Summary\n\n\n\nThe bot handles git push after this.\n\n\nDone"

    assert sanitize_push_narration(text) == (
        "Summary\n\nThe bot handles git push after this.\n\nDone"
    )


def test_strip_code_fences_removes_every_fence() -> None:
    assert strip_code_fences("```python\nprint(1)\n```") == "python\nprint(1)\n"


def test_format_error_truncates_message_body() -> None:
    rendered = format_error(RuntimeError("x" * 50), 10)

    assert rendered == "❌ Error:\n" + "x" * 10


def test_chunk_text_splits_on_paragraph_boundary_exactly() -> None:
    text = "A" * 50 + "\n\n" + "B" * 50

    assert chunk_text(text, 60) == ["A" * 50, "B" * 50]
