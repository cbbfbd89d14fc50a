from __future__ import annotations

from claude_telegram.channels.formatting import (
    CHUNK_LENGTH,
    EMPTY_RESPONSE,
    build_footer,
    compose_parts,
    convert_tables,
    split_into_chunks,
    to_markdown_v2,
)
from claude_telegram.types import TurnResult


def test_short_text_is_one_chunk() -> None:
    assert split_into_chunks("  hello  ") == ["hello"]
    assert split_into_chunks("   ") == [EMPTY_RESPONSE]


def test_split_prefers_paragraph_boundaries() -> None:
    first = "a" * 3000
    second = "b" * 3000
    chunks = split_into_chunks(f"{first}\n\n{second}")

    assert chunks == [first, second]


def test_split_falls_back_to_words_and_hard_cuts() -> None:
    words = " ".join(["word"] * 2000)
    chunks = split_into_chunks(words)
    assert all(len(chunk) <= CHUNK_LENGTH for chunk in chunks)
    assert " ".join(chunks) == words

    solid = "x" * (CHUNK_LENGTH * 2 + 10)
    chunks = split_into_chunks(solid)
    assert [len(chunk) for chunk in chunks] == [CHUNK_LENGTH, CHUNK_LENGTH, 10]


def test_convert_tables_to_monospace() -> None:
    text = "Results:\n| name | score |\n|------|-------|\n| ann | 10 |\n| bo | 7 |\n"

    converted = convert_tables(text)

    assert converted.startswith("Results:\n```\n")
    assert "name  score" in converted
    assert "ann   10" in converted
    assert "|" not in converted


def test_to_markdown_v2_escapes_specials() -> None:
    rendered = to_markdown_v2("Costs 1.5 (approx)!")

    assert "\\." in rendered
    assert "\\(" in rendered
    assert "\\!" in rendered


def test_build_footer() -> None:
    assert build_footer(TurnResult(success=True, output="x", duration_ms=12400, cost_usd=0.01234), "opus") == (
        "12s · $0.0123 · opus"
    )
    assert build_footer(TurnResult(success=True, output="x")) is None
    assert build_footer(TurnResult(success=True, output="x", cost_usd=0.0), "sonnet") == "sonnet"


def test_compose_parts_numbers_chunks_and_appends_footer() -> None:
    text = ("a" * 3000) + "\n\n" + ("b" * 3000)

    parts = compose_parts(text, "5s")

    assert len(parts) == 2
    assert parts[0].endswith("\n\n— 1/2 —")
    assert parts[1].endswith("\n\n— 2/2 —\n\n5s")
    assert compose_parts("hi", "5s") == ["hi\n\n5s"]
    assert compose_parts("hi") == ["hi"]
