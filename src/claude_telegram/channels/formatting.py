"""Telegram text shaping: markdown conversion and message splitting."""

from __future__ import annotations

import re

from loguru import logger
from telegramify_markdown import markdownify

from claude_telegram.types import TurnResult

CHUNK_LENGTH = 3800
EMPTY_RESPONSE = "(empty response)"

_TABLE = re.compile(r"(\|[^\n]+\|\n\|[-:\s|]+\|\n(?:\|[^\n]+\|\n?)+)")
_TABLE_RULE = re.compile(r"^\|[-:\s|]+\|$")
_MARKDOWN_V2_SPECIAL = re.compile(r"([_*\[\]()~`>#+\-=|{}.!\\])")


def _flatten_table(match: re.Match[str]) -> str:
    table = match.group(0)
    lines = table.strip().split("\n")
    rows = [[cell.strip() for cell in line.split("|")[1:-1]] for line in lines if not _TABLE_RULE.match(line)]
    if not rows:
        return table
    widths = [max(len(row[index]) if index < len(row) else 0 for row in rows) for index in range(len(rows[0]))]
    rendered = ["  ".join(cell.ljust(widths[index]) for index, cell in enumerate(row[: len(widths)])) for row in rows]
    return "```\n" + "\n".join(rendered) + "\n```"


def convert_tables(text: str) -> str:
    """Telegram has no tables; render them as monospace blocks."""

    return _TABLE.sub(_flatten_table, text)


def to_markdown_v2(text: str) -> str:
    try:
        return markdownify(convert_tables(text))
    except Exception:
        logger.opt(exception=True).debug("telegram.markdown_failed")
        return _MARKDOWN_V2_SPECIAL.sub(r"\\\1", text)


def split_into_chunks(content: str, max_length: int = CHUNK_LENGTH) -> list[str]:
    """Split on paragraph, then line, then word boundaries."""

    remaining = content.replace("\r\n", "\n").strip()
    if not remaining:
        return [EMPTY_RESPONSE]

    chunks: list[str] = []
    half = max_length // 2
    while len(remaining) > max_length:
        split_at = remaining.rfind("\n\n", 0, max_length)
        if split_at < half:
            split_at = remaining.rfind("\n", 0, max_length)
        if split_at < half:
            split_at = remaining.rfind(" ", 0, max_length)
        if split_at <= 0:
            split_at = max_length
        chunk = remaining[:split_at].rstrip()
        if chunk:
            chunks.append(chunk)
        remaining = remaining[split_at:].lstrip()
    if remaining:
        chunks.append(remaining)
    return chunks


def build_footer(result: TurnResult, model: str | None = None) -> str | None:
    parts: list[str] = []
    seconds = round(result.duration_ms / 1000)
    if seconds > 0:
        parts.append(f"{seconds}s")
    if result.cost_usd and result.cost_usd > 0:
        parts.append(f"${result.cost_usd:.4f}")
    if model:
        parts.append(model)
    return " · ".join(parts) if parts else None


def compose_parts(text: str, footer: str | None = None) -> list[str]:
    """Plain-text parts ready to send: numbered when split, footer on the last."""

    chunks = split_into_chunks(text)
    total = len(chunks)
    parts: list[str] = []
    for index, chunk in enumerate(chunks, start=1):
        if total > 1:
            chunk += f"\n\n— {index}/{total} —"
        if footer and index == total:
            chunk += f"\n\n{footer}"
        parts.append(chunk)
    return parts
