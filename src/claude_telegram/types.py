"""Turn-level data types shared by the dispatcher, runner and hooks."""

from __future__ import annotations

from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any, TypeAlias


@dataclass(frozen=True)
class TurnResult:
    """Outcome of one Claude CLI run."""

    success: bool
    output: str
    error: str | None = None
    session_id: str | None = None
    cost_usd: float | None = None
    duration_ms: int = 0


@dataclass(frozen=True)
class Continue:
    """Let the turn proceed, optionally with a rewritten message."""

    message: str | None = None


@dataclass(frozen=True)
class Deny:
    """Stop the turn before Claude is started."""

    reply: str | None = None


BeforeOutcome: TypeAlias = Continue | Deny


@dataclass
class TurnContext:
    """Per-turn context handed to every before/after hook of the same turn."""

    user_id: int
    chat_id: int
    raw_message: str
    metadata: dict[str, Any] = field(default_factory=dict)
    # Scratch space for plugins to carry state from before_turn to after_turn.
    extras: dict[str, Any] = field(default_factory=dict)


CommandCallback: TypeAlias = Callable[..., Awaitable[None]]


@dataclass(frozen=True)
class PluginCommand:
    """A Telegram command contributed by a plugin.

    `callback` is a python-telegram-bot handler callback, ``(update, context)``.
    """

    name: str
    description: str
    callback: CommandCallback

    @property
    def command(self) -> str:
        return self.name.lstrip("/")
