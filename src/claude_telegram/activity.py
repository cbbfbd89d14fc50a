"""Live status text derived from Claude's streamed tool calls."""

from __future__ import annotations

import asyncio
import time
from collections.abc import Awaitable, Callable
from enum import StrEnum

from loguru import logger

from claude_telegram.events import StreamEvent

DEFAULT_INTERVAL_SECONDS = 3.0


class Activity(StrEnum):
    THINKING = "💭 Thinking"
    READING = "📖 Reading files"
    EDITING = "✏️ Editing code"
    WRITING = "📝 Writing files"
    SEARCHING = "🔍 Searching"
    COMMAND = "⚡ Running a command"
    WEB = "🌐 Browsing the web"
    SUBAGENT = "🤖 Delegating to a sub-agent"
    MCP = "🔌 Using an external tool"
    WORKING = "⚙️ Working"


TOOL_ACTIVITIES: dict[str, Activity] = {
    "Read": Activity.READING,
    "Edit": Activity.EDITING,
    "MultiEdit": Activity.EDITING,
    "NotebookEdit": Activity.EDITING,
    "Write": Activity.WRITING,
    "Grep": Activity.SEARCHING,
    "Glob": Activity.SEARCHING,
    "LS": Activity.SEARCHING,
    "Bash": Activity.COMMAND,
    "BashOutput": Activity.COMMAND,
    "KillShell": Activity.COMMAND,
    "WebFetch": Activity.WEB,
    "WebSearch": Activity.WEB,
    "Task": Activity.SUBAGENT,
    "Agent": Activity.SUBAGENT,
}
MCP_TOOL_PREFIX = "mcp__"


def classify_tool(name: str) -> Activity:
    if name.startswith(MCP_TOOL_PREFIX):
        return Activity.MCP
    return TOOL_ACTIVITIES.get(name, Activity.WORKING)


def format_elapsed(seconds: float) -> str:
    total = max(0, int(seconds))
    minutes, secs = divmod(total, 60)
    return f"{minutes:02d}:{secs:02d}"


class ActivityStatus:
    """Periodically edit a status message with the latest activity and elapsed time.

    The owner creates and deletes the status message; this class only edits it.
    """

    def __init__(
        self,
        edit: Callable[[str], Awaitable[None]],
        *,
        interval: float = DEFAULT_INTERVAL_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._edit = edit
        self._interval = interval
        self._clock = clock
        self._started_at = clock()
        self._activity = Activity.THINKING
        self._last_text: str | None = None
        self._task: asyncio.Task[None] | None = None
        self._stopped = False

    @property
    def activity(self) -> Activity:
        return self._activity

    @property
    def running(self) -> bool:
        return self._task is not None and not self._stopped

    def render(self) -> str:
        return f"{self._activity} · elapsed {format_elapsed(self._clock() - self._started_at)}"

    def start(self) -> ActivityStatus:
        if self._task is None and not self._stopped:
            self._started_at = self._clock()
            self._task = asyncio.create_task(self._loop())
        return self

    def on_event(self, event: StreamEvent) -> None:
        for name in event.tool_names():
            self._activity = classify_tool(name)

    def stop(self) -> None:
        if self._stopped:
            return
        self._stopped = True
        if self._task is not None:
            self._task.cancel()

    async def _loop(self) -> None:
        while not self._stopped:
            await asyncio.sleep(self._interval)
            if self._stopped:
                return
            text = self.render()
            if text == self._last_text:
                continue
            self._last_text = text
            try:
                await self._edit(text)
            except Exception as exc:
                logger.debug("activity.edit_failed error={}", exc)
