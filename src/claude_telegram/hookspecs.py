"""Pluggy hook namespace and plugin hook specifications."""

from __future__ import annotations

from typing import TYPE_CHECKING

import pluggy

from claude_telegram.types import BeforeOutcome, PluginCommand, TurnContext, TurnResult

if TYPE_CHECKING:
    from claude_telegram.plugins import PluginContext

HOOK_NAMESPACE = "claude_telegram"
hookspec = pluggy.HookspecMarker(HOOK_NAMESPACE)
hookimpl = pluggy.HookimplMarker(HOOK_NAMESPACE)


class TurnHookSpecs:
    """Hook contract for claude-telegram plugins.

    Every hook may be implemented as a plain or an async function.
    """

    @hookspec
    def before_turn(self, context: TurnContext, message: str) -> BeforeOutcome | None:
        """Inspect or rewrite a message before Claude runs; return Deny to stop the turn."""

    @hookspec
    def after_turn(self, context: TurnContext, result: TurnResult) -> TurnResult | None:
        """Replace the turn result before it is delivered."""

    @hookspec
    def provide_commands(self) -> list[PluginCommand] | None:
        """Telegram commands this plugin handles; they are listed under "Extra commands" in /help."""

    @hookspec
    def plugin_init(self, context: PluginContext) -> None:
        """Set up plugin resources once the bot is wired."""

    @hookspec
    def plugin_dispose(self) -> None:
        """Release plugin resources on shutdown or reload."""
