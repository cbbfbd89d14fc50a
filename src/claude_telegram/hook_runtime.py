"""Before/after turn hook execution over pluggy."""

from __future__ import annotations

import inspect
from typing import Any

import pluggy
from loguru import logger

from claude_telegram.hookspecs import HOOK_NAMESPACE, TurnHookSpecs
from claude_telegram.types import BeforeOutcome, Continue, Deny, PluginCommand, TurnContext, TurnResult

ERROR_REPLY_CHARS = 300


def create_plugin_manager() -> pluggy.PluginManager:
    plugin_manager = pluggy.PluginManager(HOOK_NAMESPACE)
    plugin_manager.add_hookspecs(TurnHookSpecs)
    return plugin_manager


class HookPipeline:
    """Run hook implementations one by one, in registration order.

    pluggy's own call loop cannot thread a value from one implementation to the
    next, so the pipeline walks the implementations itself.
    """

    def __init__(self, plugin_manager: pluggy.PluginManager | None = None) -> None:
        self._plugin_manager = plugin_manager or create_plugin_manager()

    @property
    def plugin_names(self) -> list[str]:
        return [name for name, _ in self._plugin_manager.list_name_plugin()]

    def register(self, plugin: object, name: str | None = None) -> str:
        registered = self._plugin_manager.register(plugin, name=name)
        if registered is None:
            raise ValueError(f"plugin is blocked: {name}")
        return registered

    def unregister_all(self) -> list[object]:
        removed: list[object] = []
        for name, plugin in list(self._plugin_manager.list_name_plugin()):
            self._plugin_manager.unregister(plugin=plugin, name=name)
            removed.append(plugin)
        return removed

    async def before(self, context: TurnContext, message: str) -> BeforeOutcome:
        """Thread the message through every before_turn hook; a Deny or an error ends the chain."""

        current = message
        for impl in self._iter_hookimpls("before_turn"):
            name = impl.plugin_name or "<unknown>"
            try:
                outcome = await _call(impl, context=context, message=current)
            except Exception as exc:
                logger.opt(exception=True).warning("hook.before_turn_failed plugin={}", name)
                return Deny(reply=f'Plugin "{name}" failed: {str(exc)[:ERROR_REPLY_CHARS]}')
            if isinstance(outcome, Deny):
                logger.info("hook.denied plugin={} user_id={}", name, context.user_id)
                return outcome
            if isinstance(outcome, Continue) and isinstance(outcome.message, str):
                current = outcome.message
        return Continue(message=current)

    async def after(self, context: TurnContext, result: TurnResult) -> TurnResult:
        """Thread the result through every after_turn hook; failing hooks are skipped."""

        current = result
        for impl in self._iter_hookimpls("after_turn"):
            try:
                replacement = await _call(impl, context=context, result=current)
            except Exception:
                logger.opt(exception=True).error("hook.after_turn_failed plugin={}", impl.plugin_name or "<unknown>")
                continue
            if isinstance(replacement, TurnResult):
                current = replacement
        return current

    async def commands(self) -> list[PluginCommand]:
        """Collect plugin commands in registration order; a failing provider is skipped."""

        collected: list[PluginCommand] = []
        for impl in self._iter_hookimpls("provide_commands"):
            try:
                provided = await _call(impl)
            except Exception:
                logger.opt(exception=True).error("hook.provide_commands_failed plugin={}", impl.plugin_name)
                continue
            collected.extend(item for item in provided or () if isinstance(item, PluginCommand))
        return collected

    async def init(self, context: Any) -> None:
        """Initialize plugins in registration order; failures propagate."""

        for impl in self._iter_hookimpls("plugin_init"):
            logger.info("hook.plugin_init plugin={}", impl.plugin_name)
            await _call(impl, context=context)

    async def dispose(self) -> None:
        """Dispose plugins in reverse registration order, logging failures."""

        for impl in reversed(self._iter_hookimpls("plugin_dispose")):
            try:
                await _call(impl)
            except Exception:
                logger.opt(exception=True).error("hook.plugin_dispose_failed plugin={}", impl.plugin_name)

    def hook_report(self) -> dict[str, list[str]]:
        """Build a hook->plugins mapping for diagnostics."""

        report: dict[str, list[str]] = {}
        for hook_name in ("before_turn", "after_turn", "provide_commands", "plugin_init", "plugin_dispose"):
            names = [impl.plugin_name for impl in self._iter_hookimpls(hook_name)]
            if names:
                report[hook_name] = names
        return report

    def _iter_hookimpls(self, hook_name: str) -> list[Any]:
        hook = getattr(self._plugin_manager.hook, hook_name, None)
        if hook is None or not hasattr(hook, "get_hookimpls"):
            return []
        # get_hookimpls() is in registration order; pluggy itself calls them in reverse.
        return list(hook.get_hookimpls())


async def _call(impl: Any, **kwargs: Any) -> Any:
    call_kwargs = {name: kwargs[name] for name in impl.argnames if name in kwargs}
    value = impl.function(**call_kwargs)
    if inspect.isawaitable(value):
        value = await value
    return value
