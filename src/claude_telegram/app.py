"""Wire settings, session store, runner, hooks, dispatcher and the Telegram channel."""

from __future__ import annotations

import asyncio

from loguru import logger

from claude_telegram.channels.telegram import TelegramChannel, TelegramConfig
from claude_telegram.config import Settings
from claude_telegram.dispatcher import JobDispatcher
from claude_telegram.hook_runtime import HookPipeline
from claude_telegram.plugins import LoadedPlugin, PluginContext, load_plugins
from claude_telegram.runner import ProcessRunner, ProcessTracker
from claude_telegram.session import SessionStore


class BridgeApp:
    """One bot instance; owns every long-lived component."""

    def __init__(self, settings: Settings, *, plugins: list[LoadedPlugin] | None = None) -> None:
        self.settings = settings
        self.sessions = SessionStore(settings.workspace, namespace=settings.session_namespace)
        self.tracker = ProcessTracker()
        self.runner = ProcessRunner(settings, self.sessions, self.tracker)
        self.hooks = HookPipeline()
        self.plugins = plugins if plugins is not None else load_plugins(settings.plugin_specs())
        for item in self.plugins:
            self.hooks.register(item.plugin, name=item.name)
        self.channel = TelegramChannel(
            TelegramConfig(token=settings.token, whitelist=frozenset(settings.whitelist), model=settings.model)
        )
        self.dispatcher = JobDispatcher(
            self.channel,
            self.runner,
            self.sessions,
            self.hooks,
            workspace=settings.workspace,
            status_interval=settings.status_interval,
        )
        self.channel.bind(self.dispatcher, reload=self.reload_plugins)

    @property
    def plugin_context(self) -> PluginContext:
        return PluginContext(
            settings=self.settings, sessions=self.sessions, dispatcher=self.dispatcher, channel=self.channel
        )

    async def reload_plugins(self) -> list[str]:
        fresh = load_plugins(self.settings.plugin_specs(), reload=True)
        names = await self.dispatcher.reload_hooks(fresh, self.plugin_context)
        self.channel.set_commands(await self.hooks.commands())
        self.plugins = fresh
        logger.info("app.plugins_reloaded plugins={}", names)
        return names

    async def serve(self) -> None:
        logger.info("app.start workspace={} permission_mode={}", self.settings.workspace, self.settings.permission_mode)
        logger.info(
            "app.whitelist users={}", ", ".join(map(str, self.settings.whitelist)) or "(empty, no one can access)"
        )
        logger.info("app.plugins names={}", ", ".join(self.hooks.plugin_names) or "(none)")
        self.channel.build()
        self.channel.set_commands(await self.hooks.commands())
        await self.hooks.init(self.plugin_context)
        try:
            await self.channel.start()
        finally:
            await self.shutdown()

    async def shutdown(self) -> None:
        logger.info("app.shutdown running_processes={}", len(self.tracker))
        await self.channel.stop()
        await self.tracker.terminate_all(self.settings.kill_grace)
        await self.hooks.dispose()


def run(settings: Settings) -> None:
    app = BridgeApp(settings)
    try:
        asyncio.run(app.serve())
    except KeyboardInterrupt:
        logger.info("app.interrupted")
