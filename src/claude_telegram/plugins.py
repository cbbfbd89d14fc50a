"""Load configured plugins from `package.module:attribute` references."""

from __future__ import annotations

import importlib
import inspect
import sys
from dataclasses import dataclass
from typing import TYPE_CHECKING

from loguru import logger

from claude_telegram.config import PluginSpec, Settings
from claude_telegram.errors import PluginLoadError

if TYPE_CHECKING:
    from claude_telegram.channels.telegram import TelegramChannel
    from claude_telegram.dispatcher import JobDispatcher
    from claude_telegram.session import SessionStore


@dataclass(frozen=True)
class LoadedPlugin:
    name: str
    plugin: object


@dataclass(frozen=True)
class PluginContext:
    """What a plugin receives from `plugin_init`.

    `channel.application` is the running python-telegram-bot `Application`.
    """

    settings: Settings
    sessions: SessionStore
    dispatcher: JobDispatcher
    channel: TelegramChannel


def load_plugin(spec: PluginSpec, *, reload: bool = False) -> LoadedPlugin:
    """Import one plugin; classes and factories are called with the entry's options."""

    module_name, _, attribute = spec.import_path.partition(":")
    if not module_name:
        raise PluginLoadError(f"invalid plugin reference: {spec.import_path!r}")
    try:
        if reload and module_name in sys.modules:
            module = importlib.reload(sys.modules[module_name])
        else:
            module = importlib.import_module(module_name)
    except Exception as exc:
        raise PluginLoadError(f"{spec.import_path}: import failed: {exc}") from exc

    attribute = attribute or "plugin"
    target = getattr(module, attribute, None)
    if target is None:
        raise PluginLoadError(f"{spec.import_path}: module has no attribute `{attribute}`")

    if inspect.isclass(target) or (spec.options and callable(target)):
        try:
            target = target(**spec.options)
        except Exception as exc:
            raise PluginLoadError(f"{spec.import_path}: construction failed: {exc}") from exc
    elif spec.options:
        logger.warning("plugin.options_ignored plugin={}", spec.import_path)

    return LoadedPlugin(name=spec.import_path, plugin=target)


def load_plugins(specs: list[PluginSpec], *, reload: bool = False) -> list[LoadedPlugin]:
    loaded: list[LoadedPlugin] = []
    for spec in specs:
        if not spec.enabled:
            logger.info("plugin.disabled plugin={}", spec.import_path)
            continue
        loaded.append(load_plugin(spec, reload=reload))
        logger.info("plugin.loaded plugin={}", spec.import_path)
    return loaded

