"""Telegram channel adapter."""

from __future__ import annotations

import asyncio
import re
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass
from typing import Any, TypeAlias

from loguru import logger
from telegram import Update
from telegram.constants import ChatType, ParseMode
from telegram.error import TelegramError
from telegram.ext import (
    Application,
    ApplicationHandlerStop,
    CommandHandler,
    ContextTypes,
    MessageHandler,
    TypeHandler,
    filters,
)

from claude_telegram.channels.formatting import build_footer, compose_parts, to_markdown_v2
from claude_telegram.dispatcher import JobDispatcher
from claude_telegram.errors import ClaudeTelegramError
from claude_telegram.types import PluginCommand, TurnResult

ReloadCallback: TypeAlias = Callable[[], Awaitable[list[str]]]

COMMAND_NAME = re.compile(r"^[\da-z_]{1,32}$")
RESERVED_COMMANDS = frozenset({"start", "help", "cancel", "clear", "reload"})
BASE_COMMANDS = (
    ("/cancel", "stop current request"),
    ("/clear", "start a new conversation"),
    ("/reload", "reload plugins"),
    ("/help", "show this message"),
)


@dataclass(frozen=True)
class TelegramConfig:
    """Telegram adapter config."""

    token: str
    whitelist: frozenset[int]
    model: str | None = None


def build_help_text(extra: Sequence[PluginCommand] = ()) -> str:
    lines = ["Send any message to chat with Claude Code. I'll show a live status while Claude works.", ""]
    lines.extend(f"{command} — {description}" for command, description in BASE_COMMANDS)
    if extra:
        lines.extend(["", "Extra commands:"])
        lines.extend(f"/{item.command} — {item.description}" for item in extra)
    return "\n".join(lines)


class TelegramChannel:
    """Private-chat Telegram adapter using long polling; also the dispatcher's chat surface."""

    name = "telegram"

    def __init__(self, config: TelegramConfig) -> None:
        self._config = config
        self._app: Application | None = None
        self._dispatcher: JobDispatcher | None = None
        self._reload: ReloadCallback | None = None
        self._stopped = asyncio.Event()
        self._commands: list[PluginCommand] = []
        self._command_handlers: list[CommandHandler] = []

    def bind(self, dispatcher: JobDispatcher, *, reload: ReloadCallback | None = None) -> None:
        self._dispatcher = dispatcher
        self._reload = reload

    @property
    def dispatcher(self) -> JobDispatcher:
        if self._dispatcher is None:
            raise RuntimeError("telegram channel is not bound to a dispatcher")
        return self._dispatcher

    @property
    def application(self) -> Application | None:
        return self._app

    @property
    def commands(self) -> list[PluginCommand]:
        return list(self._commands)

    def help_text(self) -> str:
        return build_help_text(self._commands)

    def build(self) -> Application:
        """Create the application and its handlers without touching the network."""

        if self._app is not None:
            return self._app
        if not self._config.token:
            raise RuntimeError("telegram token is empty")
        app = Application.builder().token(self._config.token).build()
        # Group -1 guards run before every command and message handler.
        app.add_handler(TypeHandler(Update, self._guard), group=-1)
        app.add_handler(CommandHandler("start", self._on_start))
        app.add_handler(CommandHandler("help", self._on_help))
        app.add_handler(CommandHandler("cancel", self._on_cancel, block=False))
        app.add_handler(CommandHandler("clear", self._on_clear, block=False))
        app.add_handler(CommandHandler("reload", self._on_reload, block=False))
        app.add_handler(MessageHandler(filters.TEXT & ~filters.COMMAND, self._on_text, block=False))
        app.add_error_handler(self._on_error)
        self._app = app
        self._command_handlers = []
        self._install_commands()
        return app

    def set_commands(self, commands: Sequence[PluginCommand]) -> list[PluginCommand]:
        """Replace the plugin commands, skipping built-in, repeated or malformed names."""

        accepted: list[PluginCommand] = []
        seen: set[str] = set()
        for item in commands:
            if item.command in RESERVED_COMMANDS or item.command in seen or not COMMAND_NAME.match(item.command):
                logger.warning("telegram.channel.command_skipped command={}", item.command)
                continue
            seen.add(item.command)
            accepted.append(item)
        self._commands = accepted
        self._install_commands()
        return list(accepted)

    def _install_commands(self) -> None:
        if self._app is None:
            return
        for handler in self._command_handlers:
            self._app.remove_handler(handler)
        self._command_handlers = [CommandHandler(item.command, item.callback, block=False) for item in self._commands]
        for handler in self._command_handlers:
            self._app.add_handler(handler)

    async def start(self) -> None:
        logger.info("telegram.channel.start whitelist_count={}", len(self._config.whitelist))
        self._stopped.clear()
        self.build()
        assert self._app is not None
        await self._app.initialize()
        await self._app.start()
        updater = self._app.updater
        if updater is None:
            return
        await updater.start_polling(drop_pending_updates=True, allowed_updates=["message"])
        logger.info("telegram.channel.polling")
        await self._stopped.wait()

    async def stop(self) -> None:
        self._stopped.set()
        if self._app is None:
            return
        updater = self._app.updater
        if updater is not None and updater.running:
            await updater.stop()
        if self._app.running:
            await self._app.stop()
        await self._app.shutdown()
        self._app = None
        logger.info("telegram.channel.stopped")

    # Chat surface

    async def reply(self, chat_id: int, text: str) -> None:
        await self._bot().send_message(chat_id=chat_id, text=text)

    async def send_status(self, chat_id: int, text: str) -> int:
        message = await self._bot().send_message(chat_id=chat_id, text=text)
        return message.message_id

    async def edit_status(self, chat_id: int, status_ref: Any, text: str) -> None:
        await self._bot().edit_message_text(chat_id=chat_id, message_id=status_ref, text=text)

    async def delete_status(self, chat_id: int, status_ref: Any) -> None:
        await self._bot().delete_message(chat_id=chat_id, message_id=status_ref)

    async def deliver(self, chat_id: int, result: TurnResult) -> None:
        bot = self._bot()
        for part in compose_parts(result.output, build_footer(result, self._config.model)):
            try:
                await bot.send_message(chat_id=chat_id, text=to_markdown_v2(part), parse_mode=ParseMode.MARKDOWN_V2)
            except TelegramError as exc:
                logger.debug("telegram.channel.markdown_rejected chat_id={} error={}", chat_id, exc)
                await bot.send_message(chat_id=chat_id, text=part)

    # Handlers

    async def _guard(self, update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
        chat = update.effective_chat
        user = update.effective_user
        message = update.effective_message
        if chat is None or user is None:
            raise ApplicationHandlerStop
        if chat.type != ChatType.PRIVATE:
            if message is not None:
                await self._quiet_reply(message, "Please message me in a private chat.")
            raise ApplicationHandlerStop
        # An empty whitelist lets nobody in.
        if user.id not in self._config.whitelist:
            logger.info("telegram.channel.denied user_id={} username={}", user.id, user.username or "")
            if message is not None:
                await self._quiet_reply(
                    message,
                    "Sorry, you don't have access to this bot. Ask the owner to add your user ID to the whitelist."
                    f"\n\nYour ID: {user.id}",
                )
            raise ApplicationHandlerStop

    async def _on_start(self, update: Update, _context: ContextTypes.DEFAULT_TYPE) -> None:
        if update.message is None:
            return
        first_name = update.effective_user.first_name if update.effective_user else None
        await update.message.reply_text(
            f"Hi {first_name or 'there'}! I'm a bridge to Claude Code, an AI that can read, write, and run code "
            "in a workspace on the server.\n\n"
            'Try: "What files are in the workspace?"\n\n' + self.help_text()
        )

    async def _on_help(self, update: Update, _context: ContextTypes.DEFAULT_TYPE) -> None:
        if update.message is None:
            return
        await update.message.reply_text(self.help_text())

    async def _on_cancel(self, update: Update, _context: ContextTypes.DEFAULT_TYPE) -> None:
        if update.message is None or update.effective_user is None:
            return
        user_id = update.effective_user.id
        if not self.dispatcher.has_job(user_id):
            await update.message.reply_text("Nothing to cancel.")
            return
        if not await self.dispatcher.cancel(user_id):
            await update.message.reply_text("Already cancelling...")

    async def _on_clear(self, update: Update, _context: ContextTypes.DEFAULT_TYPE) -> None:
        if update.message is None or update.effective_user is None:
            return
        await self.dispatcher.clear(update.effective_user.id)
        await update.message.reply_text("Conversation cleared. Claude won't remember previous messages.")

    async def _on_reload(self, update: Update, _context: ContextTypes.DEFAULT_TYPE) -> None:
        if update.message is None:
            return
        if self._reload is None:
            await update.message.reply_text("Reload is not available.")
            return
        try:
            names = await self._reload()
        except ClaudeTelegramError as exc:
            await update.message.reply_text(f"Reload failed: {exc}")
            return
        await update.message.reply_text(f"Reloaded: {', '.join(names) or '(none)'}")

    async def _on_text(self, update: Update, _context: ContextTypes.DEFAULT_TYPE) -> None:
        message = update.message
        user = update.effective_user
        if message is None or user is None or not message.text:
            return
        logger.info(
            "telegram.channel.inbound chat_id={} user_id={} username={} content={}",
            message.chat_id,
            user.id,
            user.username or "",
            message.text[:100],
        )
        await self.dispatcher.submit(
            user.id,
            message.chat_id,
            message.text,
            metadata={
                "username": user.username or "",
                "first_name": user.first_name or "",
                "message_id": message.message_id,
            },
        )

    async def _on_error(self, _update: object, context: ContextTypes.DEFAULT_TYPE) -> None:
        logger.opt(exception=context.error).error("telegram.channel.error")

    async def _quiet_reply(self, message: Any, text: str) -> None:
        try:
            await message.reply_text(text)
        except TelegramError as exc:
            logger.debug("telegram.channel.reply_failed error={}", exc)

    def _bot(self) -> Any:
        if self._app is None:
            raise RuntimeError("telegram channel is not running")
        return self._app.bot
