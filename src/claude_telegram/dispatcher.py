"""Per-user turn dispatch: concurrency guard, hooks, runner, live status."""

from __future__ import annotations

import re
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Protocol

from loguru import logger

from claude_telegram.activity import DEFAULT_INTERVAL_SECONDS, ActivityStatus
from claude_telegram.errors import DispatcherBusyError
from claude_telegram.hook_runtime import HookPipeline
from claude_telegram.plugins import LoadedPlugin
from claude_telegram.runner import EventListener, RunHandle
from claude_telegram.session import SessionStore
from claude_telegram.types import Deny, TurnContext, TurnResult

STILL_WORKING_TEXT = "Still working on your previous message. Send /cancel to stop, or wait for the response."
EMPTY_RESPONSE_TEXT = "Claude returned an empty response. Try rephrasing, or /clear to start fresh."
GENERIC_FAILURE_TEXT = "Something went wrong. Try again, or /clear to start fresh."
CANCELLING_TEXT = "Cancelling..."
CANCELLING_FALLBACK_TEXT = "Cancelling... (may take a few seconds)"
USER_ERROR_CHARS = 400

_STACK_FRAME = re.compile(r"^\s*(?:at\s+|File \"|Traceback \(most recent call last\))")
_SECRET_PATTERNS = (
    (re.compile(r"\b\d{6,}:[A-Za-z0-9_-]{20,}\b"), "<TELEGRAM_TOKEN_REDACTED>"),
    (re.compile(r"\bBearer\s+[A-Za-z0-9._~+/=-]+", re.IGNORECASE), "Bearer <REDACTED>"),
    (re.compile(r"\bsk-[A-Za-z0-9_-]{16,}\b"), "<API_KEY_REDACTED>"),
)


def sanitize_error_for_user(text: str, workspace: Path | str | None, max_len: int = USER_ERROR_CHARS) -> str:
    """Trim an error to two meaningful lines with secrets and local paths redacted."""

    normalized = text.replace("\r\n", "\n").strip()
    if not normalized:
        return ""

    kept: list[str] = []
    for raw_line in normalized.split("\n"):
        line = raw_line.strip()
        if not line or _STACK_FRAME.match(raw_line):
            continue
        kept.append(line)
        if len(kept) >= 2:
            break
    out = "\n".join(kept) if kept else normalized.split("\n")[0].strip()

    for pattern, replacement in _SECRET_PATTERNS:
        out = pattern.sub(replacement, out)
    if workspace:
        out = out.replace(str(workspace), "<WORKSPACE>")
    home = str(Path.home())
    if home and home != "/":
        out = out.replace(home, "~")
    return out[:max_len]


class ChatSurface(Protocol):
    """The chat-side collaborator: sends, edits and deletes messages."""

    async def reply(self, chat_id: int, text: str) -> None: ...

    async def send_status(self, chat_id: int, text: str) -> Any: ...

    async def edit_status(self, chat_id: int, status_ref: Any, text: str) -> None: ...

    async def delete_status(self, chat_id: int, status_ref: Any) -> None: ...

    async def deliver(self, chat_id: int, result: TurnResult) -> None: ...


class TurnRunner(Protocol):
    async def start(self, user_id: int, message: str, on_event: EventListener | None = None) -> RunHandle: ...


@dataclass(eq=False)
class Job:
    """One in-flight turn."""

    user_id: int
    chat_id: int
    handle: RunHandle
    status_ref: Any
    activity: ActivityStatus
    canceled: bool = False


class JobDispatcher:
    """Accept turns from the chat layer and see each one through to a reply."""

    def __init__(
        self,
        chat: ChatSurface,
        runner: TurnRunner,
        sessions: SessionStore,
        hooks: HookPipeline | None = None,
        *,
        workspace: Path | str | None = None,
        status_interval: float = DEFAULT_INTERVAL_SECONDS,
    ) -> None:
        self.chat = chat
        self.runner = runner
        self.sessions = sessions
        self.hooks = hooks or HookPipeline()
        self.workspace = workspace
        self.status_interval = status_interval
        self._busy: set[int] = set()
        self._jobs: dict[int, Job] = {}

    @property
    def busy(self) -> bool:
        return bool(self._busy)

    def has_job(self, user_id: int) -> bool:
        return user_id in self._jobs

    def is_busy(self, user_id: int) -> bool:
        return user_id in self._busy

    async def submit(self, user_id: int, chat_id: int, raw_message: str, metadata: dict[str, Any] | None = None) -> None:
        """Run one turn for a user, or tell them a previous turn is still running."""

        if not raw_message or not raw_message.strip():
            return
        if user_id in self._busy:
            logger.info("dispatcher.rejected_busy user_id={}", user_id)
            await self._safe_reply(chat_id, STILL_WORKING_TEXT)
            return

        self._busy.add(user_id)
        try:
            context = TurnContext(user_id=user_id, chat_id=chat_id, raw_message=raw_message, metadata=metadata or {})
            await self._run_turn(context)
        finally:
            self._busy.discard(user_id)

    async def cancel(self, user_id: int) -> bool:
        """Stop the user's running turn; False if there is none or it is already stopping."""

        job = self._jobs.get(user_id)
        if job is None or job.canceled:
            return False

        job.canceled = True
        job.activity.stop()
        logger.info("dispatcher.cancel user_id={}", user_id)
        try:
            await self.chat.edit_status(job.chat_id, job.status_ref, CANCELLING_TEXT)
        except Exception:
            await self._safe_reply(job.chat_id, CANCELLING_FALLBACK_TEXT)
        job.handle.terminate()
        return True

    async def clear(self, user_id: int) -> str:
        """Cancel any running turn and start a new conversation."""

        await self.cancel(user_id)
        return self.sessions.reset(user_id)

    async def reload_hooks(self, plugins: list[LoadedPlugin], context: Any) -> list[str]:
        """Swap the registered plugins; refused while any turn is in flight."""

        if self._busy:
            raise DispatcherBusyError("Cannot reload while requests are in progress.")
        await self.hooks.dispose()
        self.hooks.unregister_all()
        for item in plugins:
            self.hooks.register(item.plugin, name=item.name)
        await self.hooks.init(context)
        return [item.name for item in plugins]

    async def _run_turn(self, context: TurnContext) -> None:
        user_id, chat_id = context.user_id, context.chat_id
        decision = await self.hooks.before(context, context.raw_message)
        if isinstance(decision, Deny):
            if decision.reply:
                await self._safe_reply(chat_id, decision.reply)
            return

        message = decision.message
        if not message or not message.strip():
            return

        activity: ActivityStatus | None = None
        status_ref: Any = None
        job: Job | None = None
        try:
            async def _edit(text: str) -> None:
                await self.chat.edit_status(chat_id, status_ref, text)

            activity = ActivityStatus(_edit, interval=self.status_interval)
            status_ref = await self.chat.send_status(chat_id, activity.render())
            handle = await self.runner.start(user_id, message, on_event=activity.on_event)
            job = Job(user_id=user_id, chat_id=chat_id, handle=handle, status_ref=status_ref, activity=activity)
            self._jobs[user_id] = job
            activity.start()

            result = await handle.wait()
            if self._jobs.get(user_id) is job:
                del self._jobs[user_id]
            activity.stop()
            await self._delete_status(chat_id, status_ref)
            # Gone now; later failures must reply instead of editing it.
            status_ref = None

            if job.canceled:
                logger.info("dispatcher.canceled user_id={}", user_id)
                return

            final = await self.hooks.after(context, result)
            await self._present(chat_id, final)
        except Exception as exc:
            logger.opt(exception=True).error("dispatcher.turn_failed user_id={}", user_id)
            if activity is not None:
                activity.stop()
            if job is not None and self._jobs.get(user_id) is job:
                del self._jobs[user_id]
            safe = sanitize_error_for_user(str(exc), self.workspace)
            text = (
                f"Something went wrong: {safe}\n\nTry again or /clear to start fresh."
                if safe
                else "Something went wrong.\n\nTry again or /clear to start fresh."
            )
            if status_ref is None:
                await self._safe_reply(chat_id, text)
                return
            try:
                await self.chat.edit_status(chat_id, status_ref, text)
            except Exception as edit_exc:
                logger.debug("dispatcher.status_edit_failed user_id={} error={}", user_id, edit_exc)

    async def _present(self, chat_id: int, result: TurnResult) -> None:
        if result.success and result.output:
            await self.chat.deliver(chat_id, result)
            return
        if result.success:
            await self.chat.reply(chat_id, EMPTY_RESPONSE_TEXT)
            return
        safe = sanitize_error_for_user(result.error or "", self.workspace)
        await self.chat.reply(chat_id, f"Something went wrong: {safe}" if safe else GENERIC_FAILURE_TEXT)

    async def _delete_status(self, chat_id: int, status_ref: Any) -> None:
        try:
            await self.chat.delete_status(chat_id, status_ref)
        except Exception as exc:
            logger.debug("dispatcher.status_delete_failed chat_id={} error={}", chat_id, exc)

    async def _safe_reply(self, chat_id: int, text: str) -> None:
        try:
            await self.chat.reply(chat_id, text)
        except Exception as exc:
            logger.warning("dispatcher.reply_failed chat_id={} error={}", chat_id, exc)
